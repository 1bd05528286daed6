"""Unit tests for the upload integrity pipeline.

Each stage is tested on its own and through UploadPipeline.validate(), with
the signature, traversal, executable and script cases pinned explicitly.
"""

from __future__ import annotations

import pytest

from deskgate.config import UploadConfig
from deskgate.models.upload import ReasonCode, UploadCandidate
from deskgate.upload.definitions import MALICIOUS_PATTERNS, compile_pattern
from deskgate.upload.pipeline import (
    STAGES,
    UploadPipeline,
    UploadRules,
    check_compression_ratio,
    check_executable_header,
    check_signature,
)

JPEG = bytes([0xFF, 0xD8, 0xFF, 0xE0]) + b"\x00" * 60
PNG = bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A]) + b"\x00" * 60
PDF = b"%PDF-1.7\n" + b"\x00" * 60
ZIP = bytes([0x50, 0x4B, 0x03, 0x04]) + b"\x00" * 60


def _rules(**overrides) -> UploadRules:
    return UploadRules.from_config(UploadConfig(**overrides))


def _pipeline(**overrides) -> UploadPipeline:
    return UploadPipeline(_rules(**overrides))


def _file(
    raw: bytes = b"hello world",
    mime: str = "text/plain",
    name: str = "notes.txt",
    declared_size: int | None = None,
) -> UploadCandidate:
    return UploadCandidate(
        raw_bytes=raw,
        declared_mime_type=mime,
        original_filename=name,
        declared_size=declared_size,
    )


# ─── Accepted uploads ─────────────────────────────────────────────────────────


class TestAccepted:
    @pytest.mark.parametrize(
        "raw, mime, name",
        [
            (JPEG, "image/jpeg", "photo.jpg"),
            (PNG, "image/png", "diagram.png"),
            (PDF, "application/pdf", "invoice.pdf"),
            (ZIP, "application/zip", "bundle.zip"),
            (b"a,b,c\n1,2,3\n", "text/csv", "export.csv"),
            (b"plain words", "text/plain", "readme.txt"),
            (b"RIFF....WEBP", "image/webp", "pic.webp"),
        ],
    )
    def test_legitimate_files_pass(self, raw, mime, name) -> None:
        verdict = _pipeline().validate(_file(raw, mime, name))
        assert verdict.accepted is True
        assert verdict.reason_code is None


# ─── MIME / extension / filename ──────────────────────────────────────────────


class TestMetadataStages:
    @pytest.mark.parametrize("mime", ["text/html", "application/x-msdownload", "image/svg+xml", ""])
    def test_unlisted_mime_rejected(self, mime) -> None:
        verdict = _pipeline().validate(_file(mime=mime))
        assert verdict.reason_code == ReasonCode.UNSUPPORTED_TYPE

    @pytest.mark.parametrize(
        "name", ["setup.exe", "RUN.SH", "report.pdf.js", "index.php", "tool.Ps1", "app.jar"]
    )
    def test_dangerous_extension_rejected(self, name) -> None:
        verdict = _pipeline().validate(_file(name=name))
        assert verdict.reason_code == ReasonCode.DANGEROUS_EXTENSION

    def test_double_extension_checks_last_suffix(self) -> None:
        assert _pipeline().validate(_file(name="archive.exe.txt")).accepted is True

    def test_traversal_filename_rejected(self) -> None:
        verdict = _pipeline().validate(_file(name="../../etc/passwd"))
        assert verdict.reason_code == ReasonCode.INVALID_FILENAME

    @pytest.mark.parametrize(
        "raw, mime", [(JPEG, "image/jpeg"), (PDF, "application/pdf"), (b"text", "text/plain")]
    )
    def test_traversal_rejected_regardless_of_type(self, raw, mime) -> None:
        verdict = _pipeline().validate(_file(raw, mime, "../../etc/passwd"))
        assert verdict.reason_code == ReasonCode.INVALID_FILENAME

    @pytest.mark.parametrize("name", ["dir/file.txt", "dir\\file.txt", "file\0.txt", "..hidden.txt", ""])
    def test_unsafe_filenames_rejected(self, name) -> None:
        verdict = _pipeline().validate(_file(name=name))
        assert verdict.reason_code == ReasonCode.INVALID_FILENAME


# ─── Size ─────────────────────────────────────────────────────────────────────


class TestSize:
    def test_true_size_over_limit_rejected(self) -> None:
        verdict = _pipeline(max_file_size=10).validate(_file(raw=b"x" * 11))
        assert verdict.reason_code == ReasonCode.FILE_TOO_LARGE

    def test_true_size_at_limit_passes(self) -> None:
        assert _pipeline(max_file_size=11).validate(_file(raw=b"x" * 11)).accepted is True

    def test_declared_size_is_not_trusted(self) -> None:
        """A small declared size does not hide an oversized buffer."""
        verdict = _pipeline(max_file_size=10).validate(_file(raw=b"x" * 50, declared_size=5))
        assert verdict.reason_code == ReasonCode.FILE_TOO_LARGE

    def test_too_many_files_is_request_level(self) -> None:
        files = [_file() for _ in range(3)]
        verdict, offending = _pipeline(max_files=2).validate_batch(files)
        assert verdict.reason_code == ReasonCode.TOO_MANY_FILES
        assert offending is None

    def test_batch_reports_first_offending_file(self) -> None:
        bad = _file(name="evil.exe")
        verdict, offending = _pipeline().validate_batch([_file(), bad, _file(name="x.sh")])
        assert verdict.reason_code == ReasonCode.DANGEROUS_EXTENSION
        assert offending is bad

    def test_batch_all_accepted(self) -> None:
        verdict, offending = _pipeline().validate_batch([_file(), _file(JPEG, "image/jpeg", "a.jpg")])
        assert verdict.accepted is True
        assert offending is None


# ─── Signature ────────────────────────────────────────────────────────────────


class TestSignature:
    def test_jpeg_bytes_declared_jpeg_pass(self) -> None:
        assert check_signature(_file(JPEG, "image/jpeg", "a.jpg"), _rules()) is None

    def test_jpeg_bytes_declared_pdf_mismatch(self) -> None:
        verdict = _pipeline().validate(_file(JPEG, "application/pdf", "a.pdf"))
        assert verdict.reason_code == ReasonCode.HEADER_MISMATCH

    def test_png_declared_gif_mismatch(self) -> None:
        verdict = _pipeline().validate(_file(PNG, "image/gif", "a.gif"))
        assert verdict.reason_code == ReasonCode.HEADER_MISMATCH

    def test_types_without_signature_skip(self) -> None:
        assert check_signature(_file(b"anything", "text/csv", "a.csv"), _rules()) is None

    def test_short_buffers_skip_signature(self) -> None:
        assert check_signature(_file(b"\x00\x01", "image/png", "a.png"), _rules()) is None
        assert _pipeline().validate(_file(b"\x00\x01", "image/png", "a.png")).accepted is True

    def test_zip_family_shares_signature(self) -> None:
        verdict = _pipeline().validate(_file(ZIP, "application/x-zip-compressed", "a.zip"))
        assert verdict.accepted is True


# ─── Executable header ────────────────────────────────────────────────────────


class TestExecutableHeader:
    def test_mz_declared_png_rejected_as_executable(self) -> None:
        raw = bytes([0x4D, 0x5A]) + b"\x90\x00" + b"\x00" * 100
        verdict = _pipeline().validate(_file(raw, "image/png", "cat.png"))
        assert verdict.reason_code == ReasonCode.EXECUTABLE_REJECTED

    @pytest.mark.parametrize("mime, name", [("text/plain", "a.txt"), ("application/pdf", "a.pdf")])
    def test_mz_rejected_for_any_declared_type(self, mime, name) -> None:
        verdict = _pipeline().validate(_file(b"MZ\x00\x00payload", mime, name))
        assert verdict.reason_code == ReasonCode.EXECUTABLE_REJECTED

    def test_mz_later_in_file_is_fine(self) -> None:
        assert check_executable_header(_file(b"xxMZ"), _rules()) is None


# ─── Compression ratio ────────────────────────────────────────────────────────


class TestCompressionRatio:
    def test_high_declared_ratio_rejected(self) -> None:
        candidate = _file(ZIP, "application/zip", "bomb.zip", declared_size=len(ZIP) * 101)
        verdict = _pipeline().validate(candidate)
        assert verdict.reason_code == ReasonCode.SUSPICIOUS_COMPRESSION

    def test_ratio_at_limit_passes(self) -> None:
        candidate = _file(ZIP, "application/zip", "ok.zip", declared_size=len(ZIP) * 100)
        assert check_compression_ratio(candidate, _rules()) is None

    def test_non_zip_types_ignored(self) -> None:
        candidate = _file(b"text", "text/plain", "a.txt", declared_size=10_000)
        assert check_compression_ratio(candidate, _rules()) is None

    def test_configurable_ceiling(self) -> None:
        candidate = _file(ZIP, "application/zip", "a.zip", declared_size=len(ZIP) * 20)
        assert check_compression_ratio(candidate, _rules(max_compression_ratio=10)) is not None


# ─── Malicious content ────────────────────────────────────────────────────────


class TestMaliciousContent:
    @pytest.mark.parametrize(
        "payload",
        [
            b"<script>alert(1)</script>",
            b"<SCRIPT type='text/javascript'>x()</SCRIPT >",
            b'<a href="javascript:steal()">x</a>',
            b"VBScript:msgbox",
            b'<img src=x onerror="pwn()">',
            b"<body onload = init()>",
            b"eval (atob('...'))",
            b"document.write('x')",
            b"window.location='http://evil'",
            b"%3Cscript%3Ealert(1)",
            b"%3C%2Fscript%3E",
        ],
    )
    def test_patterns_rejected(self, payload) -> None:
        verdict = _pipeline().validate(_file(b"header text " + payload))
        assert verdict.reason_code == ReasonCode.MALICIOUS_CONTENT

    def test_script_within_first_kilobyte_rejected(self) -> None:
        raw = b"a" * 990 + b"<script>alert(1)</script>"
        verdict = _pipeline().validate(_file(raw))
        assert verdict.reason_code == ReasonCode.MALICIOUS_CONTENT

    def test_content_beyond_scan_prefix_not_inspected(self) -> None:
        raw = b"a" * 1024 + b"<script>alert(1)</script>"
        assert _pipeline().validate(_file(raw)).accepted is True

    def test_binary_content_does_not_crash_scan(self) -> None:
        raw = bytes(range(256)) * 4
        verdict = _pipeline().validate(_file(raw, "text/plain", "blob.txt"))
        assert verdict.accepted is True

    def test_every_builtin_pattern_has_a_slug(self) -> None:
        slugs = [entry.slug for entry in MALICIOUS_PATTERNS]
        assert len(slugs) == len(set(slugs))
        assert all(slugs)


# ─── Stage order + independence ───────────────────────────────────────────────


class TestStageIndependence:
    def test_first_failing_stage_wins(self) -> None:
        """Unsupported type reported before the dangerous extension."""
        verdict = _pipeline().validate(_file(mime="text/html", name="x.exe"))
        assert verdict.reason_code == ReasonCode.UNSUPPORTED_TYPE

    @pytest.mark.parametrize(
        "candidate, code",
        [
            (_file(mime="text/html"), ReasonCode.UNSUPPORTED_TYPE),
            (_file(name="x.bat"), ReasonCode.DANGEROUS_EXTENSION),
            (_file(name="a/b.txt"), ReasonCode.INVALID_FILENAME),
            (_file(JPEG, "application/pdf", "a.pdf"), ReasonCode.HEADER_MISMATCH),
            (_file(b"MZ rest of file", "text/plain", "a.txt"), ReasonCode.EXECUTABLE_REJECTED),
            (_file(b"<script>x</script>"), ReasonCode.MALICIOUS_CONTENT),
        ],
    )
    def test_each_stage_rejects_on_its_own(self, candidate, code) -> None:
        """Running the stages in reverse still rejects every case."""
        reversed_pipeline = UploadPipeline(_rules(), stages=tuple(reversed(STAGES)))
        assert reversed_pipeline.validate(candidate).reason_code == code

    def test_candidate_bytes_are_not_mutated(self) -> None:
        raw = b"<script>alert(1)</script>"
        candidate = _file(raw)
        _pipeline().validate(candidate)
        assert candidate.raw_bytes == raw


# ─── Config-supplied table extensions ─────────────────────────────────────────


class TestTableExtensions:
    def test_extra_mime_type_allowed(self) -> None:
        rules = _rules(extra_allowed_mime_types=["application/json"])
        verdict = UploadPipeline(rules).validate(_file(b"{}", "application/json", "a.json"))
        assert verdict.accepted is True

    @pytest.mark.parametrize("ext", ["lnk", ".LNK"])
    def test_extra_extension_normalized(self, ext) -> None:
        rules = _rules(extra_dangerous_extensions=[ext])
        verdict = UploadPipeline(rules).validate(_file(name="shortcut.lnk"))
        assert verdict.reason_code == ReasonCode.DANGEROUS_EXTENSION

    def test_extra_signature(self) -> None:
        rules = _rules(
            extra_allowed_mime_types=["image/bmp"],
            extra_signatures={"image/bmp": "424d"},
        )
        pipeline = UploadPipeline(rules)
        assert pipeline.validate(_file(b"BM\x00\x00\x00\x00", "image/bmp", "a.bmp")).accepted is True
        assert (
            pipeline.validate(_file(b"XX\x00\x00\x00\x00", "image/bmp", "a.bmp")).reason_code
            == ReasonCode.HEADER_MISMATCH
        )

    def test_extra_pattern(self) -> None:
        rules = _rules(extra_malicious_patterns=[r"<iframe\b"])
        verdict = UploadPipeline(rules).validate(_file(b"<IFRAME src=x>"))
        assert verdict.reason_code == ReasonCode.MALICIOUS_CONTENT

    def test_extensions_do_not_replace_builtins(self) -> None:
        rules = _rules(extra_malicious_patterns=[r"forbidden"])
        assert len(rules.patterns) == len(MALICIOUS_PATTERNS) + 1
        assert UploadPipeline(rules).validate(_file(b"<script>x</script>")).accepted is False

    def test_invalid_hex_signature_raises(self) -> None:
        with pytest.raises(ValueError):
            _rules(extra_signatures={"image/bmp": "not-hex"})

    def test_compile_pattern_is_case_insensitive(self) -> None:
        entry = compile_pattern("needle", slug="x")
        assert entry.pattern.search("HAYSTACK NEEDLE")
