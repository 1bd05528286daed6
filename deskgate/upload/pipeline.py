"""Upload integrity pipeline.

Each stage is an independent function ``(candidate, rules) -> verdict | None``
that returns a rejecting ValidationVerdict or None to pass. ``validate()``
runs the stages in order and returns the first rejection; every stage is
sufficient on its own to reject, so the order only decides which reason is
reported when several apply and how early the cheap checks short-circuit:

  1. MIME allowlist              UNSUPPORTED_TYPE
  2. extension denylist          DANGEROUS_EXTENSION
  3. filename sanitation         INVALID_FILENAME
  4. size bound                  FILE_TOO_LARGE
  5. executable header ("MZ")    EXECUTABLE_REJECTED
  6. magic-byte signature        HEADER_MISMATCH
  7. compression ratio (zip)     SUSPICIOUS_COMPRESSION
  8. content pattern scan        MALICIOUS_CONTENT

The executable check precedes the signature check so a PE file declared as
an image is reported as an executable rather than a mislabeled image.

All stages read the same immutable ``raw_bytes``; nothing is mutated and no
state is shared between calls, so one pipeline instance serves every request.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from deskgate.config import UploadConfig
from deskgate.constants import SIGNATURE_PREFIX_BYTES
from deskgate.models.upload import ReasonCode, UploadCandidate, ValidationVerdict
from deskgate.upload.definitions import (
    ALLOWED_MIME_TYPES,
    DANGEROUS_EXTENSIONS,
    MALICIOUS_PATTERNS,
    PE_HEADER,
    SIGNATURES,
    PatternEntry,
    compile_pattern,
    is_zip_family,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadRules:
    """Effective tables and limits: built-in defaults plus config extensions."""

    max_file_size: int
    max_files: int
    scan_prefix_bytes: int
    max_compression_ratio: int
    allowed_mime_types: frozenset[str] = ALLOWED_MIME_TYPES
    dangerous_extensions: frozenset[str] = DANGEROUS_EXTENSIONS
    signatures: dict[str, bytes] = field(default_factory=lambda: dict(SIGNATURES))
    patterns: tuple[PatternEntry, ...] = tuple(MALICIOUS_PATTERNS)

    @classmethod
    def from_config(cls, uploads: UploadConfig) -> "UploadRules":
        """Merge ``uploads.extra_*`` onto the built-in tables.

        Raises:
            ValueError: An extra signature is not a hex string.
            re2.error:  An extra pattern is not valid re2 syntax.
        """
        extensions = {
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in uploads.extra_dangerous_extensions
        }
        signatures = dict(SIGNATURES)
        for mime_type, hex_signature in uploads.extra_signatures.items():
            signatures[mime_type] = bytes.fromhex(hex_signature)
        extra_patterns = tuple(
            compile_pattern(source, slug=f"config-{index}")
            for index, source in enumerate(uploads.extra_malicious_patterns)
        )
        return cls(
            max_file_size=uploads.max_file_size,
            max_files=uploads.max_files,
            scan_prefix_bytes=uploads.scan_prefix_bytes,
            max_compression_ratio=uploads.max_compression_ratio,
            allowed_mime_types=ALLOWED_MIME_TYPES | frozenset(uploads.extra_allowed_mime_types),
            dangerous_extensions=DANGEROUS_EXTENSIONS | frozenset(extensions),
            signatures=signatures,
            patterns=tuple(MALICIOUS_PATTERNS) + extra_patterns,
        )


Stage = Callable[[UploadCandidate, UploadRules], Optional[ValidationVerdict]]


# ─── Stages ───────────────────────────────────────────────────────────────────


def check_mime_allowlist(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    if candidate.declared_mime_type not in rules.allowed_mime_types:
        return ValidationVerdict.reject(
            ReasonCode.UNSUPPORTED_TYPE,
            f"File type {candidate.declared_mime_type} is not allowed",
        )
    return None


def check_extension(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    ext = os.path.splitext(candidate.original_filename)[1].lower()
    if ext in rules.dangerous_extensions:
        return ValidationVerdict.reject(
            ReasonCode.DANGEROUS_EXTENSION,
            f"File extension {ext} is not allowed",
        )
    return None


def check_filename(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    name = candidate.original_filename
    if not name or ".." in name or "/" in name or "\\" in name or "\0" in name:
        return ValidationVerdict.reject(ReasonCode.INVALID_FILENAME, "Invalid filename")
    return None


def check_size(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    if candidate.true_size > rules.max_file_size:
        return ValidationVerdict.reject(
            ReasonCode.FILE_TOO_LARGE,
            f"File too large. Maximum size is {rules.max_file_size} bytes",
        )
    return None


def check_executable_header(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    if candidate.raw_bytes[: len(PE_HEADER)] == PE_HEADER:
        return ValidationVerdict.reject(
            ReasonCode.EXECUTABLE_REJECTED,
            "Executable files are not allowed",
        )
    return None


def check_signature(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    # Too short to carry a signature; the other stages still apply.
    if candidate.true_size < SIGNATURE_PREFIX_BYTES:
        return None
    expected = rules.signatures.get(candidate.declared_mime_type)
    if expected is None:
        return None
    if candidate.raw_bytes[: len(expected)] != expected:
        return ValidationVerdict.reject(
            ReasonCode.HEADER_MISMATCH,
            f"File header does not match declared MIME type {candidate.declared_mime_type}",
        )
    return None


def check_compression_ratio(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    if not is_zip_family(candidate.declared_mime_type) or candidate.true_size == 0:
        return None
    ratio = candidate.effective_declared_size / candidate.true_size
    if ratio > rules.max_compression_ratio:
        return ValidationVerdict.reject(
            ReasonCode.SUSPICIOUS_COMPRESSION,
            "Suspicious compression ratio detected",
        )
    return None


def scan_malicious_content(candidate: UploadCandidate, rules: UploadRules) -> Optional[ValidationVerdict]:
    """Best-effort pattern scan over the decoded prefix. Not a sanitizer."""
    text = candidate.raw_bytes[: rules.scan_prefix_bytes].decode("utf-8", errors="replace")
    for entry in rules.patterns:
        if entry.pattern.search(text):
            logger.debug("Malicious content pattern matched: %s", entry.slug)
            return ValidationVerdict.reject(
                ReasonCode.MALICIOUS_CONTENT,
                "File contains potentially malicious content",
            )
    return None


STAGES: tuple[Stage, ...] = (
    check_mime_allowlist,
    check_extension,
    check_filename,
    check_size,
    check_executable_header,
    check_signature,
    check_compression_ratio,
    scan_malicious_content,
)


# ─── Pipeline ─────────────────────────────────────────────────────────────────


class UploadPipeline:
    """Runs STAGES over each candidate; stateless apart from its rules."""

    def __init__(self, rules: UploadRules, stages: Sequence[Stage] = STAGES) -> None:
        self.rules = rules
        self._stages = tuple(stages)

    def validate(self, candidate: UploadCandidate) -> ValidationVerdict:
        for stage in self._stages:
            verdict = stage(candidate, self.rules)
            if verdict is not None:
                return verdict
        return ValidationVerdict.accept()

    def validate_batch(
        self, candidates: Sequence[UploadCandidate]
    ) -> tuple[ValidationVerdict, Optional[UploadCandidate]]:
        """Validate every file of one request.

        Returns the first rejecting verdict together with the offending
        candidate (None for a request-level rejection), or an accepting
        verdict and None when every file passes.
        """
        if len(candidates) > self.rules.max_files:
            return (
                ValidationVerdict.reject(
                    ReasonCode.TOO_MANY_FILES,
                    f"Too many files. Maximum is {self.rules.max_files} files",
                ),
                None,
            )
        for candidate in candidates:
            verdict = self.validate(candidate)
            if not verdict.accepted:
                return verdict, candidate
        return ValidationVerdict.accept(), None
