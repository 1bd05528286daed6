"""Tables for the upload integrity pipeline.

All content patterns are pre-compiled at module load time using google-re2,
which runs in linear time, so a crafted upload cannot trigger catastrophic
backtracking in the scanner. Config-supplied patterns go through
``compile_pattern()`` and are compiled once at startup.

These tables are heuristics, not a content-type sniffer or an antivirus
engine. Extend them through the ``uploads.extra_*`` config keys rather than
by adding checks to the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import re2


@dataclass(frozen=True)
class PatternEntry:
    """A single compiled content pattern.

    Fields:
        pattern: Pre-compiled re2 pattern object.
        slug:    Kebab-case identifier, logged when the pattern matches.
    """
    pattern: Any           # re2._Regexp, pre-compiled at module load
    slug: str


def compile_pattern(source: str, slug: str) -> PatternEntry:
    """Compile a config-supplied pattern (case-insensitive).

    Raises:
        re2.error: The pattern is not valid re2 syntax.
    """
    return PatternEntry(pattern=re2.compile(f"(?i){source}"), slug=slug)


# ===========================================================================
# MIME ALLOWLIST
# ===========================================================================

ALLOWED_MIME_TYPES: frozenset[str] = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "text/csv",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/zip",
    "application/x-zip-compressed",
})


# ===========================================================================
# EXTENSION DENYLIST (compared lower-case, leading dot included)
# ===========================================================================

DANGEROUS_EXTENSIONS: frozenset[str] = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js",
    ".jar", ".app", ".deb", ".pkg", ".dmg", ".rpm", ".msi", ".run",
    ".bin", ".sh", ".ps1", ".php", ".asp", ".aspx", ".jsp", ".py",
    ".rb", ".pl",
})


# ===========================================================================
# MAGIC-BYTE SIGNATURES
# Types without an entry skip the signature stage.
# ===========================================================================

ZIP_SIGNATURE = bytes([0x50, 0x4B, 0x03, 0x04])

SIGNATURES: dict[str, bytes] = {
    "image/jpeg": bytes([0xFF, 0xD8, 0xFF]),
    "image/png": bytes([0x89, 0x50, 0x4E, 0x47]),
    "image/gif": bytes([0x47, 0x49, 0x46, 0x38]),
    "application/pdf": bytes([0x25, 0x50, 0x44, 0x46]),
    "application/zip": ZIP_SIGNATURE,
    "application/x-zip-compressed": ZIP_SIGNATURE,
}

# Windows PE executables start with "MZ" regardless of their declared type.
PE_HEADER = b"MZ"


def is_zip_family(mime_type: str) -> bool:
    return "zip" in mime_type.lower()


# ===========================================================================
# MALICIOUS CONTENT PATTERNS
# COMPILED AT MODULE LOAD, never per-request
# ===========================================================================

MALICIOUS_PATTERNS: list[PatternEntry] = [
    # ─── Script blocks ────────────────────────────────────────────────────
    PatternEntry(
        pattern=re2.compile(r'(?is)<script\b[^>]*>.*?</script\s*>'),
        slug="script-block",
    ),
    # ─── Script URIs ──────────────────────────────────────────────────────
    PatternEntry(
        pattern=re2.compile(r'(?i)javascript:'),
        slug="javascript-uri",
    ),
    PatternEntry(
        pattern=re2.compile(r'(?i)vbscript:'),
        slug="vbscript-uri",
    ),
    # ─── Inline event handlers ────────────────────────────────────────────
    PatternEntry(
        pattern=re2.compile(r'(?i)onload\s*='),
        slug="onload-handler",
    ),
    PatternEntry(
        pattern=re2.compile(r'(?i)onerror\s*='),
        slug="onerror-handler",
    ),
    PatternEntry(
        pattern=re2.compile(r'(?i)onclick\s*='),
        slug="onclick-handler",
    ),
    # ─── Dynamic evaluation / DOM sinks ───────────────────────────────────
    PatternEntry(
        pattern=re2.compile(r'(?i)eval\s*\('),
        slug="eval-call",
    ),
    PatternEntry(
        pattern=re2.compile(r'(?i)document\.write'),
        slug="document-write",
    ),
    PatternEntry(
        pattern=re2.compile(r'(?i)window\.location'),
        slug="window-location",
    ),
    # ─── URL-encoded script tags ──────────────────────────────────────────
    PatternEntry(
        pattern=re2.compile(r'(?i)%3Cscript'),
        slug="encoded-script-open",
    ),
    PatternEntry(
        pattern=re2.compile(r'(?i)%3C%2Fscript%3E'),
        slug="encoded-script-close",
    ),
]
