"""Upload contracts: UploadCandidate, ReasonCode, ValidationVerdict."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ReasonCode(str, Enum):
    """Machine-readable rejection codes returned to callers."""

    # Integrity pipeline stages
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    DANGEROUS_EXTENSION = "DANGEROUS_EXTENSION"
    INVALID_FILENAME = "INVALID_FILENAME"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    TOO_MANY_FILES = "TOO_MANY_FILES"
    HEADER_MISMATCH = "HEADER_MISMATCH"
    MALICIOUS_CONTENT = "MALICIOUS_CONTENT"
    EXECUTABLE_REJECTED = "EXECUTABLE_REJECTED"
    SUSPICIOUS_COMPRESSION = "SUSPICIOUS_COMPRESSION"

    # Multipart parsing limits
    UNEXPECTED_FILE = "UNEXPECTED_FILE"
    TOO_MANY_FIELDS = "TOO_MANY_FIELDS"
    FIELD_TOO_LARGE = "FIELD_TOO_LARGE"
    MALFORMED_UPLOAD = "MALFORMED_UPLOAD"


@dataclass(frozen=True)
class UploadCandidate:
    """One uploaded file, buffered in memory for the duration of one request.

    ``declared_mime_type``, ``original_filename`` and ``declared_size`` come from
    the caller and are never trusted: the pipeline re-derives the true size and
    signature from ``raw_bytes``.

    ``declared_size`` defaults to the buffer length when the caller supplied none.
    """

    raw_bytes: bytes
    declared_mime_type: str
    original_filename: str
    declared_size: Optional[int] = None

    @property
    def true_size(self) -> int:
        return len(self.raw_bytes)

    @property
    def effective_declared_size(self) -> int:
        return self.declared_size if self.declared_size is not None else len(self.raw_bytes)


@dataclass(frozen=True)
class ValidationVerdict:
    """Outcome of validating one UploadCandidate. Immutable."""

    accepted: bool
    reason_code: Optional[ReasonCode] = None
    message: str = ""

    @classmethod
    def accept(cls) -> "ValidationVerdict":
        return cls(accepted=True, message="File accepted")

    @classmethod
    def reject(cls, reason_code: ReasonCode, message: str) -> "ValidationVerdict":
        return cls(accepted=False, reason_code=reason_code, message=message)
