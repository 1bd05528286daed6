"""Multipart form reading with upload limits.

Parses a ``multipart/form-data`` request through Starlette's form parser with
the configured limits, maps parser-level limit errors onto the same reason
codes as the integrity pipeline, and buffers every file into an
UploadCandidate:

    parser / form condition                   reason code
    body over the upload body budget          FILE_TOO_LARGE
    more files than uploads.max_files         TOO_MANY_FILES
    more fields than uploads.max_fields       TOO_MANY_FIELDS
    a field value over uploads.max_field_size FIELD_TOO_LARGE
    a field name over max_field_name_size     FIELD_TOO_LARGE
    a file under an unexpected field name     UNEXPECTED_FILE
    a file over uploads.max_file_size         FILE_TOO_LARGE
    anything else the parser rejects          MALFORMED_UPLOAD

The body budget is the most a well-formed request for the route can carry:
every allowed file at max_file_size, every allowed field at max_field_size,
plus a fixed allowance per part. A declared Content-Length over the budget is
rejected before the body is read. Chunked bodies are counted as they stream
in and reading stops at the first chunk that crosses the budget.
"""

from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator

from starlette.datastructures import FormData, UploadFile
from starlette.formparsers import FormParser, MultiPartException, MultiPartParser
from starlette.requests import Request

from deskgate.config import UploadConfig
from deskgate.constants import MULTIPART_PART_OVERHEAD_BYTES
from deskgate.errors import UploadRejected
from deskgate.models.upload import ReasonCode, UploadCandidate, ValidationVerdict

_DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class FileField:
    """A form field allowed to carry files, and how many."""

    name: str
    max_count: int


SINGLE_FILE = FileField(name="file", max_count=1)


def multiple_files(max_count: int) -> FileField:
    return FileField(name="files", max_count=max_count)


class BodyLimitExceeded(MultiPartException):
    """The request body grew past the upload body budget."""


def upload_body_budget(limits: UploadConfig, file_field: FileField) -> int:
    """Largest request body, in bytes, accepted for *file_field*."""
    parts = file_field.max_count + limits.max_fields
    return (
        file_field.max_count * limits.max_file_size
        + limits.max_fields * limits.max_field_size
        + parts * MULTIPART_PART_OVERHEAD_BYTES
    )


async def _capped(stream: AsyncIterator[bytes], budget: int) -> AsyncIterator[bytes]:
    received = 0
    async for chunk in stream:
        received += len(chunk)
        if received > budget:
            raise BodyLimitExceeded(f"Request body exceeded {budget} bytes.")
        yield chunk


def _reject(code: ReasonCode, message: str) -> UploadRejected:
    return UploadRejected(ValidationVerdict.reject(code, message))


def _too_large(limits: UploadConfig) -> UploadRejected:
    return _reject(
        ReasonCode.FILE_TOO_LARGE,
        f"File too large. Maximum size is {limits.max_file_size} bytes",
    )


def _map_parser_error(message: str, limits: UploadConfig) -> UploadRejected:
    if message.startswith("Too many files"):
        return _reject(
            ReasonCode.TOO_MANY_FILES,
            f"Too many files. Maximum is {limits.max_files} files",
        )
    if message.startswith("Too many fields"):
        return _reject(ReasonCode.TOO_MANY_FIELDS, "Too many form fields")
    if message.startswith(("Part exceeded maximum size", "Field exceeded maximum size")):
        return _reject(ReasonCode.FIELD_TOO_LARGE, "Form field too large")
    return _reject(ReasonCode.MALFORMED_UPLOAD, "Malformed multipart body")


def _check_declared_length(request: Request, budget: int, limits: UploadConfig) -> None:
    declared = request.headers.get("content-length")
    if declared is None:
        return
    try:
        length = int(declared)
    except ValueError:
        raise _reject(ReasonCode.MALFORMED_UPLOAD, "Malformed multipart body") from None
    if length > budget:
        raise _too_large(limits)


async def _parse_form(
    request: Request,
    limits: UploadConfig,
    file_field: FileField,
) -> FormData:
    budget = upload_body_budget(limits, file_field)
    _check_declared_length(request, budget, limits)

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    try:
        async with aclosing(_capped(request.stream(), budget)) as stream:
            if content_type == "multipart/form-data":
                parser = MultiPartParser(
                    request.headers,
                    stream,
                    max_files=limits.max_files,
                    max_fields=limits.max_fields,
                    max_part_size=limits.max_field_size,
                )
                return await parser.parse()
            if content_type == "application/x-www-form-urlencoded":
                return await FormParser(request.headers, stream, max_fields=limits.max_fields).parse()
    except BodyLimitExceeded as exc:
        raise _too_large(limits) from exc
    except MultiPartException as exc:
        raise _map_parser_error(exc.message, limits) from exc
    return FormData()


async def read_upload_candidates(
    request: Request,
    limits: UploadConfig,
    file_field: FileField,
) -> tuple[list[UploadCandidate], dict[str, str]]:
    """Parse the request form and buffer its files.

    Returns:
        (candidates, fields): buffered files in arrival order, and the
        non-file form fields.

    Raises:
        UploadRejected: The body is over budget, a multipart limit was
            exceeded, or the body is malformed.
    """
    form = await _parse_form(request, limits, file_field)

    candidates: list[UploadCandidate] = []
    fields: dict[str, str] = {}
    try:
        for name, value in form.multi_items():
            if len(name) > limits.max_field_name_size:
                raise _reject(ReasonCode.FIELD_TOO_LARGE, "Form field name too long")

            if not isinstance(value, UploadFile):
                fields[name] = value
                continue

            if name != file_field.name or len(candidates) >= file_field.max_count:
                raise _reject(ReasonCode.UNEXPECTED_FILE, "Unexpected file field")

            if value.size is not None and value.size > limits.max_file_size:
                raise _too_large(limits)

            raw_bytes = await value.read()
            candidates.append(
                UploadCandidate(
                    raw_bytes=raw_bytes,
                    declared_mime_type=value.content_type or _DEFAULT_MIME_TYPE,
                    original_filename=value.filename or "",
                    declared_size=value.size,
                )
            )
    finally:
        await form.close()

    return candidates, fields
