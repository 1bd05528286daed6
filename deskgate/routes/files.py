"""File upload endpoints.

  POST /api/files/upload           — one file under the ``file`` field
  POST /api/files/upload-multiple  — up to ``uploads.max_files`` under ``files``

Both routes are classified ``upload`` by the default ``routes:`` table, so
AdmissionMiddleware has admitted the caller before the body is parsed. The
handlers only ever see candidates the integrity pipeline accepted; they hand
them to the upload handler stored on ``app.state.upload_handler``.
"""

from __future__ import annotations

import hashlib
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Request

from deskgate.gateway.dependencies import (
    require_ready,
    validated_multiple_uploads,
    validated_upload,
)
from deskgate.models.upload import UploadCandidate

UploadHandler = Callable[[Request, list[UploadCandidate]], Awaitable[Any]]

router = APIRouter(prefix="/api/files", tags=["files"], dependencies=[Depends(require_ready)])


async def describe_accepted(request: Request, files: list[UploadCandidate]) -> list[dict[str, Any]]:
    """Default upload handler: report what was accepted without storing it."""
    return [
        {
            "filename": candidate.original_filename,
            "mimeType": candidate.declared_mime_type,
            "size": candidate.true_size,
            "sha256": hashlib.sha256(candidate.raw_bytes).hexdigest(),
        }
        for candidate in files
    ]


async def _hand_off(request: Request, files: list[UploadCandidate]) -> Any:
    if not files:
        raise HTTPException(
            status_code=400,
            detail={"code": "NO_FILE", "message": "No file provided"},
        )
    handler: UploadHandler = getattr(request.app.state, "upload_handler", describe_accepted)
    return await handler(request, files)


@router.post("/upload", status_code=201)
async def upload_file(
    request: Request,
    files: list[UploadCandidate] = Depends(validated_upload),
) -> dict[str, Any]:
    data = await _hand_off(request, files)
    return {"message": "File uploaded successfully", "data": data}


@router.post("/upload-multiple", status_code=201)
async def upload_files(
    request: Request,
    files: list[UploadCandidate] = Depends(validated_multiple_uploads),
) -> dict[str, Any]:
    data = await _hand_off(request, files)
    return {"message": "Files uploaded successfully", "data": data}
