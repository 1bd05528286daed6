"""FastAPI dependencies for file-accepting routes.

    @router.post("/upload")
    async def upload(files: list[UploadCandidate] = Depends(validated_upload)):
        ...

By the time a dependency below runs, AdmissionMiddleware has already admitted
the request, so admission is always checked before any file byte is read.
A rejected upload raises UploadRejected, rendered as the HTTP 400 envelope by
the handler registered in create_app().
"""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import HTTPException, Request

from deskgate.errors import UploadRejected
from deskgate.gateway.composition import Gateway
from deskgate.gateway.middleware import describe_request
from deskgate.models.upload import UploadCandidate
from deskgate.upload.multipart import SINGLE_FILE, FileField, multiple_files, read_upload_candidates


async def require_ready(request: Request) -> None:
    """Raise HTTP 503 until the lifespan has finished startup."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"code": "NOT_READY", "message": "DeskGate is starting up"},
        )


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def validated_uploads(file_field: FileField) -> Callable[[Request], Awaitable[list[UploadCandidate]]]:
    """Dependency factory: parse the multipart body and validate every file."""

    async def _dependency(request: Request) -> list[UploadCandidate]:
        gateway = get_gateway(request)
        descriptor = describe_request(request, getattr(request.state, "route_class", None))
        try:
            candidates, _fields = await read_upload_candidates(
                request, gateway.upload_limits, file_field
            )
        except UploadRejected as exc:
            gateway.reject_upload(exc.verdict, descriptor)
        return gateway.validate_uploads(candidates, descriptor)

    return _dependency


async def validated_upload(request: Request) -> list[UploadCandidate]:
    """Single file under the ``file`` field."""
    return await validated_uploads(SINGLE_FILE)(request)


async def validated_multiple_uploads(request: Request) -> list[UploadCandidate]:
    """Up to ``uploads.max_files`` files under the ``files`` field."""
    gateway = get_gateway(request)
    return await validated_uploads(multiple_files(gateway.upload_limits.max_files))(request)
