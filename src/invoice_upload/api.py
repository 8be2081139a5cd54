"""
HTTP surface for the server side of the upload.

Exposes session initiation and confirmation, read access to stored files and a
health check. ``UploadError`` subclasses are returned as ``{"error", "kind"}``
with a status code chosen by kind.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from azure.storage.blob import BlobServiceClient
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from . import config
from .errors import ErrorKind, UploadError
from .logging_config import configure_logging
from .models import ConfirmResult, InitiatedUpload
from .server import UploadSessionService
from .services.extraction import OpenAIExtractionProvider
from .services.records import InMemoryFileRecordStore
from .services.sessions import BlobSessionStore
from .services.storage import AzureBlobArchivalStore

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.SESSION_NOT_FOUND: 404,
    ErrorKind.DIRECT_TRANSFER_FAILED: 409,
    ErrorKind.SESSION_EXPIRED: 410,
    ErrorKind.CREDENTIAL_ISSUANCE_FAILED: 502,
    ErrorKind.EXTRACTION_FAILED: 502,
    ErrorKind.INVALID_EXTRACTION_FORMAT: 502,
}


class InitiateUploadRequest(BaseModel):
    user_id: str
    filename: str
    content_type: str
    size: int = Field(..., description="Size in bytes of the file the client will PUT")
    ai_file_id: str | None = Field(
        default=None, description="Provider file id when the client already uploaded the image"
    )


class ConfirmUploadRequest(BaseModel):
    user_id: str


class FileAccessResponse(BaseModel):
    object_key: str
    url: str


async def build_service() -> UploadSessionService:
    """Wire the collaborators from environment configuration."""

    blob_service_client = BlobServiceClient.from_connection_string(
        config.AZURE_STORAGE_CONNECTION_STRING
    )
    store = AzureBlobArchivalStore(blob_service_client)
    await store.ensure_container_exists()
    sessions = BlobSessionStore(blob_service_client)
    await sessions.ensure_container_exists()
    extractor = OpenAIExtractionProvider(AsyncOpenAI(api_key=config.OPENAI_API_KEY))
    return UploadSessionService(
        store=store,
        extractor=extractor,
        records=InMemoryFileRecordStore(),
        sessions=sessions,
    )


def create_app(
    service: UploadSessionService | None = None,
    sweep_interval: float | None = config.SESSION_SWEEP_INTERVAL,
) -> FastAPI:
    """
    Build the upload API.

    ``service`` is created from the environment at startup when not given.
    Pass ``sweep_interval=None`` to skip the background session sweeper.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.service = service or await build_service()
        sweeper = None
        if sweep_interval is not None:
            sweeper = asyncio.create_task(app.state.service.run_sweeper(sweep_interval))
        logger.info(f"[API] Upload API ready (ai_input_mode={app.state.service.ai_input_mode})")
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

    app = FastAPI(title="Invoice Upload API", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
        status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
        logger.warning(
            f"[API] {request.method} {request.url.path} -> {status_code} {exc.kind.value}: {exc.message}"
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "kind": exc.kind.value},
        )

    @app.post("/api/uploads", response_model=InitiatedUpload, status_code=201)
    async def initiate_upload(body: InitiateUploadRequest, request: Request) -> InitiatedUpload:
        return await request.app.state.service.initiate(
            user_id=body.user_id,
            filename=body.filename,
            content_type=body.content_type,
            size=body.size,
            ai_file_id=body.ai_file_id,
        )

    @app.post("/api/uploads/{session_id}/confirm", response_model=ConfirmResult)
    async def confirm_upload(
        session_id: str, body: ConfirmUploadRequest, request: Request
    ) -> ConfirmResult:
        return await request.app.state.service.confirm(session_id, body.user_id)

    @app.get("/api/files/access", response_model=FileAccessResponse)
    async def file_access(object_key: str, request: Request) -> FileAccessResponse:
        url = await request.app.state.service.file_access_url(object_key)
        return FileAccessResponse(object_key=object_key, url=url)

    @app.get("/healthz")
    async def health(request: Request) -> JSONResponse:
        report = await request.app.state.service.health()
        return JSONResponse(report, status_code=200 if report["healthy"] else 503)

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8080, reload=False)
