"""
Client side of the upload pipeline.

One file goes through: validate -> rasterize (PDF only) -> compress ->
request an upload session -> direct transfer to the archival store ->
confirm (file record + AI extraction). Stages run strictly in that order;
the first failure ends the run with a FAILED status and no retry.

Batches run up to ``BATCH_CONCURRENCY`` pipelines at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

import aiohttp

from . import config
from .errors import (
    ERROR_MESSAGES,
    CredentialIssuanceFailed,
    ErrorKind,
    UploadError,
    ValidationFailed,
    error_from_kind,
)
from .models import (
    BatchUploadResult,
    ConfirmResult,
    InitiatedUpload,
    ProgressEvent,
    UploadCredential,
    UploadFile,
    UploadResult,
    UploadStatus,
)
from .server import UploadSessionService
from .services import image_compressor, intake, pdf_rasterizer
from .services.http import RetryConfig, TransferProgressCallback, fetch_with_retry
from .services.status import ProgressCallback, ProgressTracker, aggregate

logger = logging.getLogger(__name__)

FileProgressCallback = Callable[[int, UploadStatus, float, "str | None"], None]
OverallProgressCallback = Callable[[int, int], None]

# Confirm is not idempotent: the session is gone after the first attempt
CONFIRM_RETRY = RetryConfig(retryable_status_codes=(429,))


class UploadBackend(Protocol):
    """Server half of the two-phase upload, as seen by the client."""

    async def request_upload(
        self, user_id: str, filename: str, content_type: str, size: int
    ) -> InitiatedUpload: ...

    async def confirm(self, session_id: str, user_id: str) -> ConfirmResult: ...


class Uploader(Protocol):
    async def put(
        self,
        credential: UploadCredential,
        data: bytes,
        content_type: str,
        on_progress: TransferProgressCallback | None = None,
    ) -> None: ...


class LocalUploadBackend:
    """Calls an in-process ``UploadSessionService``."""

    def __init__(self, service: UploadSessionService) -> None:
        self.service = service

    async def request_upload(
        self, user_id: str, filename: str, content_type: str, size: int
    ) -> InitiatedUpload:
        return await self.service.initiate(user_id, filename, content_type, size)

    async def confirm(self, session_id: str, user_id: str) -> ConfirmResult:
        return await self.service.confirm(session_id, user_id)


class HttpUploadBackend:
    """Calls the upload API over HTTP with retries."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = config.UPLOAD_API_URL,
        retry: RetryConfig | None = None,
    ) -> None:
        self._session = session
        self.base_url = base_url.rstrip("/")
        self.retry = retry or RetryConfig()

    @staticmethod
    def _raise_for_error(data: Any, fallback: type[UploadError]) -> None:
        if isinstance(data, dict) and data.get("kind"):
            raise error_from_kind(data["kind"], data.get("error"))
        raise fallback()

    async def request_upload(
        self, user_id: str, filename: str, content_type: str, size: int
    ) -> InitiatedUpload:
        try:
            response = await fetch_with_retry(
                self._session,
                "POST",
                f"{self.base_url}/api/uploads",
                json={
                    "user_id": user_id,
                    "filename": filename,
                    "content_type": content_type,
                    "size": size,
                },
                retry=self.retry,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CredentialIssuanceFailed() from exc

        if not response.ok:
            self._raise_for_error(response.data, CredentialIssuanceFailed)
        return InitiatedUpload.model_validate(response.data)

    async def confirm(self, session_id: str, user_id: str) -> ConfirmResult:
        try:
            response = await fetch_with_retry(
                self._session,
                "POST",
                f"{self.base_url}/api/uploads/{session_id}/confirm",
                json={"user_id": user_id},
                retry=CONFIRM_RETRY,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UploadError() from exc

        if not response.ok:
            self._raise_for_error(response.data, UploadError)
        return ConfirmResult.model_validate(response.data)


class UploadPipeline:
    def __init__(self, backend: UploadBackend, uploader: Uploader) -> None:
        self.backend = backend
        self.uploader = uploader

    async def run_single_file_upload(
        self,
        file: UploadFile,
        user_id: str,
        on_progress: ProgressCallback | None = None,
        max_pages: int = config.PDF_MAX_READ_PAGES,
        file_id: str | None = None,
    ) -> UploadResult:
        """
        Run one file end to end.

        ``on_progress(status, percent, message)`` sees monotonically
        non-decreasing percentages and its last call is COMPLETED or FAILED.
        """

        tracker = ProgressTracker(file_id or file.filename, on_progress)
        tracker.update(UploadStatus.NOT_UPLOADED, 0, "Starting upload...")
        stage = UploadStatus.NOT_UPLOADED
        pdf_info: dict[str, Any] = {}

        try:
            validation = intake.validate(file)
            if not validation.is_valid:
                raise ValidationFailed(validation.error)

            working: UploadFile = file
            if intake.is_pdf(file):
                stage = UploadStatus.PROCESSING_PDF
                tracker.stage(stage, 50, "Converting PDF to image...")
                strategy = await pdf_rasterizer.select_strategy(file, max_pages=max_pages)
                working = strategy.image
                pdf_info = {
                    "page_count": strategy.page_count,
                    "processed_pages": strategy.processed_pages,
                    "processing_strategy": strategy.strategy,
                }
                tracker.stage(stage, 100, "PDF converted to image")

            stage = UploadStatus.COMPRESSING_IMAGE
            tracker.stage(stage, 100 / 3, "Compressing image...")
            target_bytes, max_height = image_compressor.compression_budget(
                pdf_info.get("processing_strategy"), pdf_info.get("processed_pages")
            )
            compressed = await image_compressor.compress(
                working, target_bytes=target_bytes, max_height=max_height
            )
            working = compressed.image
            tracker.stage(stage, 100, "Image compressed")

            stage = UploadStatus.UPLOADING_TO_STORE
            tracker.stage(stage, 0, "Preparing upload to cloud storage...")
            initiated = await self.backend.request_upload(
                user_id, working.filename, working.content_type, working.size
            )
            credential = UploadCredential(
                url=initiated.upload_url,
                object_key=initiated.object_key,
                method="PUT",
                expires_at=initiated.expires_at,
                headers=initiated.headers,
            )
            await self.uploader.put(
                credential,
                working.data,
                working.content_type,
                on_progress=lambda percent: tracker.stage(
                    UploadStatus.UPLOADING_TO_STORE, percent, "Uploading to cloud storage..."
                ),
            )
            tracker.stage(stage, 100, "Uploaded to cloud storage")

            stage = UploadStatus.AI_PROCESSING
            tracker.stage(stage, 0, "AI analyzing your invoice...")
            confirmed = await self.backend.confirm(initiated.session_id, user_id)

        except UploadError as exc:
            logger.error(
                f"[PIPELINE] {file.filename} failed during {stage.value}: "
                f"{exc.kind.value}: {exc.message}"
            )
            tracker.fail(exc.message)
            return UploadResult(
                success=False,
                error=exc.message,
                error_kind=exc.kind,
                failed_stage=stage,
                **pdf_info,
            )
        except Exception:
            logger.exception(f"[PIPELINE] {file.filename} failed unexpectedly during {stage.value}")
            message = ERROR_MESSAGES[ErrorKind.UPLOAD_FAILED]
            tracker.fail(message)
            return UploadResult(
                success=False,
                error=message,
                error_kind=ErrorKind.UPLOAD_FAILED,
                failed_stage=stage,
                **pdf_info,
            )

        tracker.complete("Upload and analysis completed successfully!")
        logger.info(
            f"[PIPELINE] {file.filename} completed: file_id={confirmed.file_id}, "
            f"object_key={confirmed.object_key}"
        )
        return UploadResult(
            success=True,
            file_id=confirmed.file_id,
            extracted_data=confirmed.extracted_data,
            object_key=confirmed.object_key,
            **pdf_info,
        )

    async def stream_single_file_upload(
        self,
        file: UploadFile,
        user_id: str,
        max_pages: int = config.PDF_MAX_READ_PAGES,
    ) -> AsyncIterator[ProgressEvent]:
        """Yield progress events for one run; the last event is terminal."""

        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()

        def on_progress(status: UploadStatus, progress: float, message: str | None) -> None:
            queue.put_nowait(
                ProgressEvent(file_id=file.filename, status=status, progress=progress, message=message)
            )

        async def run() -> UploadResult:
            try:
                return await self.run_single_file_upload(file, user_id, on_progress, max_pages)
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run())
        try:
            # Hold back one event so the terminal one can carry the error kind
            pending: ProgressEvent | None = None
            while (event := await queue.get()) is not None:
                if pending is not None:
                    yield pending
                pending = event

            result = await task
            if pending is not None:
                if result.error_kind is not None:
                    pending = pending.model_copy(update={"error_kind": result.error_kind})
                yield pending
        finally:
            if not task.done():
                task.cancel()

    async def run_batch_upload(
        self,
        files: list[UploadFile],
        user_id: str,
        on_file_progress: FileProgressCallback | None = None,
        on_overall_progress: OverallProgressCallback | None = None,
        max_pages: int = config.PDF_MAX_READ_PAGES,
        concurrency: int = config.BATCH_CONCURRENCY,
    ) -> BatchUploadResult:
        """
        Upload ``files`` in windows of ``concurrency`` pipelines.

        Files are independent: a failure, or an unexpected exception, affects
        only that file's result. Results keep the input order.
        """

        total = len(files)
        completed = 0
        trackers: dict[int, ProgressTracker] = {}

        async def run_one(index: int, file: UploadFile) -> UploadResult:
            nonlocal completed

            def forward(status: UploadStatus, progress: float, message: str | None) -> None:
                if on_file_progress is not None:
                    on_file_progress(index, status, progress, message)

            tracker = ProgressTracker(str(index))
            trackers[index] = tracker

            def on_progress(status: UploadStatus, progress: float, message: str | None) -> None:
                tracker.update(status, progress, message)
                forward(status, progress, message)

            try:
                result = await self.run_single_file_upload(
                    file, user_id, on_progress, max_pages, file_id=str(index)
                )
            except Exception:
                logger.exception(f"[PIPELINE] Batch item {index} ({file.filename}) crashed")
                message = ERROR_MESSAGES[ErrorKind.UPLOAD_FAILED]
                if tracker.update(UploadStatus.FAILED, tracker.progress, message, error=message):
                    forward(UploadStatus.FAILED, tracker.progress, message)
                result = UploadResult(
                    success=False, error=message, error_kind=ErrorKind.UPLOAD_FAILED
                )

            completed += 1
            if on_overall_progress is not None:
                on_overall_progress(completed, total)
            return result

        results: list[UploadResult] = []
        for start in range(0, total, concurrency):
            window = files[start : start + concurrency]
            logger.info(
                f"[PIPELINE] Batch window {start // concurrency + 1}: "
                f"files {start + 1}-{start + len(window)} of {total}"
            )
            results.extend(
                await asyncio.gather(
                    *(run_one(start + offset, file) for offset, file in enumerate(window))
                )
            )

        success_count = sum(1 for result in results if result.success)
        summary = aggregate(trackers[index].state for index in sorted(trackers))
        logger.info(
            f"[PIPELINE] Batch finished: {success_count} succeeded, "
            f"{total - success_count} failed of {total}"
        )
        return BatchUploadResult(
            results=results,
            success_count=success_count,
            failure_count=total - success_count,
            summary=summary,
        )
