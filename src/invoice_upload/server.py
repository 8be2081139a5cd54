"""
Server side of the two-phase upload.

``initiate`` hands the client a write credential and an ``UploadSession`` id;
the client then transfers the bytes straight to the archival store and calls
``confirm``, which checks the object, records the file, runs AI extraction and
removes the session.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from . import config
from .errors import (
    DirectTransferFailed,
    ExtractionFailed,
    RecordPersistenceFailed,
    SessionExpired,
    SessionNotFound,
    UploadError,
    ValidationFailed,
)
from .models import (
    ConfirmResult,
    InitiatedUpload,
    UploadFile,
    UploadSession,
    ValidationResult,
    utcnow,
)
from .services.extraction import ExtractionProvider, normalize_extraction, validate_extraction
from .services.intake import format_file_size
from .services.records import FileRecordStore
from .services.sessions import SessionStore
from .services.storage import ArchivalStore, generate_object_key

logger = logging.getLogger(__name__)

AI_INPUT_MODES = ("url", "transient")


def validate_upload_params(
    filename: str, content_type: str, size: int, user_id: str
) -> ValidationResult:
    """
    Check an upload request. Only images are accepted here: PDFs are
    rasterized on the client before they are transferred.
    """

    def invalid(message: str) -> ValidationResult:
        return ValidationResult(is_valid=False, error=message, error_kind=ValidationFailed.kind)

    if not filename or not filename.strip():
        return invalid("File name is required")
    if len(filename) > config.MAX_FILENAME_LENGTH:
        return invalid(f"File name must be at most {config.MAX_FILENAME_LENGTH} characters")
    if content_type not in config.IMAGE_MIME_TYPES:
        return invalid("Only image files are supported")
    if size <= 0 or size > config.MAX_FILE_SIZE_BYTES:
        return invalid(
            f"File size must be between 1 byte and {format_file_size(config.MAX_FILE_SIZE_BYTES)}"
        )
    if not user_id or not user_id.strip():
        return invalid("User ID is required")
    return ValidationResult(is_valid=True)


class UploadSessionService:
    """Issues upload sessions and completes them once the bytes are stored."""

    def __init__(
        self,
        store: ArchivalStore,
        extractor: ExtractionProvider,
        records: FileRecordStore,
        sessions: SessionStore,
        ai_input_mode: str = config.AI_INPUT_MODE,
        session_ttl: int = config.UPLOAD_SESSION_TTL,
        upload_credential_ttl: int = config.UPLOAD_CREDENTIAL_TTL,
        download_credential_ttl: int = config.DOWNLOAD_CREDENTIAL_TTL,
    ) -> None:
        if ai_input_mode not in AI_INPUT_MODES:
            raise ValueError(f"ai_input_mode must be one of {AI_INPUT_MODES}, got {ai_input_mode!r}")
        self.store = store
        self.extractor = extractor
        self.records = records
        self.sessions = sessions
        self.ai_input_mode = ai_input_mode
        self.session_ttl = session_ttl
        self.upload_credential_ttl = upload_credential_ttl
        self.download_credential_ttl = download_credential_ttl

    async def initiate(
        self,
        user_id: str,
        filename: str,
        content_type: str,
        size: int,
        ai_file_id: str | None = None,
    ) -> InitiatedUpload:
        validation = validate_upload_params(filename, content_type, size, user_id)
        if not validation.is_valid:
            logger.warning(f"[SESSION] Rejected upload request for {filename!r}: {validation.error}")
            raise ValidationFailed(validation.error)

        object_key = generate_object_key(user_id, filename)
        credential = await self.store.issue_upload_credential(
            object_key, content_type, ttl=self.upload_credential_ttl
        )

        now = utcnow()
        session = UploadSession(
            session_id=secrets.token_urlsafe(24),
            user_id=user_id,
            object_key=object_key,
            ai_file_id=ai_file_id,
            original_filename=filename,
            size=size,
            content_type=content_type,
            created_at=now,
            expires_at=now + timedelta(seconds=self.session_ttl),
        )
        await self.sessions.create(session)
        logger.info(
            f"[SESSION] Created session {session.session_id} for {object_key} "
            f"(user={user_id}, {size} bytes, expires {session.expires_at:%H:%M:%S})"
        )

        return InitiatedUpload(
            session_id=session.session_id,
            object_key=object_key,
            upload_url=credential.url,
            expires_at=credential.expires_at,
            headers=credential.headers,
        )

    async def confirm(self, session_id: str, user_id: str) -> ConfirmResult:
        """
        Finish a session after the client reports its direct transfer.

        The session is claimed (removed from the store) before any work runs,
        so only one confirm can proceed and the sweeper no longer sees it; a
        client that gets SessionNotFound or SessionExpired must start over
        with a new upload.
        """

        session = await self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            logger.warning(f"[SESSION] Confirm for unknown session {session_id} (user={user_id})")
            raise SessionNotFound(session_id=session_id)

        if session.is_expired():
            await self.sessions.delete(session_id)
            logger.warning(f"[SESSION] Session {session_id} expired at {session.expires_at.isoformat()}")
            raise SessionExpired(session_id=session_id)

        if not await self.sessions.delete(session_id):
            logger.warning(f"[SESSION] Session {session_id} was already claimed")
            raise SessionNotFound(session_id=session_id)
        logger.info(f"[SESSION] Session {session_id} claimed")

        return await self._complete(session)

    async def _complete(self, session: UploadSession) -> ConfirmResult:
        object_key = session.object_key
        if not await self.store.exists(object_key):
            logger.error(f"[SESSION] {object_key} was not found in the archival store")
            raise DirectTransferFailed(
                "File not found in cloud storage. Please try uploading again",
                object_key=object_key,
            )

        metadata = await self.store.metadata(object_key)
        stored_name = object_key.rsplit("/", 1)[-1]
        try:
            file_id = await self.records.create_file_record(
                original_name=session.original_filename,
                stored_name=stored_name,
                size=metadata.size if metadata else session.size,
                mime_type=(metadata.content_type if metadata else None) or session.content_type,
                object_key=object_key,
            )
        except UploadError:
            raise
        except Exception as exc:
            logger.exception(f"[SESSION] Failed to create file record for {object_key}")
            raise RecordPersistenceFailed(object_key=object_key) from exc

        payload = await self._extract(session)
        extracted = normalize_extraction(payload)

        validation = validate_extraction(extracted)
        for issue in validation.errors + validation.warnings:
            logger.warning(f"[AI] {object_key}: {issue.code} on {issue.field}: {issue.message}")

        logger.info(f"[SESSION] {object_key} processed as file {file_id}")
        return ConfirmResult(file_id=file_id, object_key=object_key, extracted_data=extracted)

    async def _extract(self, session: UploadSession) -> dict[str, Any]:
        if session.ai_file_id is None and self.ai_input_mode == "url":
            credential = await self.store.issue_download_credential(
                session.object_key, ttl=self.download_credential_ttl
            )
            return await self.extractor.extract(image_url=credential.url)

        ai_file_id = session.ai_file_id
        if ai_file_id is None:
            data = await self.store.download(session.object_key)
            ai_file_id = await self.extractor.upload_transient(
                UploadFile(
                    filename=session.object_key.rsplit("/", 1)[-1],
                    content_type=session.content_type,
                    data=data,
                )
            )
        try:
            return await self.extractor.extract(file_id=ai_file_id)
        finally:
            await self._delete_transient(ai_file_id)

    async def _delete_transient(self, ai_file_id: str) -> None:
        try:
            await self.extractor.delete_transient(ai_file_id)
        except ExtractionFailed as exc:
            logger.warning(f"[AI] Transient file {ai_file_id} left behind: {exc.message}")

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Remove expired sessions. Returns how many this call removed."""

        now = now or utcnow()
        removed = 0
        for session in await self.sessions.list_sessions():
            if not session.is_expired(now):
                continue
            if await self.sessions.delete(session.session_id):
                removed += 1
                if session.ai_file_id:
                    await self._delete_transient(session.ai_file_id)
        if removed:
            logger.info(f"[SESSION] Swept {removed} expired session(s)")
        return removed

    async def run_sweeper(self, interval: float = config.SESSION_SWEEP_INTERVAL) -> None:
        """Sweep periodically until cancelled."""

        logger.info(f"[SESSION] Sweeper started (every {interval}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception:
                logger.exception("[SESSION] Session sweep failed")

    async def health(self) -> dict[str, Any]:
        storage_ok = await self.store.health()
        return {
            "healthy": storage_ok,
            "services": {"storage": storage_ok, "ai": self.extractor is not None},
            "ai_input_mode": self.ai_input_mode,
        }

    async def file_access_url(
        self, object_key: str, ttl: int = config.DOWNLOAD_CREDENTIAL_TTL
    ) -> str:
        """Time-limited read URL for viewing a stored invoice."""

        credential = await self.store.issue_download_credential(object_key, ttl=ttl)
        return credential.url
