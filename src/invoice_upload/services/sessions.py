"""
Upload session stores.

``InMemorySessionStore`` serves tests and single-process runs;
``BlobSessionStore`` keeps one JSON blob per session so several API workers
share them. Deleting a session that is already gone is a no-op in both.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from .. import config
from ..models import UploadSession

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def create(self, session: UploadSession) -> None: ...

    async def get(self, session_id: str) -> UploadSession | None: ...

    async def delete(self, session_id: str) -> bool: ...

    async def list_sessions(self) -> list[UploadSession]: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: UploadSession) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session
        logger.debug(f"[SESSION] Stored session {session.session_id}")

    async def get(self, session_id: str) -> UploadSession | None:
        async with self._lock:
            return self._sessions.get(session_id)

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(session_id, None)
        return removed is not None

    async def list_sessions(self) -> list[UploadSession]:
        async with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


class BlobSessionStore:
    """Sessions persisted as ``<session_id>.json`` blobs in their own container."""

    def __init__(
        self,
        blob_service_client: BlobServiceClient,
        container_name: str = config.SESSION_CONTAINER,
    ) -> None:
        self._container = blob_service_client.get_container_client(container_name)
        self.container_name = container_name

    async def ensure_container_exists(self) -> None:
        try:
            await asyncio.to_thread(self._container.create_container)
            logger.info(f"[SESSION] Created container '{self.container_name}'")
        except ResourceExistsError:
            logger.info(f"[SESSION] Container '{self.container_name}' already exists")

    @staticmethod
    def _blob_name(session_id: str) -> str:
        return f"{session_id}.json"

    async def create(self, session: UploadSession) -> None:
        blob = self._container.get_blob_client(self._blob_name(session.session_id))
        await asyncio.to_thread(
            blob.upload_blob,
            session.model_dump_json(),
            overwrite=True,
            content_settings=ContentSettings(content_type="application/json"),
        )
        logger.debug(f"[SESSION] Stored session {session.session_id}")

    async def get(self, session_id: str) -> UploadSession | None:
        blob = self._container.get_blob_client(self._blob_name(session_id))
        try:
            downloader = await asyncio.to_thread(blob.download_blob)
            raw = await asyncio.to_thread(downloader.readall)
        except ResourceNotFoundError:
            return None
        return UploadSession.model_validate_json(raw)

    async def delete(self, session_id: str) -> bool:
        blob = self._container.get_blob_client(self._blob_name(session_id))
        try:
            await asyncio.to_thread(blob.delete_blob)
        except ResourceNotFoundError:
            return False
        return True

    async def list_sessions(self) -> list[UploadSession]:
        names = await asyncio.to_thread(
            lambda: [item.name for item in self._container.list_blobs()]
        )
        sessions = []
        for name in names:
            session = await self.get(name.removesuffix(".json"))
            if session is not None:
                sessions.append(session)
        return sessions
