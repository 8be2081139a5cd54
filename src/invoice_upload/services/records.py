"""File record persistence."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Protocol

from ..models import FileRecord

logger = logging.getLogger(__name__)


class FileRecordStore(Protocol):
    async def create_file_record(
        self,
        original_name: str,
        stored_name: str,
        size: int,
        mime_type: str,
        object_key: str,
    ) -> str: ...


class InMemoryFileRecordStore:
    """Keeps file records in a dict; ids are random UUIDs."""

    def __init__(self) -> None:
        self.records: dict[str, FileRecord] = {}
        self._lock = asyncio.Lock()

    async def create_file_record(
        self,
        original_name: str,
        stored_name: str,
        size: int,
        mime_type: str,
        object_key: str,
    ) -> str:
        record = FileRecord(
            file_id=str(uuid.uuid4()),
            original_name=original_name,
            stored_name=stored_name,
            size=size,
            mime_type=mime_type,
            object_key=object_key,
        )
        async with self._lock:
            self.records[record.file_id] = record
        logger.info(f"[RECORDS] Created file record {record.file_id} for {object_key}")
        return record.file_id

    async def get(self, file_id: str) -> FileRecord | None:
        async with self._lock:
            return self.records.get(file_id)
