"""
Archival store backed by Azure Blob Storage (Azurite locally).

Clients never receive the account key: writes and reads go through
short-lived SAS URLs issued here. Blob SDK calls are blocking, so they run in
a thread.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import string
from datetime import datetime, timedelta, timezone
from pathlib import PurePath
from typing import Protocol

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    generate_blob_sas,
)

from .. import config
from ..errors import CredentialIssuanceFailed
from ..models import ObjectMetadata, UploadCredential, utcnow

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def generate_object_key(user_id: str, filename: str, now: datetime | None = None) -> str:
    """
    Build ``invoices/<user>/<yyyy>/<mm>/<stem>_<ms timestamp>_<rand6>.<ext>``.

    The user id and filename parts are restricted to ``[a-zA-Z0-9._-]``.
    """

    now = now or utcnow()
    path = PurePath(filename)
    extension = path.suffix.lstrip(".") or "bin"
    token = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    timestamp = int(now.timestamp() * 1000)

    name = f"{path.stem}_{timestamp}_{token}.{extension}"
    name = _REPEATED_UNDERSCORES.sub("_", _UNSAFE_KEY_CHARS.sub("_", name))
    safe_user = _UNSAFE_KEY_CHARS.sub("_", user_id)
    return f"{config.OBJECT_KEY_PREFIX}/{safe_user}/{now:%Y}/{now:%m}/{name}"


class ArchivalStore(Protocol):
    async def issue_upload_credential(
        self, object_key: str, content_type: str, ttl: int = ...
    ) -> UploadCredential: ...

    async def issue_download_credential(self, object_key: str, ttl: int = ...) -> UploadCredential: ...

    async def exists(self, object_key: str) -> bool: ...

    async def metadata(self, object_key: str) -> ObjectMetadata | None: ...

    async def download(self, object_key: str) -> bytes: ...

    async def delete(self, object_key: str) -> None: ...

    async def health(self) -> bool: ...


class AzureBlobArchivalStore:
    """Archival store collaborator: SAS credentials plus object lookups."""

    def __init__(
        self,
        blob_service_client: BlobServiceClient,
        container_name: str = config.INVOICE_CONTAINER,
    ) -> None:
        self._client = blob_service_client
        self.container_name = container_name

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str = config.AZURE_STORAGE_CONNECTION_STRING,
        container_name: str = config.INVOICE_CONTAINER,
    ) -> "AzureBlobArchivalStore":
        logger.info("[STORAGE] Connecting to blob storage...")
        return cls(BlobServiceClient.from_connection_string(connection_string), container_name)

    def _blob(self, object_key: str):
        return self._client.get_blob_client(container=self.container_name, blob=object_key)

    def _sign(
        self,
        object_key: str,
        permission: BlobSasPermissions,
        ttl: int,
    ) -> tuple[str, datetime]:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        sas_token = generate_blob_sas(
            account_name=self._client.account_name,
            container_name=self.container_name,
            blob_name=object_key,
            account_key=self._client.credential.account_key,
            permission=permission,
            expiry=expires_at,
        )
        return f"{self._blob(object_key).url}?{sas_token}", expires_at

    async def issue_upload_credential(
        self,
        object_key: str,
        content_type: str,
        ttl: int = config.UPLOAD_CREDENTIAL_TTL,
    ) -> UploadCredential:
        """Create/write SAS URL for one blob; the PUT must carry the returned headers."""

        try:
            url, expires_at = self._sign(
                object_key, BlobSasPermissions(create=True, write=True), ttl
            )
        except (AzureError, AttributeError, TypeError, ValueError) as exc:
            logger.error(f"[STORAGE] Failed to issue upload credential for {object_key}: {exc}")
            raise CredentialIssuanceFailed(object_key=object_key) from exc

        logger.info(f"[STORAGE] Upload credential issued for {object_key} (ttl={ttl}s)")
        return UploadCredential(
            url=url,
            object_key=object_key,
            method="PUT",
            expires_at=expires_at,
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": content_type},
        )

    async def issue_download_credential(
        self,
        object_key: str,
        ttl: int = config.DOWNLOAD_CREDENTIAL_TTL,
    ) -> UploadCredential:
        """Read-only SAS URL for one blob."""

        try:
            url, expires_at = self._sign(object_key, BlobSasPermissions(read=True), ttl)
        except (AzureError, AttributeError, TypeError, ValueError) as exc:
            logger.error(f"[STORAGE] Failed to issue download credential for {object_key}: {exc}")
            raise CredentialIssuanceFailed(object_key=object_key) from exc

        logger.info(f"[STORAGE] Download credential issued for {object_key} (ttl={ttl}s)")
        return UploadCredential(url=url, object_key=object_key, method="GET", expires_at=expires_at)

    async def exists(self, object_key: str) -> bool:
        found = await asyncio.to_thread(self._blob(object_key).exists)
        logger.info(f"[STORAGE] {object_key} exists: {found}")
        return found

    async def metadata(self, object_key: str) -> ObjectMetadata | None:
        try:
            properties = await asyncio.to_thread(self._blob(object_key).get_blob_properties)
        except ResourceNotFoundError:
            logger.warning(f"[STORAGE] No metadata for missing blob {object_key}")
            return None
        return ObjectMetadata(
            size=properties.size,
            content_type=properties.content_settings.content_type,
            last_modified=properties.last_modified,
        )

    async def download(self, object_key: str) -> bytes:
        logger.info(f"[STORAGE] Downloading blob: {self.container_name}/{object_key}")
        downloader = await asyncio.to_thread(self._blob(object_key).download_blob)
        data = await asyncio.to_thread(downloader.readall)
        logger.info(f"[STORAGE] Downloaded {len(data)} bytes from {object_key}")
        return data

    async def delete(self, object_key: str) -> None:
        try:
            await asyncio.to_thread(self._blob(object_key).delete_blob)
        except ResourceNotFoundError:
            logger.info(f"[STORAGE] {object_key} already deleted")
            return
        logger.info(f"[STORAGE] Deleted {object_key}")

    async def ensure_container_exists(self) -> None:
        container_client = self._client.get_container_client(self.container_name)
        try:
            await asyncio.to_thread(container_client.create_container)
            logger.info(f"[STORAGE] Created container '{self.container_name}'")
        except ResourceExistsError:
            logger.info(f"[STORAGE] Container '{self.container_name}' already exists")

    async def health(self) -> bool:
        container_client = self._client.get_container_client(self.container_name)
        try:
            await asyncio.to_thread(container_client.get_container_properties)
        except AzureError as exc:
            logger.error(f"[STORAGE] Health check failed: {exc}")
            return False
        return True
