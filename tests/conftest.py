from __future__ import annotations

import io
import random
from datetime import timedelta
from typing import Any

import fitz
import pytest
from PIL import Image

from invoice_upload.errors import CredentialIssuanceFailed, ExtractionFailed
from invoice_upload.models import ObjectMetadata, UploadCredential, UploadFile, utcnow
from invoice_upload.pipeline import LocalUploadBackend, UploadPipeline
from invoice_upload.server import UploadSessionService
from invoice_upload.services.records import InMemoryFileRecordStore
from invoice_upload.services.sessions import InMemorySessionStore

SAMPLE_PAYLOAD: dict[str, Any] = {
    "invoice_number": "INV-1042",
    "supplier_name": "Acme Pty Ltd",
    "supplier_address": "1 Example St, Sydney",
    "supplier_tax_id": "51 824 753 556",
    "subtotal": 100.0,
    "tax_amount": 10.0,
    "tax_rate": 10,
    "total_amount": 110.0,
    "currency": "aud",
    "invoice_date": "2024-03-01",
    "due_date": "31/03/2024",
    "line_items": [
        {"description": "Widgets", "quantity": 4, "unit_price": 25, "total_price": 100}
    ],
}


def make_pdf(pages: int = 1, width: float = 595, height: float = 842) -> bytes:
    document = fitz.open()
    for number in range(1, pages + 1):
        page = document.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Invoice page {number}", fontsize=24)
    data = document.tobytes()
    document.close()
    return data


def make_image(
    width: int = 200, height: int = 100, fmt: str = "JPEG", mode: str = "RGB", color: Any = "#3366cc"
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_noise_image(width: int, height: int, fmt: str = "PNG") -> bytes:
    """Incompressible content, for exercising the quality loop."""

    image = Image.frombytes("RGB", (width, height), _noise(width * height * 3))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def _noise(length: int) -> bytes:
    return random.Random(1234).randbytes(length)


def pdf_file(pages: int = 1, filename: str = "invoice.pdf") -> UploadFile:
    return UploadFile(filename=filename, content_type="application/pdf", data=make_pdf(pages))


def jpeg_file(width: int = 200, height: int = 100, filename: str = "receipt.jpg") -> UploadFile:
    return UploadFile(filename=filename, content_type="image/jpeg", data=make_image(width, height))


class FakeArchivalStore:
    """Archival store double: credentials point at fake URLs, objects live in a dict."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.issued: list[UploadCredential] = []
        self.fail_credentials = False
        self.healthy = True

    async def issue_upload_credential(self, object_key: str, content_type: str, ttl: int = 900) -> UploadCredential:
        if self.fail_credentials:
            raise CredentialIssuanceFailed(object_key=object_key)
        credential = UploadCredential(
            url=f"https://store.test/{object_key}?sig=write",
            object_key=object_key,
            method="PUT",
            expires_at=utcnow() + timedelta(seconds=ttl),
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": content_type},
        )
        self.issued.append(credential)
        return credential

    async def issue_download_credential(self, object_key: str, ttl: int = 3600) -> UploadCredential:
        return UploadCredential(
            url=f"https://store.test/{object_key}?sig=read",
            object_key=object_key,
            method="GET",
            expires_at=utcnow() + timedelta(seconds=ttl),
        )

    async def exists(self, object_key: str) -> bool:
        return object_key in self.objects

    async def metadata(self, object_key: str) -> ObjectMetadata | None:
        if object_key not in self.objects:
            return None
        data, content_type = self.objects[object_key]
        return ObjectMetadata(size=len(data), content_type=content_type)

    async def download(self, object_key: str) -> bytes:
        return self.objects[object_key][0]

    async def delete(self, object_key: str) -> None:
        self.objects.pop(object_key, None)

    async def health(self) -> bool:
        return self.healthy


class FakeExtractor:
    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self.payload = payload if payload is not None else dict(SAMPLE_PAYLOAD)
        self.calls: list[dict[str, Any]] = []
        self.uploaded: list[UploadFile] = []
        self.deleted: list[str] = []
        self.error: Exception | None = None

    async def upload_transient(self, file: UploadFile) -> str:
        self.uploaded.append(file)
        return f"file-{len(self.uploaded)}"

    async def extract(self, image_url: str | None = None, file_id: str | None = None) -> dict[str, Any]:
        self.calls.append({"image_url": image_url, "file_id": file_id})
        if self.error is not None:
            raise self.error
        return self.payload

    async def delete_transient(self, file_id: str) -> None:
        self.deleted.append(file_id)


class FailingCleanupExtractor(FakeExtractor):
    async def delete_transient(self, file_id: str) -> None:
        raise ExtractionFailed("cleanup failed", file_id=file_id)


class FakeUploader:
    """Writes straight into a FakeArchivalStore, reporting progress in quarters."""

    def __init__(self, store: FakeArchivalStore) -> None:
        self.store = store
        self.puts: list[UploadCredential] = []
        self.error: Exception | None = None

    async def put(self, credential, data, content_type, on_progress=None) -> None:
        self.puts.append(credential)
        if self.error is not None:
            raise self.error
        for percent in (25, 50, 75, 100):
            if on_progress is not None:
                on_progress(percent)
        self.store.objects[credential.object_key] = (data, content_type)


@pytest.fixture
def store() -> FakeArchivalStore:
    return FakeArchivalStore()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def records() -> InMemoryFileRecordStore:
    return InMemoryFileRecordStore()


@pytest.fixture
def sessions() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def service(store, extractor, records, sessions) -> UploadSessionService:
    return UploadSessionService(store=store, extractor=extractor, records=records, sessions=sessions)


@pytest.fixture
def uploader(store) -> FakeUploader:
    return FakeUploader(store)


@pytest.fixture
def pipeline(service, uploader) -> UploadPipeline:
    return UploadPipeline(LocalUploadBackend(service), uploader)
