"""Pydantic models shared between the upload pipeline components."""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStatus(str, Enum):
    """Lifecycle of one file pipeline."""

    NOT_UPLOADED = "NOT_UPLOADED"
    PROCESSING_PDF = "PROCESSING_PDF"
    COMPRESSING_IMAGE = "COMPRESSING_IMAGE"
    UPLOADING_TO_STORE = "UPLOADING_TO_STORE"
    AI_PROCESSING = "AI_PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UploadFile(BaseModel):
    """A user-selected file (or an intermediate image derived from one)."""

    filename: str = Field(..., description="Original filename including extension")
    content_type: str = Field(..., description="Declared MIME type")
    data: bytes = Field(..., repr=False)
    declared_size: int | None = Field(
        default=None, description="Size reported by the client; defaults to len(data)"
    )

    @property
    def size(self) -> int:
        return self.declared_size if self.declared_size is not None else len(self.data)

    @property
    def stem(self) -> str:
        return PurePath(self.filename).stem

    @property
    def extension(self) -> str:
        return PurePath(self.filename).suffix.lower()


class RenderedImage(UploadFile):
    """Raster image produced by the rasterizer or the compressor."""

    width: int
    height: int
    page_number: int | None = None


class ValidationResult(BaseModel):
    is_valid: bool
    error: str | None = None
    error_kind: ErrorKind | None = None


class PageOutcome(BaseModel):
    """Result of rendering one page inside a multi-page batch."""

    page_number: int
    success: bool
    image: RenderedImage | None = None
    error: str | None = None


class LongImageResult(BaseModel):
    image: RenderedImage
    page_count: int
    processed_pages: int
    total_height: int


class StrategyResult(BaseModel):
    image: RenderedImage
    strategy: str
    page_count: int
    processed_pages: int
    selected_page: int | None = None
    total_height: int | None = None

    @property
    def is_long_image(self) -> bool:
        return self.strategy.startswith("long-image")


class CompressionResult(BaseModel):
    image: RenderedImage
    original_size: int
    compressed_size: int
    compression_ratio: float = Field(..., description="Percentage size reduction")
    attempts: int
    final_quality: float


class UploadCredential(BaseModel):
    """Pre-signed, time-limited permission for one operation on one object."""

    url: str = Field(..., repr=False)
    object_key: str
    method: str = "PUT"
    expires_at: datetime
    headers: dict[str, str] = Field(default_factory=dict)


class ObjectMetadata(BaseModel):
    size: int
    content_type: str | None = None
    last_modified: datetime | None = None


class UploadSession(BaseModel):
    """One in-flight direct-to-store transfer. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    object_key: str
    ai_file_id: str | None = None
    original_filename: str
    size: int
    content_type: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class UploadProgress(BaseModel):
    """Client-visible state of one file pipeline."""

    file_id: str
    progress: float = Field(default=0.0, ge=0, le=100)
    status: UploadStatus = UploadStatus.NOT_UPLOADED
    error: str | None = None


class ProgressEvent(BaseModel):
    file_id: str | None = None
    status: UploadStatus
    progress: float
    message: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (UploadStatus.COMPLETED, UploadStatus.FAILED)


class AggregateProgress(BaseModel):
    overall_progress: float = 0.0
    completed_count: int = 0
    failed_count: int = 0
    processing_count: int = 0
    idle_count: int = 0
    pdf_processing_count: int = 0
    image_processing_count: int = 0
    uploading_count: int = 0
    ai_processing_count: int = 0


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    quantity: float | None = Field(default=None, ge=0)
    unit_price: float | None = Field(default=None, ge=0)
    total_price: float | None = Field(default=None, ge=0)
    tax_rate: float | None = Field(default=None, ge=0)


class ExtractedInvoiceData(BaseModel):
    """Structured fields returned by the AI extraction step."""

    model_config = ConfigDict(frozen=True)

    invoice_number: str | None = None
    supplier_name: str | None = None
    supplier_address: str | None = None
    supplier_tax_id: str | None = None
    subtotal: float | None = Field(default=None, ge=0)
    tax_amount: float | None = Field(default=None, ge=0)
    tax_rate: float | None = Field(default=None, ge=0)
    total_amount: float | None = Field(default=None, ge=0)
    currency: str | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    raw_extraction: dict[str, Any] = Field(default_factory=dict)


class ExtractionIssue(BaseModel):
    field: str
    code: str
    message: str


class ExtractionValidation(BaseModel):
    is_valid: bool
    errors: list[ExtractionIssue] = Field(default_factory=list)
    warnings: list[ExtractionIssue] = Field(default_factory=list)


class FileRecord(BaseModel):
    file_id: str
    original_name: str
    stored_name: str
    size: int
    mime_type: str
    object_key: str
    created_at: datetime = Field(default_factory=utcnow)


class InitiatedUpload(BaseModel):
    """Server response to an upload request: where to PUT the bytes."""

    session_id: str
    object_key: str
    upload_url: str = Field(..., repr=False)
    expires_at: datetime
    headers: dict[str, str] = Field(default_factory=dict)


class ConfirmResult(BaseModel):
    file_id: str
    object_key: str
    extracted_data: ExtractedInvoiceData


class UploadResult(BaseModel):
    success: bool
    file_id: str | None = None
    extracted_data: ExtractedInvoiceData | None = None
    object_key: str | None = None
    page_count: int | None = None
    processed_pages: int | None = None
    processing_strategy: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    failed_stage: UploadStatus | None = None


class BatchUploadResult(BaseModel):
    results: list[UploadResult] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    summary: AggregateProgress = Field(default_factory=AggregateProgress)
