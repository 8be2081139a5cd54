"""
Error taxonomy for the upload pipeline.

Components raise an ``UploadError`` subclass; the transfer coordinator is the
only place where these are turned into a failed result for the caller.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_FAILED = "ValidationFailed"
    PDF_LOAD_FAILED = "PdfLoadFailed"
    PAGE_OUT_OF_RANGE = "PageOutOfRange"
    RENDER_FAILED = "RenderFailed"
    IMAGE_LOAD_FAILED = "ImageLoadFailed"
    COMPRESSION_FAILED = "CompressionFailed"
    CREDENTIAL_ISSUANCE_FAILED = "CredentialIssuanceFailed"
    DIRECT_TRANSFER_FAILED = "DirectTransferFailed"
    SESSION_NOT_FOUND = "SessionNotFound"
    SESSION_EXPIRED = "SessionExpired"
    EXTRACTION_FAILED = "ExtractionFailed"
    INVALID_EXTRACTION_FORMAT = "InvalidExtractionFormat"
    RECORD_PERSISTENCE_FAILED = "RecordPersistenceFailed"
    UPLOAD_FAILED = "UploadFailed"


ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION_FAILED: "Please check the file and try again",
    ErrorKind.PDF_LOAD_FAILED: "Failed to load PDF file. It may be corrupted or password protected",
    ErrorKind.PAGE_OUT_OF_RANGE: "Invalid page number for this PDF",
    ErrorKind.RENDER_FAILED: "Failed to render PDF page to image",
    ErrorKind.IMAGE_LOAD_FAILED: "Failed to load image",
    ErrorKind.COMPRESSION_FAILED: "Failed to compress image",
    ErrorKind.CREDENTIAL_ISSUANCE_FAILED: "Could not prepare the cloud storage upload. Please try again",
    ErrorKind.DIRECT_TRANSFER_FAILED: "Failed to upload file to cloud storage. Please try again",
    ErrorKind.SESSION_NOT_FOUND: "Upload session not found. Please upload the file again",
    ErrorKind.SESSION_EXPIRED: "Upload session has expired. Please upload the file again",
    ErrorKind.EXTRACTION_FAILED: (
        "We couldn't read your invoice automatically. "
        "Please check if the image is clear and try again"
    ),
    ErrorKind.INVALID_EXTRACTION_FORMAT: "We couldn't process the invoice analysis. Please try again",
    ErrorKind.RECORD_PERSISTENCE_FAILED: "Something went wrong while saving your data. Please try again",
    ErrorKind.UPLOAD_FAILED: "Upload failed. Please check your internet connection and try again",
}

FILE_TOO_LARGE = "File size exceeds the maximum limit of 10MB"
INVALID_FILE_TYPE = "Invalid file type. Only PDF, JPG, and PNG files are allowed"
EMPTY_FILE = "File is empty"


class UploadError(Exception):
    """Base class for every failure the pipeline reports to its callers."""

    kind: ErrorKind = ErrorKind.UPLOAD_FAILED

    def __init__(self, message: str | None = None, **context: object) -> None:
        self.message = message or ERROR_MESSAGES[self.kind]
        self.context = context
        super().__init__(self.message)


class ValidationFailed(UploadError):
    kind = ErrorKind.VALIDATION_FAILED


class PdfLoadFailed(UploadError):
    kind = ErrorKind.PDF_LOAD_FAILED


class PageOutOfRange(UploadError):
    kind = ErrorKind.PAGE_OUT_OF_RANGE


class RenderFailed(UploadError):
    kind = ErrorKind.RENDER_FAILED


class ImageLoadFailed(UploadError):
    kind = ErrorKind.IMAGE_LOAD_FAILED


class CompressionFailed(UploadError):
    kind = ErrorKind.COMPRESSION_FAILED


class CredentialIssuanceFailed(UploadError):
    kind = ErrorKind.CREDENTIAL_ISSUANCE_FAILED


class DirectTransferFailed(UploadError):
    kind = ErrorKind.DIRECT_TRANSFER_FAILED


class SessionNotFound(UploadError):
    kind = ErrorKind.SESSION_NOT_FOUND


class SessionExpired(UploadError):
    kind = ErrorKind.SESSION_EXPIRED


class ExtractionFailed(UploadError):
    kind = ErrorKind.EXTRACTION_FAILED


class InvalidExtractionFormat(UploadError):
    kind = ErrorKind.INVALID_EXTRACTION_FORMAT


class RecordPersistenceFailed(UploadError):
    kind = ErrorKind.RECORD_PERSISTENCE_FAILED


ERROR_TYPES: dict[ErrorKind, type[UploadError]] = {
    cls.kind: cls
    for cls in (
        UploadError,
        ValidationFailed,
        PdfLoadFailed,
        PageOutOfRange,
        RenderFailed,
        ImageLoadFailed,
        CompressionFailed,
        CredentialIssuanceFailed,
        DirectTransferFailed,
        SessionNotFound,
        SessionExpired,
        ExtractionFailed,
        InvalidExtractionFormat,
        RecordPersistenceFailed,
    )
}


def error_from_kind(kind: ErrorKind | str, message: str | None = None) -> UploadError:
    """Rebuild a typed error from its kind, e.g. after crossing an HTTP boundary."""
    try:
        error_kind = ErrorKind(kind)
    except ValueError:
        error_kind = ErrorKind.UPLOAD_FAILED
    return ERROR_TYPES[error_kind](message)
