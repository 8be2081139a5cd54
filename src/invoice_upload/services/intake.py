"""File intake and validation."""

from __future__ import annotations

from collections.abc import Iterable

from .. import config
from ..errors import EMPTY_FILE, FILE_TOO_LARGE, INVALID_FILE_TYPE, ErrorKind
from ..models import UploadFile, ValidationResult


def format_file_size(size_bytes: int) -> str:
    """Human-readable size, e.g. ``1.5 MB``."""

    if size_bytes <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB")
    value = float(size_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[index]}"


def is_pdf(file: UploadFile) -> bool:
    return file.content_type in config.PDF_MIME_TYPES or file.extension == ".pdf"


def is_image(file: UploadFile) -> bool:
    return file.content_type in config.IMAGE_MIME_TYPES


def _invalid(message: str) -> ValidationResult:
    return ValidationResult(
        is_valid=False, error=message, error_kind=ErrorKind.VALIDATION_FAILED
    )


def validate(file: UploadFile, max_size: int = config.MAX_FILE_SIZE_BYTES) -> ValidationResult:
    """Check declared MIME type, extension and size. No I/O."""

    if file.size > max_size:
        return _invalid(f"{FILE_TOO_LARGE} (got {format_file_size(file.size)})")

    if file.size == 0:
        return _invalid(EMPTY_FILE)

    if file.content_type not in config.ALLOWED_MIME_TYPES:
        return _invalid(INVALID_FILE_TYPE)

    if file.extension not in config.ALLOWED_EXTENSIONS:
        return _invalid(INVALID_FILE_TYPE)

    return ValidationResult(is_valid=True)


def validate_many(
    files: Iterable[UploadFile],
) -> tuple[list[UploadFile], list[tuple[UploadFile, ValidationResult]]]:
    """Split files into the valid ones and (file, result) pairs for the rest."""

    valid: list[UploadFile] = []
    invalid: list[tuple[UploadFile, ValidationResult]] = []
    for file in files:
        result = validate(file)
        if result.is_valid:
            valid.append(file)
        else:
            invalid.append((file, result))
    return valid, invalid
