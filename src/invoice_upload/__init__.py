"""Invoice upload pipeline: rasterize, compress, transfer direct to storage, extract."""

from .errors import ErrorKind, UploadError
from .models import UploadFile, UploadResult, UploadStatus
from .pipeline import HttpUploadBackend, LocalUploadBackend, UploadPipeline
from .server import UploadSessionService

__all__ = [
    "ErrorKind",
    "HttpUploadBackend",
    "LocalUploadBackend",
    "UploadError",
    "UploadFile",
    "UploadPipeline",
    "UploadResult",
    "UploadSessionService",
    "UploadStatus",
]
