"""Pipeline components and external collaborators.

Each module maps to one component of the upload pipeline so that the
rasterizer, compressor, status machine and collaborators can evolve
independently.
"""

from .extraction import OpenAIExtractionProvider, normalize_extraction, validate_extraction
from .image_compressor import compress, compression_budget
from .intake import validate, validate_many
from .pdf_rasterizer import select_strategy
from .records import InMemoryFileRecordStore
from .sessions import BlobSessionStore, InMemorySessionStore
from .status import ProgressTracker, aggregate
from .storage import AzureBlobArchivalStore, generate_object_key

__all__ = [
    "AzureBlobArchivalStore",
    "BlobSessionStore",
    "InMemoryFileRecordStore",
    "InMemorySessionStore",
    "OpenAIExtractionProvider",
    "ProgressTracker",
    "aggregate",
    "compress",
    "compression_budget",
    "generate_object_key",
    "normalize_extraction",
    "select_strategy",
    "validate",
    "validate_extraction",
    "validate_many",
]
