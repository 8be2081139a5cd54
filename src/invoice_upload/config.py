"""
Shared configuration for the invoice upload pipeline.

Values are plain module constants; deployment-specific ones can be overridden
through environment variables.
"""

import os

# File intake
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
PDF_MIME_TYPES = ("application/pdf",)
IMAGE_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png")
ALLOWED_MIME_TYPES = PDF_MIME_TYPES + IMAGE_MIME_TYPES
ALLOWED_EXTENSIONS = (".pdf", ".jpg", ".jpeg", ".png")
MAX_FILENAME_LENGTH = 255

# PDF rasterization
PDF_DEFAULT_SCALE = 2.0
PDF_DEFAULT_OUTPUT_FORMAT = "image/jpeg"
PDF_DEFAULT_QUALITY = 0.9
PDF_DEFAULT_MAX_WIDTH = 1920
PDF_DEFAULT_MAX_HEIGHT = 1080
PDF_MAX_READ_PAGES = 3
PDF_MAX_BATCH_PAGES = 10
PDF_DEFAULT_PAGE_SPACING = 20
PDF_DEFAULT_ADD_PAGE_SEPARATOR = True
PDF_DEFAULT_SEPARATOR_COLOR = "#e0e0e0"
PDF_DEFAULT_SEPARATOR_THICKNESS = 2

# Image compression
TARGET_COMPRESSED_FILE_SIZE_BYTES = 1024 * 1024
COMPRESSION_DEFAULT_MAX_WIDTH = 1920
COMPRESSION_DEFAULT_MAX_HEIGHT = 1080
COMPRESSION_DEFAULT_QUALITY = 0.8
COMPRESSION_DEFAULT_OUTPUT_FORMAT = "image/jpeg"
COMPRESSION_MAX_ATTEMPTS = 5
QUALITY_REDUCTION_FACTOR = 0.8
MIN_QUALITY = 0.1

# Transfer coordination (seconds)
UPLOAD_CREDENTIAL_TTL = 15 * 60
DOWNLOAD_CREDENTIAL_TTL = 60 * 60
UPLOAD_SESSION_TTL = 30 * 60
SESSION_SWEEP_INTERVAL = 60
BATCH_CONCURRENCY = 3

# HTTP transport (seconds)
UPLOAD_TIMEOUT = 5 * 60
API_TIMEOUT = 30
HTTP_RETRY_ATTEMPTS = 3
HTTP_RETRY_BASE_DELAY = 1.0
HTTP_RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

# Archival store
# Azurite default connection string (full format)
AZURITE_CONNECTION_STRING = (
    "DefaultEndpointsProtocol=http;"
    "AccountName=devstoreaccount1;"
    "AccountKey=Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw==;"
    "BlobEndpoint=http://127.0.0.1:10000/devstoreaccount1;"
)
AZURE_STORAGE_CONNECTION_STRING = os.environ.get(
    "AZURE_STORAGE_CONNECTION_STRING", AZURITE_CONNECTION_STRING
)
INVOICE_CONTAINER = os.environ.get("INVOICE_CONTAINER", "invoices")
SESSION_CONTAINER = os.environ.get("SESSION_CONTAINER", "upload-sessions")
OBJECT_KEY_PREFIX = "invoices"

# AI extraction
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_VISION_MODEL = os.environ.get("OPENAI_VISION_MODEL", "gpt-4o")
OPENAI_MAX_TOKENS = 4000
OPENAI_TEMPERATURE = 0.1
# "url": the model reads the archived object through a read credential.
# "transient": the image is uploaded to the provider and deleted afterwards.
AI_INPUT_MODE = os.environ.get("AI_INPUT_MODE", "url")
DEFAULT_CURRENCY = "AUD"

# Client-side API base URL for the HTTP upload backend
UPLOAD_API_URL = os.environ.get("UPLOAD_API_URL", "http://localhost:8080")
