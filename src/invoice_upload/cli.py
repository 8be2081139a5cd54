"""Command-line helper to push invoice files through the upload pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import mimetypes
from pathlib import Path

import aiohttp
from openai import AsyncOpenAI

from . import config
from .logging_config import configure_logging
from .models import BatchUploadResult, UploadFile, UploadStatus
from .pipeline import HttpUploadBackend, LocalUploadBackend, UploadBackend, UploadPipeline
from .server import AI_INPUT_MODES, UploadSessionService
from .services.extraction import OpenAIExtractionProvider
from .services.http import PresignedUploader
from .services.records import InMemoryFileRecordStore
from .services.sessions import InMemorySessionStore
from .services.storage import AzureBlobArchivalStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upload invoice PDFs or images and extract their data",
    )
    parser.add_argument("files", type=Path, nargs="+", help="PDF, JPG or PNG files to upload")
    parser.add_argument("--user-id", required=True, help="Owner of the uploaded invoices")
    parser.add_argument(
        "--api-url",
        help=(
            "Upload API to request sessions from. When omitted, sessions are "
            "issued in-process against AZURE_STORAGE_CONNECTION_STRING."
        ),
    )
    parser.add_argument(
        "--ai-input-mode",
        choices=AI_INPUT_MODES,
        default=config.AI_INPUT_MODE,
        help="How the in-process server hands images to the AI provider",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=config.PDF_MAX_READ_PAGES,
        help="Maximum number of PDF pages to combine into one image",
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def load_file(path: Path) -> UploadFile:
    content_type, _ = mimetypes.guess_type(path.name)
    return UploadFile(
        filename=path.name,
        content_type=content_type or "application/octet-stream",
        data=path.read_bytes(),
    )


async def build_local_backend(ai_input_mode: str) -> LocalUploadBackend:
    store = AzureBlobArchivalStore.from_connection_string()
    await store.ensure_container_exists()
    service = UploadSessionService(
        store=store,
        extractor=OpenAIExtractionProvider(AsyncOpenAI(api_key=config.OPENAI_API_KEY)),
        records=InMemoryFileRecordStore(),
        sessions=InMemorySessionStore(),
        ai_input_mode=ai_input_mode,
    )
    return LocalUploadBackend(service)


async def run(args: argparse.Namespace) -> BatchUploadResult:
    files = [load_file(path) for path in args.files]

    def on_file_progress(index: int, status: UploadStatus, progress: float, message: str | None) -> None:
        if not args.json:
            print(f"  [{files[index].filename}] {status.value:<20} {progress:5.1f}%  {message or ''}")

    def on_overall_progress(completed: int, total: int) -> None:
        if not args.json:
            print(f"{completed}/{total} files finished")

    async with aiohttp.ClientSession() as session:
        backend: UploadBackend
        if args.api_url:
            backend = HttpUploadBackend(session, base_url=args.api_url)
        else:
            backend = await build_local_backend(args.ai_input_mode)

        pipeline = UploadPipeline(backend, PresignedUploader(session))
        return await pipeline.run_batch_upload(
            files,
            args.user_id,
            on_file_progress=on_file_progress,
            on_overall_progress=on_overall_progress,
            max_pages=args.max_pages,
        )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    missing = [str(path) for path in args.files if not path.is_file()]
    if missing:
        raise SystemExit(f"File(s) not found: {', '.join(missing)}")

    batch = asyncio.run(run(args))

    if args.json:
        print(json.dumps(batch.model_dump(mode="json"), indent=2))
    else:
        for path, result in zip(args.files, batch.results):
            if result.success:
                data = result.extracted_data
                print(
                    f"OK    {path.name}: file {result.file_id}, "
                    f"invoice {data.invoice_number if data else None}, "
                    f"total {data.total_amount if data else None} {data.currency if data else ''}"
                )
            else:
                print(f"FAIL  {path.name}: {result.error_kind.value if result.error_kind else ''} {result.error}")
        print(f"{batch.success_count} succeeded, {batch.failure_count} failed")

    return 0 if batch.failure_count == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
