"""
HTTP transport for the upload pipeline.

``fetch_with_retry`` is the retrying JSON client used for credential requests
and the confirm/extraction call; ``put_to_presigned_url`` streams bytes
straight to the archival store through a pre-signed write credential.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from .. import config
from ..errors import DirectTransferFailed
from ..models import UploadCredential

logger = logging.getLogger(__name__)

TransferProgressCallback = Callable[[float], None]

UPLOAD_CHUNK_SIZE = 64 * 1024


@dataclass
class RetryConfig:
    """Exponential backoff settings for ``fetch_with_retry``."""

    max_attempts: int = config.HTTP_RETRY_ATTEMPTS
    initial_delay: float = config.HTTP_RETRY_BASE_DELAY
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_status_codes: tuple[int, ...] = field(
        default_factory=lambda: tuple(config.HTTP_RETRYABLE_STATUS_CODES)
    )

    def calculate_delay(self, attempt: int) -> float:
        delay = min(self.initial_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay


@dataclass
class ApiResponse:
    status: int
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def redact_url(url: str) -> str:
    """Drop the query string, which carries the signature for pre-signed URLs."""

    return url.split("?", 1)[0]


async def _read_body(response: aiohttp.ClientResponse) -> Any:
    if "application/json" in response.headers.get("Content-Type", ""):
        return await response.json()
    return await response.text()


async def fetch_with_retry(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    json: Any = None,
    headers: dict[str, str] | None = None,
    timeout: float = config.API_TIMEOUT,
    retry: RetryConfig | None = None,
) -> ApiResponse:
    """
    Send a JSON request, retrying connection errors, timeouts and retryable
    status codes with exponential backoff.

    Non-retryable responses are returned as-is for the caller to interpret.
    When attempts run out, the last response is returned, or the last
    connection error re-raised.
    """

    retry = retry or RetryConfig()
    request_timeout = aiohttp.ClientTimeout(total=timeout)

    attempt = 0
    while True:
        attempt += 1
        try:
            async with session.request(
                method, url, json=json, headers=headers, timeout=request_timeout
            ) as response:
                result = ApiResponse(status=response.status, data=await _read_body(response))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if attempt >= retry.max_attempts:
                logger.error(
                    f"[HTTP] {method} {redact_url(url)} failed after {attempt} attempt(s): {exc!r}"
                )
                raise
            delay = retry.calculate_delay(attempt)
            logger.warning(
                f"[HTTP] {method} {redact_url(url)} attempt {attempt} failed: {exc!r}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            continue

        if result.status in retry.retryable_status_codes and attempt < retry.max_attempts:
            delay = retry.calculate_delay(attempt)
            logger.warning(
                f"[HTTP] {method} {redact_url(url)} returned {result.status}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            continue

        if not result.ok:
            logger.error(f"[HTTP] {method} {redact_url(url)} returned {result.status}")
        return result


async def _iter_chunks(
    data: bytes,
    on_progress: TransferProgressCallback | None,
    chunk_size: int,
) -> AsyncIterator[bytes]:
    total = len(data)
    sent = 0
    for start in range(0, total, chunk_size):
        chunk = data[start : start + chunk_size]
        yield chunk
        sent += len(chunk)
        if on_progress is not None:
            on_progress(sent / total * 100)


async def put_to_presigned_url(
    session: aiohttp.ClientSession,
    credential: UploadCredential,
    data: bytes,
    content_type: str,
    on_progress: TransferProgressCallback | None = None,
    timeout: float = config.UPLOAD_TIMEOUT,
    chunk_size: int = UPLOAD_CHUNK_SIZE,
) -> None:
    """Upload ``data`` with a write credential. Raises DirectTransferFailed."""

    target = redact_url(credential.url)
    headers = {
        **credential.headers,
        "Content-Type": content_type,
        "Content-Length": str(len(data)),
    }

    logger.info(f"[HTTP] PUT {target} ({len(data)} bytes)")
    try:
        async with session.request(
            credential.method,
            credential.url,
            data=_iter_chunks(data, on_progress, chunk_size),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status >= 300:
                body = await response.text()
                logger.error(
                    f"[HTTP] Direct transfer to {target} rejected with {response.status}: {body[:200]}"
                )
                raise DirectTransferFailed(status=response.status, object_key=credential.object_key)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error(f"[HTTP] Direct transfer to {target} failed: {exc!r}")
        raise DirectTransferFailed(object_key=credential.object_key) from exc

    logger.info(f"[HTTP] Direct transfer to {target} completed")


class PresignedUploader:
    """Direct-to-store transfer bound to one aiohttp session."""

    def __init__(self, session: aiohttp.ClientSession, timeout: float = config.UPLOAD_TIMEOUT) -> None:
        self._session = session
        self.timeout = timeout

    async def put(
        self,
        credential: UploadCredential,
        data: bytes,
        content_type: str,
        on_progress: TransferProgressCallback | None = None,
    ) -> None:
        await put_to_presigned_url(
            self._session,
            credential,
            data,
            content_type,
            on_progress=on_progress,
            timeout=self.timeout,
        )
