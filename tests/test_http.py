from datetime import timedelta

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from invoice_upload.errors import DirectTransferFailed
from invoice_upload.models import UploadCredential, utcnow
from invoice_upload.services.http import (
    PresignedUploader,
    RetryConfig,
    fetch_with_retry,
    put_to_presigned_url,
    redact_url,
)

NO_WAIT = RetryConfig(max_attempts=3, initial_delay=0, jitter=False)


def _app() -> tuple[web.Application, dict]:
    app = web.Application()
    state: dict = {"calls": 0, "stored": {}}

    async def flaky(request: web.Request) -> web.Response:
        state["calls"] += 1
        if state["calls"] < 3:
            return web.json_response({"error": "busy"}, status=503)
        return web.json_response({"ok": True, "echo": await request.json()})

    async def rejected(request: web.Request) -> web.Response:
        state["calls"] += 1
        return web.json_response({"error": "bad", "kind": "ValidationFailed"}, status=400)

    async def blob(request: web.Request) -> web.Response:
        state["stored"][request.match_info["key"]] = (
            await request.read(),
            dict(request.headers),
            request.query.get("sig"),
        )
        return web.Response(status=201)

    async def forbidden(request: web.Request) -> web.Response:
        await request.read()
        return web.Response(status=403, text="AuthenticationFailed")

    app.router.add_post("/flaky", flaky)
    app.router.add_post("/rejected", rejected)
    app.router.add_put("/blob/{key}", blob)
    app.router.add_put("/denied/{key}", forbidden)
    return app, state


def _credential(url: str) -> UploadCredential:
    return UploadCredential(
        url=url,
        object_key="invoices/u/a.jpg",
        method="PUT",
        expires_at=utcnow() + timedelta(minutes=15),
        headers={"x-ms-blob-type": "BlockBlob", "Content-Type": "image/jpeg"},
    )


def test_retry_delay_grows_exponentially_and_caps():
    retry = RetryConfig(initial_delay=1, max_delay=5, jitter=False)
    assert [retry.calculate_delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]


def test_redact_url_drops_signature():
    assert redact_url("https://acct.blob/x.jpg?sv=1&sig=secret") == "https://acct.blob/x.jpg"


async def test_fetch_retries_retryable_status_until_success():
    app, state = _app()
    async with test_utils.TestServer(app) as server, aiohttp.ClientSession() as session:
        response = await fetch_with_retry(
            session, "POST", str(server.make_url("/flaky")), json={"a": 1}, retry=NO_WAIT
        )

    assert response.ok
    assert response.data == {"ok": True, "echo": {"a": 1}}
    assert state["calls"] == 3


async def test_fetch_returns_last_response_when_attempts_run_out():
    app, state = _app()
    retry = RetryConfig(max_attempts=2, initial_delay=0, jitter=False)
    async with test_utils.TestServer(app) as server, aiohttp.ClientSession() as session:
        response = await fetch_with_retry(session, "POST", str(server.make_url("/flaky")), json={}, retry=retry)

    assert response.status == 503
    assert state["calls"] == 2


async def test_fetch_does_not_retry_client_errors():
    app, state = _app()
    async with test_utils.TestServer(app) as server, aiohttp.ClientSession() as session:
        response = await fetch_with_retry(session, "POST", str(server.make_url("/rejected")), json={}, retry=NO_WAIT)

    assert response.status == 400
    assert response.data["kind"] == "ValidationFailed"
    assert state["calls"] == 1


async def test_fetch_reraises_connection_errors_after_retries():
    async with aiohttp.ClientSession() as session:
        with pytest.raises(aiohttp.ClientError):
            await fetch_with_retry(session, "POST", "http://127.0.0.1:9/unreachable", json={}, retry=NO_WAIT)


async def test_put_streams_bytes_with_headers_and_progress():
    app, state = _app()
    data = bytes(range(256)) * 1000
    progress: list[float] = []
    async with test_utils.TestServer(app) as server, aiohttp.ClientSession() as session:
        credential = _credential(str(server.make_url("/blob/a.jpg")) + "?sig=write")
        await put_to_presigned_url(
            session, credential, data, "image/jpeg", on_progress=progress.append, chunk_size=64 * 1024
        )

    body, headers, sig = state["stored"]["a.jpg"]
    assert body == data
    assert sig == "write"
    assert headers["x-ms-blob-type"] == "BlockBlob"
    assert headers["Content-Type"] == "image/jpeg"
    assert progress == sorted(progress)
    assert progress[-1] == 100


async def test_put_rejection_raises_direct_transfer_failed():
    app, state = _app()
    async with test_utils.TestServer(app) as server, aiohttp.ClientSession() as session:
        uploader = PresignedUploader(session)
        with pytest.raises(DirectTransferFailed):
            await uploader.put(_credential(str(server.make_url("/denied/a.jpg"))), b"jpeg", "image/jpeg")
