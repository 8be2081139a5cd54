import re
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceNotFoundError, ServiceRequestError
from azure.storage.blob import BlobServiceClient

from invoice_upload import config
from invoice_upload.errors import CredentialIssuanceFailed
from invoice_upload.services.storage import AzureBlobArchivalStore, generate_object_key

NOW = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)


def test_object_key_layout():
    key = generate_object_key("user-1", "March invoice.pdf", now=NOW)
    pattern = rf"^invoices/user-1/2024/03/March_invoice_{int(NOW.timestamp() * 1000)}_[a-z0-9]{{6}}\.pdf$"
    assert re.match(pattern, key), key


def test_object_key_sanitizes_user_and_filename():
    key = generate_object_key("../evil user", "a//b??c.jpg", now=NOW)
    _, user, year, month, name = key.split("/")
    assert user == ".._evil_user"
    assert (year, month) == ("2024", "03")
    assert re.fullmatch(r"[a-zA-Z0-9._-]+", name)
    assert "__" not in name


def test_object_keys_are_unique():
    keys = {generate_object_key("u", "a.jpg", now=NOW) for _ in range(50)}
    assert len(keys) == 50


@pytest.fixture
def azurite_store() -> AzureBlobArchivalStore:
    # Building clients and signing SAS tokens needs no network
    client = BlobServiceClient.from_connection_string(config.AZURITE_CONNECTION_STRING)
    return AzureBlobArchivalStore(client, container_name="invoices")


async def test_upload_credential_is_scoped_write_sas(azurite_store):
    credential = await azurite_store.issue_upload_credential(
        "invoices/u/2024/03/a.jpg", "image/jpeg", ttl=900
    )

    assert credential.method == "PUT"
    assert credential.url.startswith(
        "http://127.0.0.1:10000/devstoreaccount1/invoices/invoices/u/2024/03/a.jpg?"
    )
    assert "sp=cw" in credential.url
    assert "sig=" in credential.url
    assert credential.headers == {"x-ms-blob-type": "BlockBlob", "Content-Type": "image/jpeg"}
    remaining = (credential.expires_at - datetime.now(timezone.utc)).total_seconds()
    assert 880 < remaining <= 900


async def test_download_credential_is_read_only(azurite_store):
    credential = await azurite_store.issue_download_credential("invoices/u/a.jpg")
    assert credential.method == "GET"
    assert "sp=r&" in credential.url


async def test_credential_issuance_failure_is_typed():
    client = MagicMock()
    client.account_name = "acct"
    client.credential = None  # token credentials carry no account key
    store = AzureBlobArchivalStore(client)
    with pytest.raises(CredentialIssuanceFailed):
        await store.issue_upload_credential("k.jpg", "image/jpeg")


def _mock_store() -> tuple[AzureBlobArchivalStore, MagicMock]:
    client = MagicMock()
    blob = MagicMock()
    client.get_blob_client.return_value = blob
    return AzureBlobArchivalStore(client, container_name="invoices"), blob


async def test_exists_and_metadata():
    store, blob = _mock_store()
    blob.exists.return_value = True
    blob.get_blob_properties.return_value = SimpleNamespace(
        size=1234,
        content_settings=SimpleNamespace(content_type="image/jpeg"),
        last_modified=NOW,
    )

    assert await store.exists("k.jpg") is True
    metadata = await store.metadata("k.jpg")
    assert metadata.size == 1234
    assert metadata.content_type == "image/jpeg"


async def test_metadata_of_missing_object_is_none():
    store, blob = _mock_store()
    blob.get_blob_properties.side_effect = ResourceNotFoundError("missing")
    assert await store.metadata("k.jpg") is None


async def test_delete_missing_object_is_noop():
    store, blob = _mock_store()
    blob.delete_blob.side_effect = ResourceNotFoundError("missing")
    await store.delete("k.jpg")
    blob.delete_blob.assert_called_once()


async def test_download_reads_whole_blob():
    store, blob = _mock_store()
    blob.download_blob.return_value = SimpleNamespace(readall=lambda: b"bytes")
    assert await store.download("k.jpg") == b"bytes"


async def test_health_reports_unreachable_storage():
    client = MagicMock()
    client.get_container_client.return_value.get_container_properties.side_effect = ServiceRequestError(
        "unreachable"
    )
    assert await AzureBlobArchivalStore(client).health() is False
