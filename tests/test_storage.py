"""
Tests for storage connection wiring and request-scoped handles.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from practice_web.config import DocumentStoreConfig, RelationalStoreConfig
from practice_web.database.mongodb import DocumentHandle, build_document_client_settings
from practice_web.database.sqlserver import (
    RelationalHandle,
    build_relational_connection_string,
    quote_odbc_value,
)
from practice_web.database.storage import build_storage_factories, get_relational_handle
from practice_web.errors import SecretResolutionError, StorageUnavailableError
from practice_web.secret_provider import InMemorySecretProvider

from conftest import SECRETS, FakeConnector

RELATIONAL = RelationalStoreConfig(address="mssql,1433", user_name="sa", password_file="/pw")
DOCUMENT = DocumentStoreConfig(host="mongo", port=27017, user_name="root", password_file="/pw")


def test_relational_connection_string():
    """Encryption required, certificate trusted, MARS on, catalog fixed to master."""
    connection_string = build_relational_connection_string(RELATIONAL, "pw")
    parts = dict(part.split("=", 1) for part in connection_string.split(";"))

    assert parts == {
        "Driver": "{ODBC Driver 18 for SQL Server}",
        "Server": "mssql,1433",
        "Database": "master",
        "UID": "sa",
        "PWD": "pw",
        "Encrypt": "yes",
        "TrustServerCertificate": "yes",
        "MARS_Connection": "yes",
    }


@pytest.mark.parametrize(
    "value, expected",
    [
        ("plain", "plain"),
        ("a;b", "{a;b}"),
        ("a}b", "{a}}b}"),
        (" padded", "{ padded}"),
    ],
)
def test_quote_odbc_value(value, expected):
    assert quote_odbc_value(value) == expected


def test_document_client_settings_authenticate_against_admin():
    assert build_document_client_settings(DOCUMENT, "pw") == {
        "host": "mongo",
        "port": 27017,
        "username": "root",
        "password": "pw",
        "authSource": "admin",
    }


def test_passwords_are_read_through_the_secret_provider(settings, secrets):
    factories = build_storage_factories(settings, secrets)

    assert "PWD={Sql;Pa{ss}}}" in factories.relational_connection_string
    assert factories.document_client_settings["password"] == "mongo-password"
    assert factories.document_database == "development"


@pytest.mark.parametrize("missing", ["/run/secrets/mssql_password", "/run/secrets/mongo_password"])
def test_unreadable_password_aborts_startup(settings, missing):
    secrets = InMemorySecretProvider({k: v for k, v in SECRETS.items() if k != missing})

    with pytest.raises(SecretResolutionError):
        build_storage_factories(settings, secrets)


def test_relational_handles_are_lazy_and_distinct(settings, secrets):
    connector = FakeConnector()
    factories = build_storage_factories(settings, secrets, relational_connector=connector)

    first, second = factories.relational(), factories.relational()

    assert first is not second
    assert connector.calls == 0
    assert first.execute_scalar("SELECT 1") == 1
    assert connector.calls == 1
    assert not second.is_open


def test_relational_failure_is_confined_to_its_handle():
    connector = FakeConnector(fail_on=(1,))
    handle_a = RelationalHandle("Server=x", connector)
    handle_b = RelationalHandle("Server=x", connector)

    with pytest.raises(StorageUnavailableError):
        handle_a.execute_scalar("SELECT 1")

    assert handle_b.execute_scalar("SELECT 1") == 1
    assert not handle_a.is_open


class DriverError(Exception):
    pass


class DroppedConnection:
    """Opens fine, then loses the link on the first statement."""

    def __init__(self):
        self.closed = False

    def cursor(self):
        cursor = MagicMock()
        cursor.execute.side_effect = DriverError("08S01 Communication link failure")
        return cursor

    def close(self):
        self.closed = True


def dropped_handle():
    return RelationalHandle("Server=x", lambda _: DroppedConnection(), driver_error=lambda: DriverError)


def test_relational_failure_during_execute_is_translated():
    handle = dropped_handle()

    with pytest.raises(StorageUnavailableError) as exc_info:
        handle.execute_scalar("SELECT 1")

    assert exc_info.value.store == "relational"
    assert isinstance(exc_info.value.__cause__, DriverError)


def test_unrelated_errors_during_execute_propagate():
    connection = MagicMock()
    connection.cursor.return_value.execute.side_effect = ValueError("bad parameter")
    handle = RelationalHandle("Server=x", lambda _: connection, driver_error=lambda: DriverError)

    with pytest.raises(ValueError):
        handle.execute_scalar("SELECT ?", object())


def test_relational_close_releases_connection():
    connector = FakeConnector()
    handle = RelationalHandle("Server=x", connector)
    handle.connection()

    handle.close()

    assert connector.connections[0].closed
    assert not handle.is_open


@pytest.mark.asyncio
async def test_document_handle_wraps_server_errors():
    client = MagicMock()
    database = MagicMock()
    database.list_collection_names.side_effect = ServerSelectionTimeoutError("mongo:27017: timed out")
    client.__getitem__.return_value = database
    handle = DocumentHandle({"host": "mongo"}, "development", client_factory=lambda **kwargs: client)

    with pytest.raises(StorageUnavailableError) as exc_info:
        await handle.list_collection_names()

    assert exc_info.value.store == "document"
    handle.close()
    client.close.assert_called_once()


@pytest.mark.asyncio
async def test_relational_endpoint(async_client, relational_connector):
    response = await async_client.get("/api/v1/storage/relational")

    assert response.status_code == 200
    assert response.json() == {"store": "relational", "result": 1}
    # The handle is released when the request ends.
    assert relational_connector.connections[0].closed


@pytest.mark.asyncio
async def test_relational_endpoint_unreachable_store(async_client, relational_connector):
    relational_connector.fail_on = (1,)

    response = await async_client.get("/api/v1/storage/relational")

    assert response.status_code == 503
    assert response.json() == {"detail": "The relational store is currently unavailable."}


@pytest.mark.asyncio
async def test_concurrent_requests_fail_independently(async_client, relational_connector):
    """One request failing to reach the store does not affect another."""
    relational_connector.fail_on = (1,)

    responses = await asyncio.gather(
        async_client.get("/api/v1/storage/relational"),
        async_client.get("/api/v1/storage/relational"),
    )

    assert sorted(r.status_code for r in responses) == [200, 503]
    assert relational_connector.calls == 2
    assert len(relational_connector.connections) == 1


@pytest.mark.asyncio
async def test_document_endpoint(async_client, document_client_factory):
    response = await async_client.get("/api/v1/storage/document")

    assert response.status_code == 200
    assert response.json() == {"store": "document", "database": "development", "collections": []}
    client_settings, _ = document_client_factory.clients[0]
    assert client_settings["authSource"] == "admin"
    assert client_settings["password"] == "mongo-password"


@pytest.mark.asyncio
async def test_each_request_gets_its_own_document_client(async_client, document_client_factory):
    await async_client.get("/api/v1/storage/document")
    await async_client.get("/api/v1/storage/document")

    first, second = (client for _, client in document_client_factory.clients)
    assert first is not second


@pytest.mark.asyncio
async def test_relational_endpoint_link_lost_mid_request(app, async_client):
    app.dependency_overrides[get_relational_handle] = dropped_handle

    response = await async_client.get("/api/v1/storage/relational")

    assert response.status_code == 503
    assert response.json() == {"detail": "The relational store is currently unavailable."}
