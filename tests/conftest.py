"""
Shared pytest fixtures for the test suite.

Secrets come from an in-memory provider, log records are captured by a
recording exporter, the document store is mongomock-motor and the
relational store is a fake ODBC connector, so no external service is
needed.
"""

from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk._logs.export import LogExporter, LogExportResult

from practice_web.config import load_settings
from practice_web.errors import StorageUnavailableError
from practice_web.main import create_app
from practice_web.secret_provider import InMemorySecretProvider

BASE_URL = "https://testserver"

SECRETS = {
    "/run/secrets/oidc_client_secret": "oidc-client-secret",
    "/run/secrets/cookie_secret": "cookie-signing-secret",
    "/run/secrets/mssql_password": "Sql;Pa{ss}",
    "/run/secrets/mongo_password": "mongo-password",
}


def base_config() -> dict[str, Any]:
    return {
        "app_name": "practice-web-test",
        "environment": "Production",
        "identity_provider": {
            "address": "https://identity.example.com",
            "client_secret_file": "/run/secrets/oidc_client_secret",
            "cookie_secret_file": "/run/secrets/cookie_secret",
        },
        "telemetry_sink": {"address": "http://seq.example.com:5341/ingest/otlp/v1/"},
        "relational_store": {
            "address": "mssql.example.com,1433",
            "user_name": "sa",
            "password_file": "/run/secrets/mssql_password",
        },
        "document_store": {
            "host": "mongo.example.com",
            "port": 27017,
            "user_name": "root",
            "password_file": "/run/secrets/mongo_password",
        },
    }


def log_record(item):
    """Exporters receive ``LogData`` wrappers on older SDKs, records on newer."""
    return getattr(item, "log_record", item)


class RecordingLogExporter(LogExporter):
    def __init__(self):
        self.records = []

    def export(self, batch):
        self.records.extend(log_record(item) for item in batch)
        return LogExportResult.SUCCESS

    def shutdown(self):
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True

    def bodies(self) -> list[str]:
        return [str(record.body) for record in self.records]


class FakeCursor:
    def __init__(self, value):
        self.value = value
        self.executed = []

    def execute(self, sql, *params):
        self.executed.append(sql)

    def fetchone(self):
        return (self.value,)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, value=1):
        self.value = value
        self.closed = False

    def cursor(self):
        return FakeCursor(self.value)

    def close(self):
        self.closed = True


class FakeConnector:
    """Stands in for ``pyodbc.connect``; fails on the listed call numbers."""

    def __init__(self, fail_on: tuple[int, ...] = ()):
        self.fail_on = fail_on
        self.calls = 0
        self.connection_strings = []
        self.connections = []

    def __call__(self, connection_string: str):
        self.calls += 1
        self.connection_strings.append(connection_string)
        if self.calls in self.fail_on:
            raise StorageUnavailableError("relational", "Login timeout expired")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


@pytest.fixture()
def secrets():
    return InMemorySecretProvider(SECRETS)


@pytest.fixture()
def make_settings(monkeypatch, tmp_path):
    """Settings built from ``base_config`` with per-test overrides."""
    monkeypatch.chdir(tmp_path)

    def factory(**overrides):
        config = base_config()
        config.update(overrides)
        return load_settings(**config)

    return factory


@pytest.fixture()
def settings(make_settings):
    return make_settings()


@pytest.fixture()
def log_exporter():
    return RecordingLogExporter()


@pytest.fixture()
def relational_connector():
    return FakeConnector()


@pytest.fixture()
def document_client_factory():
    from mongomock_motor import AsyncMongoMockClient

    clients = []

    def factory(**client_settings):
        client = AsyncMongoMockClient()
        clients.append((client_settings, client))
        return client

    factory.clients = clients
    return factory


@pytest.fixture()
def make_app(make_settings, secrets, log_exporter, relational_connector, document_client_factory):
    """Build a host; telemetry is detached again after the test."""
    apps = []

    def factory(**overrides):
        app = create_app(
            settings=make_settings(**overrides),
            secrets=secrets,
            log_exporter=log_exporter,
            relational_connector=relational_connector,
            document_client_factory=document_client_factory,
        )
        apps.append(app)
        return app

    yield factory

    for app in apps:
        app.state.telemetry.shutdown()


@pytest.fixture()
def app(make_app):
    return make_app()


@pytest_asyncio.fixture()
async def async_client(app) -> AsyncClient:
    """
    Async HTTP test client wired to the app over HTTPS.
    Lifespan is NOT triggered.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=BASE_URL) as client:
        yield client
