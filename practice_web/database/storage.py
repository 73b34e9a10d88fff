"""
Storage connection wiring.

Resolves both store passwords through the secret provider at startup,
builds one connection descriptor per store and exposes per-request
handle factories as FastAPI dependencies.
"""

import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request
from motor.motor_asyncio import AsyncIOMotorClient

from practice_web.config import Settings
from practice_web.database.mongodb import ClientFactory, DocumentHandle, build_document_client_settings
from practice_web.database.sqlserver import (
    Connector,
    RelationalHandle,
    build_relational_connection_string,
    connect_odbc,
)
from practice_web.secret_provider import SecretProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageFactories:
    """Immutable descriptors; each call returns a new, unshared handle."""

    relational_connection_string: str
    document_client_settings: dict[str, Any]
    document_database: str
    relational_connector: Connector = connect_odbc
    document_client_factory: ClientFactory = AsyncIOMotorClient

    def relational(self) -> RelationalHandle:
        return RelationalHandle(self.relational_connection_string, self.relational_connector)

    def document(self) -> DocumentHandle:
        return DocumentHandle(
            self.document_client_settings,
            self.document_database,
            self.document_client_factory,
        )


def build_storage_factories(
    settings: Settings,
    secrets: SecretProvider,
    relational_connector: Connector | None = None,
    document_client_factory: ClientFactory | None = None,
) -> StorageFactories:
    """
    Build both descriptors.

    Raises:
        SecretResolutionError: If either password file cannot be read.
    """
    relational = settings.relational_store
    relational_password = secrets.resolve(relational.password_file)

    document = settings.document_store
    document_password = secrets.resolve(document.password_file)

    return StorageFactories(
        relational_connection_string=build_relational_connection_string(relational, relational_password),
        document_client_settings=build_document_client_settings(document, document_password),
        document_database=document.database,
        relational_connector=relational_connector or connect_odbc,
        document_client_factory=document_client_factory or AsyncIOMotorClient,
    )


def configure_storage(
    app: FastAPI,
    settings: Settings,
    secrets: SecretProvider,
    relational_connector: Connector | None = None,
    document_client_factory: ClientFactory | None = None,
) -> StorageFactories:
    factories = build_storage_factories(
        settings, secrets, relational_connector, document_client_factory
    )
    app.state.storage = factories
    logger.info(
        "Storage wired: relational %s, document %s:%d/%s",
        settings.relational_store.address,
        settings.document_store.host,
        settings.document_store.port,
        settings.document_store.database,
    )
    return factories


def get_relational_handle(request: Request) -> Iterator[RelationalHandle]:
    """Dependency: a fresh relational handle, closed when the request ends."""
    handle = request.app.state.storage.relational()
    try:
        yield handle
    finally:
        handle.close()


async def get_document_handle(request: Request) -> AsyncIterator[DocumentHandle]:
    """Dependency: a fresh document handle, closed when the request ends."""
    handle = request.app.state.storage.document()
    try:
        yield handle
    finally:
        handle.close()
