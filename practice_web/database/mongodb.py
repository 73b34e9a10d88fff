"""
MongoDB handles.

Uses Motor (async MongoDB driver) for non-blocking database access.
Client settings are built once at startup; every request scope gets a
new client. Motor connects lazily, so an unreachable server only fails
the request that touches it.
"""

import logging
from typing import Any, Callable

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from practice_web.config import DocumentStoreConfig
from practice_web.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

AUTH_DATABASE = "admin"

ClientFactory = Callable[..., Any]


def build_document_client_settings(config: DocumentStoreConfig, password: str) -> dict[str, Any]:
    """Client keyword arguments, credentialed against the admin database."""
    return {
        "host": config.host,
        "port": config.port,
        "username": config.user_name,
        "password": password,
        "authSource": AUTH_DATABASE,
    }


class DocumentHandle:
    """A MongoDB client and database owned by exactly one request scope."""

    def __init__(
        self,
        client_settings: dict[str, Any],
        database_name: str,
        client_factory: ClientFactory = AsyncIOMotorClient,
    ):
        self._client_settings = client_settings
        self._database_name = database_name
        self._client_factory = client_factory
        self._client: Any = None

    @property
    def client(self) -> AsyncIOMotorClient:
        if self._client is None:
            self._client = self._client_factory(**self._client_settings)
        return self._client

    @property
    def database_name(self) -> str:
        return self._database_name

    @property
    def database(self) -> AsyncIOMotorDatabase:
        return self.client[self._database_name]

    async def list_collection_names(self) -> list[str]:
        """
        Round-trip to the server.

        Raises:
            StorageUnavailableError: If the server cannot be reached.
        """
        try:
            return await self.database.list_collection_names()
        except PyMongoError as exc:
            raise StorageUnavailableError("document", str(exc)) from exc

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug("Document client closed.")
