"""
SQL Server connection handles over ODBC.

One connection string is built at startup; each request scope gets its
own ``RelationalHandle`` that opens the ODBC connection on first use and
closes it when the scope ends. Pooling is left to the ODBC driver
manager.
"""

import logging
from typing import Any, Callable

from practice_web.config import RelationalStoreConfig
from practice_web.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = "master"

Connector = Callable[[str], Any]


def quote_odbc_value(value: str) -> str:
    """Brace-quote a value that would otherwise break the key=value list."""
    if any(char in value for char in ";{}") or value != value.strip():
        return "{" + value.replace("}", "}}") + "}"
    return value


def build_relational_connection_string(config: RelationalStoreConfig, password: str) -> str:
    """
    ODBC connection string for the relational store.

    Encryption is required but the server certificate is trusted as-is,
    multiple active result sets are enabled and the catalog is fixed to
    the server's administrative database.
    """
    parts = {
        "Driver": "{" + config.driver + "}",
        "Server": quote_odbc_value(config.address),
        "Database": DEFAULT_CATALOG,
        "UID": quote_odbc_value(config.user_name),
        "PWD": quote_odbc_value(password),
        "Encrypt": "yes",
        "TrustServerCertificate": "yes",
        "MARS_Connection": "yes",
    }
    return ";".join(f"{key}={value}" for key, value in parts.items())


def odbc_error() -> type[Exception]:
    """The driver's base error class, imported on demand."""
    import pyodbc

    return pyodbc.Error


def connect_odbc(connection_string: str) -> Any:
    """Open a pyodbc connection, translating driver errors."""
    import pyodbc

    try:
        return pyodbc.connect(connection_string)
    except pyodbc.Error as exc:
        raise StorageUnavailableError("relational", str(exc)) from exc


class RelationalHandle:
    """A lazily opened connection owned by exactly one request scope."""

    def __init__(
        self,
        connection_string: str,
        connector: Connector = connect_odbc,
        driver_error: Callable[[], type[Exception]] = odbc_error,
    ):
        self._connection_string = connection_string
        self._connector = connector
        self._driver_error = driver_error
        self._connection: Any = None

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def connection(self) -> Any:
        if self._connection is None:
            self._connection = self._connector(self._connection_string)
            logger.debug("Relational connection opened.")
        return self._connection

    def execute_scalar(self, sql: str, *params: Any) -> Any:
        connection = self.connection()
        try:
            cursor = connection.cursor()
            try:
                cursor.execute(sql, *params)
                row = cursor.fetchone()
            finally:
                cursor.close()
        except self._driver_error() as exc:
            raise StorageUnavailableError("relational", str(exc)) from exc
        return None if row is None else row[0]

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            logger.debug("Relational connection closed.")
