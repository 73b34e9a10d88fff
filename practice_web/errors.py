"""
Error taxonomy for the web host.

Startup-fatal errors (configuration, secrets) propagate out of
``create_app`` so the process never begins serving. Request-scoped
errors (storage unreachable) are turned into structured JSON responses
by the handlers registered here.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PracticeWebError(Exception):
    """Base class for all host errors."""


class StartupError(PracticeWebError):
    """Raised when the host cannot be composed. Never recovered from."""


class ConfigurationError(StartupError):
    """A required configuration section or field is missing or invalid."""

    def __init__(self, message: str, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = missing


class SecretResolutionError(StartupError):
    """A secret could not be read from its provider."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"Could not resolve secret {name!r}: {reason}")
        self.name = name


class StorageUnavailableError(PracticeWebError):
    """A store could not be reached while serving one request."""

    def __init__(self, store: str, reason: str):
        super().__init__(f"{store} store is unavailable: {reason}")
        self.store = store


async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    """Fail only the current request when a store cannot be reached."""
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": f"The {exc.store} store is currently unavailable."},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the request-scoped error handlers common to every environment."""
    app.add_exception_handler(StorageUnavailableError, storage_unavailable_handler)
