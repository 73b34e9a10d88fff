"""
Correlation id propagation.

Every request carries an ``X-Correlation-ID``: a valid incoming value is
kept, otherwise a fresh UUID4 is generated. The id is stored on
``request.state``, echoed in the response, and added to every log record
emitted while the request is in flight.
"""

import logging
import re
import uuid
from contextvars import ContextVar

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

CORRELATION_ID_HEADER = "X-Correlation-ID"
MAX_CORRELATION_ID_LENGTH = 128

VALID_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

logger = logging.getLogger(__name__)


def is_valid_correlation_id(value: str) -> bool:
    """Accept UUIDs and short ``[A-Za-z0-9._-]`` tokens of at most 128 bytes."""
    if len(value.encode("utf-8")) > MAX_CORRELATION_ID_LENGTH:
        return False
    return bool(UUID_PATTERN.match(value) or VALID_CORRELATION_ID_PATTERN.match(value))


def normalize_correlation_id(value: str) -> str:
    if UUID_PATTERN.match(value):
        return value.lower()
    return value


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


class CorrelationIdFilter(logging.Filter):
    """Adds ``correlation_id`` to every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        correlation_id = correlation_id_var.get()
        if correlation_id is not None:
            record.correlation_id = correlation_id
        return True


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reads or generates the correlation id and scopes it to the request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(CORRELATION_ID_HEADER)
        if incoming and is_valid_correlation_id(incoming):
            correlation_id = normalize_correlation_id(incoming)
        else:
            correlation_id = str(uuid.uuid4())

        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            correlation_id_var.reset(token)
