"""Request ID middleware for previewd.

Reuses the X-Request-ID sent by the event gateway (or generates a UUID4),
stores it in a ContextVar so it can be retrieved anywhere in the request
lifecycle, and echoes it as a X-Request-ID response header.

RequestIDLogFilter copies the current ID onto every log record so that
service and reconcile logs triggered by a request can be correlated.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_HEADER = "X-Request-ID"
_MAX_INBOUND_LENGTH = 128

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return request_id_var.get()


def _inbound_id(request: Request) -> str | None:
    value = request.headers.get(_HEADER, "").strip()
    if value and len(value) <= _MAX_INBOUND_LENGTH and value.isprintable():
        return value
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Sets the request-id ContextVar and adds the X-Request-ID header
    to every response."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        req_id = _inbound_id(request) or str(uuid.uuid4())
        token = request_id_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[_HEADER] = req_id
        return response


class RequestIDLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True
