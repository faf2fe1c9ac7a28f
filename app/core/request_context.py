"""
Request correlation ids using contextvars.

Each request gets an id (taken from the X-Request-ID header or generated)
that is attached to every log record emitted while handling it.

The id is task-local (like thread-local for async), so parallel requests
don't see each other's ids.
"""

import logging
import uuid
from contextvars import ContextVar

REQUEST_ID_HEADER = "X-Request-ID"

# Note: default=None so log records outside a request get "-"
_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def new_request_id(incoming: str | None = None) -> str:
    """Set the request id for the current task and return it."""
    request_id = incoming or uuid.uuid4().hex
    _request_id.set(request_id)
    return request_id


def get_request_id() -> str | None:
    """Get the current request's id, or None outside a request."""
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Adds `request_id` to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True
