"""Per-request correlation ids for engine logs.

The API middleware opens a ``request_scope`` for every HTTP call; loggers
built with ``get_request_logger`` stamp each record with the active id so a
single allocation can be followed from the endpoint through the ledger and
waitlist.

Usage:
    with request_scope("REQ-1a2b3c4d"):
        get_request_logger(__name__).info("Allocating slot")
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

NO_REQUEST = "-"

_request_id: ContextVar[str] = ContextVar("request_id", default=NO_REQUEST)


def new_request_id() -> str:
    return f"REQ-{uuid.uuid4().hex[:8]}"


def get_request_id() -> str:
    return _request_id.get()


@contextmanager
def request_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind ``request_id`` (or a fresh one) for the duration of the block."""
    token = _request_id.set(request_id or new_request_id())
    try:
        yield _request_id.get()
    finally:
        _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        return True


def get_request_logger(name: str) -> logging.Logger:
    """``logging.getLogger(name)`` with ``record.request_id`` always set."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, RequestIdFilter) for f in logger.filters):
        logger.addFilter(RequestIdFilter())
    return logger
