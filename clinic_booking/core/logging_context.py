"""Request-id logging context.

Every log record emitted while a request is being handled carries the
request id, so one booking attempt can be followed from the availability
check through the webhook that confirms it.

Usage:
    from clinic_booking.core.logging_context import set_request_id

    set_request_id("req-abc123")
    logger.info("Booking created")  # → [req-abc123] Booking created
"""

import logging
from contextvars import ContextVar

from clinic_booking.core import config

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Injects request_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        return True


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if not any(isinstance(f, RequestIdFilter) for handler in root.handlers for f in handler.filters):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        root.addHandler(handler)
    root.setLevel((level or config.LOG_LEVEL).upper())
