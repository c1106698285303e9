"""Process-wide logging setup with correlation IDs.

Both entry points (API and worker) call configure_logging() once at
startup. Every record carries a ``correlation_id`` attribute: the
X-Request-ID of the HTTP request being served, the id of the current
worker pass, or "-" outside of either.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s]: %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def get_correlation_id() -> str | None:
    """Correlation ID of the current request or worker pass, if any."""
    return correlation_id_ctx.get()


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation ID to each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a stderr handler on the root logger.

    Args:
        level: Logging level name (already validated by Settings).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
