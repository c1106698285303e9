"""Cached access to the process settings.

The API and the worker both call get_settings() at startup; invalid
configuration ends the process with exit status 1 after logging every
offending field. Tests reset the cache with clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from capi_relay.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


def _describe_validation_error(error: ValidationError) -> str:
    lines = []
    for entry in error.errors():
        location = ".".join(str(part) for part in entry["loc"]) or "<root>"
        lines.append(f"  - {location}: {entry['msg']}")
    return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings from the environment.

    Raises:
        SystemExit: If the environment does not yield valid settings.
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid configuration:\n%s", _describe_validation_error(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid configuration: %s (field: %s)", e.message, e.field or "unknown")
        raise SystemExit(1) from e

    logger.info(
        "Settings loaded: environment=%s, batch_limit=%d, max_concurrency=%d",
        settings.environment.value,
        settings.delivery.batch_limit,
        settings.delivery.max_concurrency,
    )
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings; the next get_settings() reloads them."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but returns None instead of exiting."""
    try:
        return get_settings()
    except SystemExit:
        return None
