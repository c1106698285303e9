"""Configuration, settings cache and logging shared by the API and the worker."""

from capi_relay.core.config import (
    ConfigValidationError,
    CronSettings,
    DatabaseSettings,
    DeliverySettings,
    Environment,
    MetaSettings,
    Settings,
)
from capi_relay.core.logging import configure_logging, get_correlation_id
from capi_relay.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "CronSettings",
    "DatabaseSettings",
    "DeliverySettings",
    "Environment",
    "MetaSettings",
    "Settings",
    "clear_settings_cache",
    "configure_logging",
    "get_correlation_id",
    "get_settings",
    "get_settings_safe",
]
