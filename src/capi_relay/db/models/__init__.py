"""SQLAlchemy ORM models for capi-relay.

- base: Common metadata, annotated column types and the delivery status enum
- conversion_events: Captured conversion events and their delivery bookkeeping
- pixels: Destination mappings (routing key -> Meta pixel + access token)
"""

from capi_relay.db.models.base import Base, DeliveryStatus, metadata
from capi_relay.db.models.conversion_events import (
    MAX_RETRY_COUNT,
    STALE_AFTER,
    ConversionEvent,
    InvalidConversionEventError,
    StandardEventName,
    parse_retry_marker,
)
from capi_relay.db.models.pixels import Pixel

__all__ = [
    "MAX_RETRY_COUNT",
    "STALE_AFTER",
    "Base",
    "ConversionEvent",
    "DeliveryStatus",
    "InvalidConversionEventError",
    "Pixel",
    "StandardEventName",
    "metadata",
    "parse_retry_marker",
]
