"""capi-relay service layer.

- SQLAlchemyEventStore: Claim, bulk-mark and mapping queries over PostgreSQL
- CAPIClient: Meta Conversions API transport
- DeliveryOrchestrator: Periodic claim / classify / dispatch / reconcile run
"""

from capi_relay.services.capi_client import (
    CAPIClient,
    CAPIConfig,
    CAPIConnectionError,
    CAPIError,
    CAPIEventInput,
    CAPIResponse,
    CAPITestEventResult,
    CAPITimeoutError,
)
from capi_relay.services.delivery import (
    MAX_BATCH_LIMIT,
    DeliveryOptions,
    DeliveryOrchestrator,
    DeliverySummary,
    DeliveryTransport,
)
from capi_relay.services.event_store import (
    EventStore,
    EventStoreError,
    PixelTokenMapping,
    SQLAlchemyEventStore,
)

__all__ = [
    "MAX_BATCH_LIMIT",
    "CAPIClient",
    "CAPIConfig",
    "CAPIConnectionError",
    "CAPIError",
    "CAPIEventInput",
    "CAPIResponse",
    "CAPITestEventResult",
    "CAPITimeoutError",
    "DeliveryOptions",
    "DeliveryOrchestrator",
    "DeliverySummary",
    "DeliveryTransport",
    "EventStore",
    "EventStoreError",
    "PixelTokenMapping",
    "SQLAlchemyEventStore",
]
