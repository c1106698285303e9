"""Cron trigger endpoint for the delivery pipeline.

An external scheduler calls this endpoint every few minutes; each call
runs one delivery pass and returns its summary. Partial failure (some
destinations rejected or timed out) is still a 200: the caller reads the
summary. Event store failures surface as a 500 error body.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Request

from capi_relay.api.middleware.auth import CronAuth, get_app_settings
from capi_relay.api.schemas.cron import DeliverySummaryResponse
from capi_relay.services.capi_client import CAPIClient, CAPIConfig
from capi_relay.services.delivery import DeliveryOrchestrator
from capi_relay.services.event_store import SQLAlchemyEventStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    responses={
        401: {"description": "Missing or invalid cron secret"},
        503: {"description": "Cron secret not configured"},
    },
)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


async def get_delivery_orchestrator(
    request: Request,
) -> AsyncGenerator[DeliveryOrchestrator, None]:
    """Build an orchestrator over the shared session factory.

    The CAPI client lives for the duration of the request.
    """
    from capi_relay.db import get_session_factory

    settings = get_app_settings(request)
    store = SQLAlchemyEventStore(get_session_factory())

    async with CAPIClient(CAPIConfig.from_settings(settings.meta)) as client:
        yield DeliveryOrchestrator.from_settings(
            store,
            client,
            settings.delivery,
            worker_id=f"cron-{uuid.uuid4().hex[:8]}",
        )


Orchestrator = Annotated[DeliveryOrchestrator, Depends(get_delivery_orchestrator)]


# -----------------------------------------------------------------------------
# Delivery trigger
# -----------------------------------------------------------------------------


@router.api_route(
    "/send-capi-events",
    methods=["GET", "POST"],
    response_model=DeliverySummaryResponse,
    summary="Run one delivery pass",
    description="Drain unsent conversion events to their Conversions API destinations.",
)
async def send_capi_events(
    _auth: CronAuth,
    orchestrator: Orchestrator,
) -> DeliverySummaryResponse:
    """Run the delivery orchestrator once and return its summary."""
    summary = await orchestrator.run()

    if summary.errors:
        logger.warning(
            "Cron delivery run finished with errors: processed=%d, failed=%d, errors=%s",
            summary.processed,
            summary.failed,
            summary.errors,
        )

    return DeliverySummaryResponse.from_summary(summary)
