"""Pydantic schemas for capi-relay API endpoints."""

from capi_relay.api.schemas.cron import DeliverySummaryResponse

__all__ = ["DeliverySummaryResponse"]
