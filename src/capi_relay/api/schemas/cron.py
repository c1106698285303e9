"""Pydantic schemas for the cron trigger endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from capi_relay.services.delivery import DeliverySummary


class DeliverySummaryResponse(BaseModel):
    """Outcome of one delivery run.

    Returned with HTTP 200 even when some destinations failed; partial
    failure is reported through ``failed`` and ``errors``.
    """

    processed: int = Field(
        ..., ge=0, description="Events this run settled (sent, expired or failed)"
    )
    sent: int = Field(..., ge=0, description="Events accepted by their destination")
    expired: int = Field(..., ge=0, description="Stale events expired without delivery")
    failed: int = Field(
        ...,
        ge=0,
        description="Events that failed this run (permanently or pending retry)",
    )
    errors: list[str] = Field(default_factory=list, description="Per-destination error messages")

    @classmethod
    def from_summary(cls, summary: DeliverySummary) -> DeliverySummaryResponse:
        return cls(**summary.to_dict())
