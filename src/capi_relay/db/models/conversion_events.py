"""Conversion event model: the unit of delivery work.

A conversion event is captured once and then drained by the delivery
orchestrator until it reaches a terminal status:

    UNSENT -> SENT | EXPIRED | FAILED
    UNSENT -> UNSENT (retry_count + 1 after a transient transport failure)

Terminal rows are never selected again and never transition further.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from enum import Enum as PyEnum
from typing import Any, Self

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from capi_relay.db.models.base import (
    TERMINAL_STATUSES,
    Base,
    DeliveryStatus,
    OptionalTimestampTZ,
    TimestampMixin,
    UUIDPrimaryKey,
)

# Attempts allowed before an event is failed without another send
MAX_RETRY_COUNT = 3

# Unsent events at least this old are expired instead of delivered
STALE_AFTER = timedelta(days=7)

RETRY_MARKER_PATTERN = re.compile(r"^RETRY_(\d+)$")


class StandardEventName(str, PyEnum):
    """Standard Meta pixel event names.

    Custom event names are accepted too; these are the ones the
    destination recognizes for optimization.
    """

    PAGE_VIEW = "PageView"
    VIEW_CONTENT = "ViewContent"
    ADD_TO_CART = "AddToCart"
    ADD_TO_WISHLIST = "AddToWishlist"
    INITIATE_CHECKOUT = "InitiateCheckout"
    ADD_PAYMENT_INFO = "AddPaymentInfo"
    PURCHASE = "Purchase"
    LEAD = "Lead"
    COMPLETE_REGISTRATION = "CompleteRegistration"
    SEARCH = "Search"


class InvalidConversionEventError(ValueError):
    """Raised when a conversion event fails creation validation."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


def parse_retry_marker(marker: str | None) -> int:
    """Parse a legacy ``RETRY_<n>`` delivery marker.

    Args:
        marker: Stored delivery marker, possibly None.

    Returns:
        n for a ``RETRY_<n>`` marker, 0 for anything else.
    """
    if not marker:
        return 0
    match = RETRY_MARKER_PATTERN.match(marker)
    if match is None:
        return 0
    return int(match.group(1))


class ConversionEvent(TimestampMixin, Base):
    """Captured conversion fact awaiting server-side delivery.

    ``event_id`` is assigned by the caller and sent unmodified so the
    destination can deduplicate retried deliveries.
    """

    __tablename__ = "conversion_events"

    id: Mapped[UUIDPrimaryKey]

    # Caller-assigned deduplication key
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Routing key resolved to a destination mapping at delivery time
    pixel_id: Mapped[str] = mapped_column(String(255), nullable=False)

    event_name: Mapped[str] = mapped_column(String(100), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_source_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Identity bag (em, ph, fbc, fbp, client_ip_address, ...)
    user_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    # Value bag (value, currency, content_ids, ...)
    custom_data: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(
            DeliveryStatus,
            name="delivery_status",
            create_constraint=True,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=DeliveryStatus.UNSENT,
    )

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Trace id, SENT_<epoch-ms>, or a legacy RETRY_<n> encoding
    delivery_marker: Mapped[str | None] = mapped_column(String(255), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    # Claim lease held by a delivery run
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[OptionalTimestampTZ]
    lease_expires_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        # Claim query: unsent rows in creation order
        Index("ix_conversion_events_status_created_at", "status", "created_at"),
        Index("ix_conversion_events_pixel_id", "pixel_id"),
        Index("ix_conversion_events_event_id", "event_id"),
    )

    @property
    def sent_to_meta(self) -> bool:
        """Whether the event has left the unsent state for good."""
        return self.status in TERMINAL_STATUSES

    def is_stale(
        self,
        reference_time: datetime | None = None,
        stale_after: timedelta = STALE_AFTER,
    ) -> bool:
        """Check whether an unsent event is too old to deliver.

        Args:
            reference_time: Point in time to measure age against (default: now).
            stale_after: Age threshold (default: 7 days).

        Returns:
            True iff the event is unsent and its age is at least the threshold.
        """
        if self.sent_to_meta:
            return False
        now = reference_time or datetime.now(UTC)
        return now - self.created_at >= stale_after

    def effective_retry_count(self) -> int:
        """Retry count honouring both the column and a legacy marker."""
        return max(self.retry_count or 0, parse_retry_marker(self.delivery_marker), 0)

    def has_exhausted_retries(self, max_retry_count: int = MAX_RETRY_COUNT) -> bool:
        """Check whether the event must fail without another attempt."""
        return self.effective_retry_count() >= max_retry_count

    @classmethod
    def create(
        cls,
        *,
        pixel_id: str,
        event_name: str,
        event_id: str,
        event_time: datetime,
        user_data: dict[str, Any] | None = None,
        custom_data: dict[str, Any] | None = None,
        event_source_url: str | None = None,
        now: datetime | None = None,
    ) -> Self:
        """Validate input and build a new unsent event.

        Raises:
            InvalidConversionEventError: If a required field is blank, the
                event time lies in the future, or a Purchase lacks value
                and currency.
        """
        for field, value in (
            ("pixel_id", pixel_id),
            ("event_name", event_name),
            ("event_id", event_id),
        ):
            if not value or not value.strip():
                raise InvalidConversionEventError(f"{field} is required", field=field)

        now = now or datetime.now(UTC)
        if event_time > now:
            raise InvalidConversionEventError(
                "event_time cannot be in the future", field="event_time"
            )

        if event_name == StandardEventName.PURCHASE.value:
            data = custom_data or {}
            if data.get("value") is None or not data.get("currency"):
                raise InvalidConversionEventError(
                    "Purchase events require value and currency", field="custom_data"
                )

        return cls(
            pixel_id=pixel_id,
            event_name=event_name,
            event_id=event_id,
            event_time=event_time,
            event_source_url=event_source_url,
            user_data=dict(user_data or {}),
            custom_data=dict(custom_data) if custom_data is not None else None,
            status=DeliveryStatus.UNSENT,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
