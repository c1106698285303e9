"""Pixel model: destination mapping for conversion events.

Each captured event carries a ``pixel_id`` routing key. At delivery time
it is resolved to the Meta pixel that receives the events and the access
token that authorizes the send.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from capi_relay.db.models.base import Base, TimestampMixin, UUIDPrimaryKey


class Pixel(TimestampMixin, Base):
    """Advertiser destination configured for a routing key."""

    __tablename__ = "pixels"

    id: Mapped[UUIDPrimaryKey]

    # Routing key referenced by conversion_events.pixel_id
    pixel_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Destination id on the Meta side
    meta_pixel_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Conversions API access token; rows without one cannot be delivered to
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("ix_pixels_is_active", "is_active"),)
