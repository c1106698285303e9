"""Declarative base, shared column types and the delivery status enum."""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Constraint naming convention, matched by the migrations
metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)

# gen_random_uuid() is built in from PostgreSQL 13
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


class Base(DeclarativeBase):
    """Declarative base for all capi-relay tables."""

    metadata = metadata


class TimestampMixin:
    """created_at / updated_at columns maintained by the database."""

    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("now()"),
        onupdate=func.now(),
    )


class DeliveryStatus(enum.Enum):
    """Where a conversion event stands in its delivery lifecycle.

    UNSENT is the only state a delivery run acts on; the other three are
    terminal.
    """

    UNSENT = "unsent"
    SENT = "sent"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.SENT, DeliveryStatus.EXPIRED, DeliveryStatus.FAILED}
)
