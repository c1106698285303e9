"""Initial schema: conversion events and pixel mappings.

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

Creates:
- delivery_status enum
- conversion_events (delivery outbox with retry and lease bookkeeping)
- pixels (routing key -> Meta pixel + access token)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: conversion events and pixel mappings."""
    delivery_status = postgresql.ENUM(
        "unsent",
        "sent",
        "expired",
        "failed",
        name="delivery_status",
        create_type=False,
    )
    delivery_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "pixels",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("pixel_id", sa.String(255), nullable=False),
        sa.Column("meta_pixel_id", sa.String(255), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_pixels")),
        sa.UniqueConstraint("pixel_id", name=op.f("uq_pixels_pixel_id")),
    )
    op.create_index(op.f("ix_pixels_is_active"), "pixels", ["is_active"], unique=False)

    op.create_table(
        "conversion_events",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("pixel_id", sa.String(255), nullable=False),
        sa.Column("event_name", sa.String(100), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_source_url", sa.String(2048), nullable=True),
        sa.Column(
            "user_data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("custom_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "status",
            delivery_status,
            nullable=False,
            server_default=sa.text("'unsent'"),
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivery_marker", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_conversion_events")),
    )
    op.create_index(
        op.f("ix_conversion_events_status_created_at"),
        "conversion_events",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_conversion_events_pixel_id"),
        "conversion_events",
        ["pixel_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_conversion_events_event_id"),
        "conversion_events",
        ["event_id"],
        unique=False,
    )


def downgrade() -> None:
    """Revert migration: conversion events and pixel mappings."""
    op.drop_table("conversion_events")
    op.drop_table("pixels")

    op.execute("DROP TYPE IF EXISTS delivery_status")
