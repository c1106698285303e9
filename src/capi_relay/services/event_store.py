"""PostgreSQL-backed event store for the delivery pipeline.

The store is the only shared resource of a delivery run. Every mutation
is a single bulk statement keyed by event ids and guarded by
``status = 'unsent'``, so a terminal event can never transition again.

Claiming uses the UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED)
pattern: a run stamps a lease on the rows it pulls, and rows under a live
lease are invisible to every other run. A run renews the lease of a group
right before sending it and only sends the rows it still holds. Writes
given a worker_id only touch rows that worker still holds, and every bulk
write clears the lease. Rows of a crashed run become claimable again once
their lease lapses.

Each operation opens its own session from the factory, so destination
groups dispatched concurrently never share a session.

Usage:
    from capi_relay.db import get_session_factory
    from capi_relay.services.event_store import SQLAlchemyEventStore

    store = SQLAlchemyEventStore(get_session_factory())
    events = await store.claim_unsent_events(1000, lease_seconds=600, worker_id="cron-1")
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import Integer, cast, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from capi_relay.db.models import ConversionEvent, DeliveryStatus, Pixel

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncGenerator, Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# POSIX regex for the legacy retry marker; substring() returns the captured count
_LEGACY_RETRY_REGEX = r"^RETRY_(\d+)$"


@dataclass(frozen=True)
class PixelTokenMapping:
    """Resolved destination for a routing key.

    Attributes:
        pixel_id: Routing key carried by conversion events.
        destination_id: Meta pixel id the events are sent to.
        credential: Access token authorizing the send.
    """

    pixel_id: str
    destination_id: str
    credential: str


class EventStoreError(Exception):
    """Raised when the event store cannot complete an operation.

    Infrastructure failure: the delivery run is aborted and the error
    propagates to the trigger.
    """

    pass


class EventStore(Protocol):
    """Persistence operations the delivery orchestrator depends on."""

    async def claim_unsent_events(
        self, limit: int, lease_seconds: int, worker_id: str
    ) -> list[ConversionEvent]: ...

    async def find_unsent_events(self, limit: int) -> list[ConversionEvent]: ...

    async def renew_lease(
        self, ids: Sequence[uuid.UUID], lease_seconds: int, worker_id: str
    ) -> list[uuid.UUID]: ...

    async def mark_expired_batch(
        self, ids: Sequence[uuid.UUID], worker_id: str | None = None
    ) -> int: ...

    async def mark_failed_batch(
        self, ids: Sequence[uuid.UUID], reason: str, worker_id: str | None = None
    ) -> int: ...

    async def find_pixel_token_mappings(
        self, pixel_ids: Iterable[str]
    ) -> list[PixelTokenMapping]: ...

    async def mark_sent_batch(
        self, ids: Sequence[uuid.UUID], marker: str, worker_id: str | None = None
    ) -> int: ...

    async def increment_retry_batch(
        self, ids: Sequence[uuid.UUID], error: str, worker_id: str | None = None
    ) -> int: ...


class SQLAlchemyEventStore:
    """Event store over the ``conversion_events`` and ``pixels`` tables.

    Attributes:
        session_factory: Factory producing one AsyncSession per operation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            session_factory: Async session factory (expire_on_commit=False so
                returned events stay readable after their session closes).
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Run one operation in its own session and commit on success."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def claim_unsent_events(
        self,
        limit: int,
        lease_seconds: int,
        worker_id: str,
    ) -> list[ConversionEvent]:
        """Claim up to ``limit`` unsent events not under a live lease.

        Args:
            limit: Maximum number of events to claim.
            lease_seconds: How long the claimed rows stay invisible to other runs.
            worker_id: Identifier of the claiming run, stored in claimed_by.

        Returns:
            Claimed events, oldest first.

        Raises:
            EventStoreError: If the claim fails.
        """
        now = datetime.now(UTC)

        claimable = (
            select(ConversionEvent.id)
            .where(
                ConversionEvent.status == DeliveryStatus.UNSENT,
                or_(
                    ConversionEvent.lease_expires_at.is_(None),
                    ConversionEvent.lease_expires_at <= now,
                ),
            )
            .order_by(ConversionEvent.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(ConversionEvent)
            .where(ConversionEvent.id.in_(claimable))
            .values(
                claimed_by=worker_id,
                claimed_at=now,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
            )
            .returning(ConversionEvent)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._transaction() as session:
                result = await session.execute(stmt)
                events = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to claim unsent events: %s", str(e))
            raise EventStoreError(f"Failed to claim unsent events: {e}") from e

        events.sort(key=lambda event: event.created_at)

        logger.info(
            "Events claimed: count=%d, worker_id=%s, limit=%d, lease_seconds=%d",
            len(events),
            worker_id,
            limit,
            lease_seconds,
        )
        return events

    async def find_unsent_events(self, limit: int) -> list[ConversionEvent]:
        """Read up to ``limit`` unsent events without claiming them.

        Args:
            limit: Maximum number of events to return.

        Returns:
            Unsent events, oldest first.

        Raises:
            EventStoreError: If the query fails.
        """
        stmt = (
            select(ConversionEvent)
            .where(ConversionEvent.status == DeliveryStatus.UNSENT)
            .order_by(ConversionEvent.created_at)
            .limit(limit)
        )

        try:
            async with self._transaction() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to find unsent events: %s", str(e))
            raise EventStoreError(f"Failed to find unsent events: {e}") from e

    async def find_pixel_token_mappings(
        self,
        pixel_ids: Iterable[str],
    ) -> list[PixelTokenMapping]:
        """Resolve routing keys to destinations.

        Only active pixels with a non-empty access token resolve; any other
        routing key is simply absent from the result.

        Args:
            pixel_ids: Routing keys to resolve.

        Returns:
            Mappings sorted by pixel_id.

        Raises:
            EventStoreError: If the query fails.
        """
        wanted = sorted(set(pixel_ids))
        if not wanted:
            return []

        stmt = (
            select(Pixel)
            .where(
                Pixel.pixel_id.in_(wanted),
                Pixel.is_active.is_(True),
                Pixel.access_token.is_not(None),
                Pixel.access_token != "",
            )
            .order_by(Pixel.pixel_id)
        )

        try:
            async with self._transaction() as session:
                result = await session.execute(stmt)
                pixels = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to resolve pixel mappings: %s", str(e))
            raise EventStoreError(f"Failed to resolve pixel mappings: {e}") from e

        return [
            PixelTokenMapping(
                pixel_id=pixel.pixel_id,
                destination_id=pixel.meta_pixel_id,
                credential=pixel.access_token,
            )
            for pixel in pixels
            if pixel.access_token
        ]

    async def renew_lease(
        self,
        ids: Sequence[uuid.UUID],
        lease_seconds: int,
        worker_id: str,
    ) -> list[uuid.UUID]:
        """Extend the lease on the rows ``worker_id`` still holds.

        Rows another run has claimed since, or that are no longer unsent,
        are left alone and missing from the result.

        Returns:
            Ids whose lease was extended.

        Raises:
            EventStoreError: If the update fails.
        """
        if not ids:
            return []

        now = datetime.now(UTC)
        stmt = (
            update(ConversionEvent)
            .where(
                ConversionEvent.id.in_(list(ids)),
                ConversionEvent.status == DeliveryStatus.UNSENT,
                ConversionEvent.claimed_by == worker_id,
            )
            .values(lease_expires_at=now + timedelta(seconds=lease_seconds))
            .returning(ConversionEvent.id)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._transaction() as session:
                result = await session.execute(stmt)
                renewed = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to renew lease on %d events: %s", len(ids), str(e))
            raise EventStoreError(f"Failed to renew lease: {e}") from e

        if len(renewed) != len(ids):
            logger.warning(
                "Lease lost on claimed events: worker_id=%s, requested=%d, renewed=%d",
                worker_id,
                len(ids),
                len(renewed),
            )
        return renewed

    async def mark_expired_batch(
        self, ids: Sequence[uuid.UUID], worker_id: str | None = None
    ) -> int:
        """Move unsent events to EXPIRED.

        Returns:
            Number of rows transitioned.
        """
        now = datetime.now(UTC)
        return await self._update_unsent(
            ids,
            "expired",
            worker_id,
            status=DeliveryStatus.EXPIRED,
            completed_at=now,
        )

    async def mark_failed_batch(
        self, ids: Sequence[uuid.UUID], reason: str, worker_id: str | None = None
    ) -> int:
        """Move unsent events to FAILED, recording the reason.

        Returns:
            Number of rows transitioned.
        """
        now = datetime.now(UTC)
        return await self._update_unsent(
            ids,
            "failed",
            worker_id,
            status=DeliveryStatus.FAILED,
            last_error=reason,
            completed_at=now,
        )

    async def mark_sent_batch(
        self, ids: Sequence[uuid.UUID], marker: str, worker_id: str | None = None
    ) -> int:
        """Move unsent events to SENT with the destination trace marker.

        Returns:
            Number of rows transitioned.
        """
        now = datetime.now(UTC)
        return await self._update_unsent(
            ids,
            "sent",
            worker_id,
            status=DeliveryStatus.SENT,
            delivery_marker=marker,
            last_error=None,
            last_attempt_at=now,
            completed_at=now,
        )

    async def increment_retry_batch(
        self, ids: Sequence[uuid.UUID], error: str, worker_id: str | None = None
    ) -> int:
        """Record one more failed attempt on unsent events.

        The new count continues from the larger of the column and a legacy
        ``RETRY_<n>`` marker, so older rows keep their attempt history.

        Returns:
            Number of rows updated.
        """
        now = datetime.now(UTC)
        legacy_count = func.coalesce(
            cast(func.substring(ConversionEvent.delivery_marker, _LEGACY_RETRY_REGEX), Integer),
            0,
        )
        return await self._update_unsent(
            ids,
            "retry",
            worker_id,
            retry_count=func.greatest(ConversionEvent.retry_count, legacy_count) + 1,
            last_error=error,
            last_attempt_at=now,
        )

    async def _update_unsent(
        self,
        ids: Sequence[uuid.UUID],
        action: str,
        worker_id: str | None,
        **values: Any,
    ) -> int:
        """Apply one guarded bulk update and release the lease.

        Args:
            ids: Event ids to update.
            action: Short label used in logs and errors.
            worker_id: When set, only rows still claimed by this worker change.
            **values: Column values to set.

        Returns:
            Number of rows updated (terminal or foreign-held rows are skipped).

        Raises:
            EventStoreError: If the update fails.
        """
        if not ids:
            return 0

        conditions = [
            ConversionEvent.id.in_(list(ids)),
            ConversionEvent.status == DeliveryStatus.UNSENT,
        ]
        if worker_id is not None:
            conditions.append(ConversionEvent.claimed_by == worker_id)

        stmt = (
            update(ConversionEvent)
            .where(*conditions)
            .values(
                **values,
                claimed_by=None,
                claimed_at=None,
                lease_expires_at=None,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._transaction() as session:
                result = await session.execute(stmt)
                count = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error("Failed to apply %s update to %d events: %s", action, len(ids), str(e))
            raise EventStoreError(f"Failed to apply {action} update: {e}") from e

        if count != len(ids):
            logger.warning(
                "Bulk %s update skipped rows no longer unsent or held: requested=%d, updated=%d",
                action,
                len(ids),
                count,
            )
        else:
            logger.debug("Bulk %s update: count=%d", action, count)

        return count
