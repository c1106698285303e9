"""Delivery orchestrator: drains unsent conversion events to their destinations.

One run:
1. Claim up to MAX_BATCH_LIMIT unsent events (leased against other runs).
2. Expire stale events in one bulk write; they never reach the transport.
3. Resolve destination mappings once for the distinct pixel ids left;
   events of unmapped pixels are failed permanently.
4. Group the mapped events by pixel id, in sorted order.
5. Per group: fail events whose retry count reached the limit, renew the
   lease on the rest and send the events still held in a single transport
   call.
6. Mark the batch SENT on success; on any transport failure (timeouts
   included) record one more retry for the whole batch and move on.

Groups are dispatched concurrently up to ``max_concurrency``. Each group
produces its own partial summary and the run summary is their reduction,
so a failing destination never affects another one.

Every write names the run's worker_id and counters come from the rows the
store actually changed: once another run has re-claimed an event whose
lease lapsed, this run neither sends nor counts it.

Business failures end up in ``DeliverySummary.errors``; only event store
errors (EventStoreError) propagate out of run().
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import reduce
from typing import TYPE_CHECKING, Any, Protocol

from capi_relay.db.models import MAX_RETRY_COUNT, STALE_AFTER
from capi_relay.services.capi_client import CAPIEventInput

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from capi_relay.core.config import DeliverySettings
    from capi_relay.db.models import ConversionEvent
    from capi_relay.services.capi_client import CAPIResponse
    from capi_relay.services.event_store import EventStore, PixelTokenMapping

logger = logging.getLogger(__name__)

# Upper bound on events pulled by a single run
MAX_BATCH_LIMIT = 1000

DEFAULT_LEASE_SECONDS = 600
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_SEND_TIMEOUT = 30.0


class DeliveryTransport(Protocol):
    """Sends one batch of events to one destination."""

    async def send_events(
        self,
        credential: str,
        destination_id: str,
        events: Sequence[CAPIEventInput],
    ) -> CAPIResponse: ...


@dataclass
class DeliverySummary:
    """Counters for one delivery run (or one destination group of it)."""

    processed: int = 0
    sent: int = 0
    expired: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: DeliverySummary) -> DeliverySummary:
        """Combine two partial summaries into a new one."""
        return DeliverySummary(
            processed=self.processed + other.processed,
            sent=self.sent + other.sent,
            expired=self.expired + other.expired,
            failed=self.failed + other.failed,
            errors=[*self.errors, *other.errors],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "expired": self.expired,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class DeliveryOptions:
    """Tuning knobs for the orchestrator.

    Attributes:
        batch_limit: Events claimed per run (capped at MAX_BATCH_LIMIT).
        stale_after: Age at which an unsent event expires.
        max_retry_count: Retry count at which an event fails permanently.
        lease_seconds: Visibility timeout of claimed rows.
        max_concurrency: Destination groups dispatched at the same time.
        send_timeout: Seconds allowed for one transport call.
    """

    batch_limit: int = MAX_BATCH_LIMIT
    stale_after: timedelta = STALE_AFTER
    max_retry_count: int = MAX_RETRY_COUNT
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    send_timeout: float = DEFAULT_SEND_TIMEOUT

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> DeliveryOptions:
        return cls(
            batch_limit=settings.batch_limit,
            stale_after=timedelta(days=settings.stale_after_days),
            max_retry_count=settings.max_retry_count,
            lease_seconds=settings.lease_seconds,
            max_concurrency=settings.max_concurrency,
            send_timeout=settings.send_timeout,
        )


def partition_stale(
    events: Iterable[ConversionEvent],
    reference_time: datetime,
    stale_after: timedelta = STALE_AFTER,
) -> tuple[list[ConversionEvent], list[ConversionEvent]]:
    """Split events into (stale, active), preserving order."""
    stale: list[ConversionEvent] = []
    active: list[ConversionEvent] = []
    for event in events:
        if event.is_stale(reference_time, stale_after):
            stale.append(event)
        else:
            active.append(event)
    return stale, active


def group_by_pixel(events: Iterable[ConversionEvent]) -> dict[str, list[ConversionEvent]]:
    """Group events by pixel id.

    Keys are in sorted order; events keep their relative order in a group.
    """
    groups: dict[str, list[ConversionEvent]] = {}
    for event in events:
        groups.setdefault(event.pixel_id, []).append(event)
    return {pixel_id: groups[pixel_id] for pixel_id in sorted(groups)}


def split_exhausted(
    events: Iterable[ConversionEvent],
    max_retry_count: int = MAX_RETRY_COUNT,
) -> tuple[list[ConversionEvent], list[ConversionEvent]]:
    """Split events into (exhausted, sendable) by retry count."""
    exhausted: list[ConversionEvent] = []
    sendable: list[ConversionEvent] = []
    for event in events:
        if event.has_exhausted_retries(max_retry_count):
            exhausted.append(event)
        else:
            sendable.append(event)
    return exhausted, sendable


def _describe_failure(exc: BaseException, send_timeout: float) -> str:
    if isinstance(exc, TimeoutError) and not str(exc):
        return f"Delivery timed out after {send_timeout:g}s"
    return str(exc) or type(exc).__name__


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DeliveryOrchestrator:
    """Runs the claim / classify / dispatch / reconcile cycle.

    Example:
        store = SQLAlchemyEventStore(get_session_factory())
        async with CAPIClient(CAPIConfig.from_settings(settings.meta)) as client:
            orchestrator = DeliveryOrchestrator(store, client)
            summary = await orchestrator.run()
    """

    def __init__(
        self,
        store: EventStore,
        transport: DeliveryTransport,
        options: DeliveryOptions | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Event store holding the conversion events.
            transport: Client that sends a batch to one destination.
            options: Tuning knobs (defaults match the documented constants).
            worker_id: Identifier recorded on claimed rows.
            clock: Source of the current time.
        """
        self.store = store
        self.transport = transport
        self.options = options or DeliveryOptions()
        self.worker_id = worker_id or f"delivery-{uuid.uuid4().hex[:8]}"
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: EventStore,
        transport: DeliveryTransport,
        settings: DeliverySettings,
        worker_id: str | None = None,
    ) -> DeliveryOrchestrator:
        """Build an orchestrator configured from DeliverySettings."""
        return cls(
            store,
            transport,
            options=DeliveryOptions.from_settings(settings),
            worker_id=worker_id,
        )

    async def run(self) -> DeliverySummary:
        """Execute one delivery run.

        Returns:
            Aggregated summary; partial failures are reported, not raised.

        Raises:
            EventStoreError: If the event store fails.
        """
        limit = min(self.options.batch_limit, MAX_BATCH_LIMIT)
        events = await self.store.claim_unsent_events(
            limit,
            self.options.lease_seconds,
            self.worker_id,
        )
        if not events:
            logger.debug("Delivery run found no unsent events: worker_id=%s", self.worker_id)
            return DeliverySummary()

        summary = DeliverySummary()

        # Staleness is decided before mapping or retry checks
        stale, active = partition_stale(events, self._clock(), self.options.stale_after)
        if stale:
            expired = await self.store.mark_expired_batch(
                [event.id for event in stale], worker_id=self.worker_id
            )
            summary.processed += expired
            summary.expired += expired
            logger.info("Expired stale events: count=%d", expired)

        if not active:
            return self._finish(summary)

        groups = group_by_pixel(active)
        mappings = await self.store.find_pixel_token_mappings(list(groups))
        mapping_by_pixel = {mapping.pixel_id: mapping for mapping in mappings}

        dispatchable: list[tuple[PixelTokenMapping, list[ConversionEvent]]] = []
        for pixel_id, pixel_events in groups.items():
            mapping = mapping_by_pixel.get(pixel_id)
            if mapping is None:
                reason = f"Pixel mapping not found: {pixel_id}"
                failed = await self.store.mark_failed_batch(
                    [event.id for event in pixel_events], reason, worker_id=self.worker_id
                )
                summary.processed += failed
                summary.failed += failed
                summary.errors.append(reason)
                logger.warning(
                    "No destination mapping: pixel_id=%s, events=%d",
                    pixel_id,
                    len(pixel_events),
                )
                continue
            dispatchable.append((mapping, pixel_events))

        if dispatchable:
            semaphore = asyncio.Semaphore(min(self.options.max_concurrency, len(dispatchable)))
            partials = await asyncio.gather(
                *(
                    self._deliver_group(mapping, pixel_events, semaphore)
                    for mapping, pixel_events in dispatchable
                )
            )
            summary = reduce(DeliverySummary.merge, partials, summary)

        return self._finish(summary)

    async def _deliver_group(
        self,
        mapping: PixelTokenMapping,
        events: list[ConversionEvent],
        semaphore: asyncio.Semaphore,
    ) -> DeliverySummary:
        """Process one destination group and return its partial summary."""
        partial = DeliverySummary()

        exhausted, sendable = split_exhausted(events, self.options.max_retry_count)
        if exhausted:
            failed = await self.store.mark_failed_batch(
                [event.id for event in exhausted],
                f"Retry limit reached ({self.options.max_retry_count} attempts)",
                worker_id=self.worker_id,
            )
            partial.processed += failed
            partial.failed += failed
            logger.warning(
                "Retry limit reached: pixel_id=%s, events=%d",
                mapping.pixel_id,
                len(exhausted),
            )

        if not sendable:
            return partial

        async with semaphore:
            # The claim lease may have lapsed while this group waited its turn
            held = set(
                await self.store.renew_lease(
                    [event.id for event in sendable],
                    self.options.lease_seconds,
                    self.worker_id,
                )
            )
            sendable = [event for event in sendable if event.id in held]
            if not sendable:
                logger.warning(
                    "Lease lost before delivery: pixel_id=%s, worker_id=%s",
                    mapping.pixel_id,
                    self.worker_id,
                )
                return partial

            ids = [event.id for event in sendable]
            inputs = [CAPIEventInput.from_conversion_event(event) for event in sendable]
            try:
                response = await asyncio.wait_for(
                    self.transport.send_events(mapping.credential, mapping.destination_id, inputs),
                    timeout=self.options.send_timeout,
                )
            except Exception as e:
                error = f"{mapping.destination_id}: {_describe_failure(e, self.options.send_timeout)}"
                logger.warning(
                    "Delivery failed: pixel_id=%s, destination_id=%s, events=%d, error=%s",
                    mapping.pixel_id,
                    mapping.destination_id,
                    len(ids),
                    error,
                )
                retried = await self.store.increment_retry_batch(
                    ids, error, worker_id=self.worker_id
                )
                partial.processed += retried
                partial.failed += retried
                partial.errors.append(error)
                return partial

        marker = response.trace_id or f"SENT_{int(self._clock().timestamp() * 1000)}"
        sent = await self.store.mark_sent_batch(ids, marker, worker_id=self.worker_id)
        partial.processed += sent
        partial.sent += sent
        logger.info(
            "Delivered events: pixel_id=%s, destination_id=%s, events=%d, marker=%s",
            mapping.pixel_id,
            mapping.destination_id,
            len(ids),
            marker,
        )
        return partial

    def _finish(self, summary: DeliverySummary) -> DeliverySummary:
        logger.info(
            "Delivery run completed: worker_id=%s, processed=%d, sent=%d, expired=%d, "
            "failed=%d, errors=%d",
            self.worker_id,
            summary.processed,
            summary.sent,
            summary.expired,
            summary.failed,
            len(summary.errors),
        )
        return summary
