"""Interval worker: the long-running alternative to the HTTP cron trigger.

Each pass claims a batch, delivers it through a fresh Conversions API client
and records the outcome. A failed pass is logged and the next one runs on
schedule; SIGTERM or SIGINT ends the loop after the pass in progress.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NoReturn

from capi_relay.core.logging import correlation_id_ctx
from capi_relay.services.capi_client import CAPIClient, CAPIConfig
from capi_relay.services.delivery import DeliveryOptions, DeliveryOrchestrator

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractAsyncContextManager

    from capi_relay.core.config import Settings
    from capi_relay.services.delivery import DeliverySummary, DeliveryTransport
    from capi_relay.services.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Knobs for one DeliveryWorker.

    Attributes:
        worker_id: Written to claimed_by on every row this worker leases.
        interval_seconds: Seconds between delivery passes.
        shutdown_timeout: Seconds to wait for an in-flight pass on shutdown.
        delivery: Orchestrator tuning.
        capi: Conversions API client configuration.
    """

    worker_id: str = field(default_factory=lambda: f"capi-relay-{uuid.uuid4().hex[:12]}")
    interval_seconds: float = 300.0
    shutdown_timeout: float = 60.0
    delivery: DeliveryOptions = field(default_factory=DeliveryOptions)
    capi: CAPIConfig = field(default_factory=CAPIConfig)

    @classmethod
    def from_settings(cls, settings: Settings, worker_id: str | None = None) -> WorkerConfig:
        """Build WorkerConfig from application settings."""
        config = cls(
            interval_seconds=float(settings.delivery.interval_seconds),
            # An in-flight pass may still be waiting on a transport call
            shutdown_timeout=max(60.0, settings.delivery.send_timeout * 2),
            delivery=DeliveryOptions.from_settings(settings.delivery),
            capi=CAPIConfig.from_settings(settings.meta),
        )
        if worker_id:
            config.worker_id = worker_id
        return config


class DeliveryWorker:
    """Runs the delivery orchestrator on a fixed interval.

    Example:
        config = WorkerConfig.from_settings(get_settings())
        worker = DeliveryWorker(config, SQLAlchemyEventStore(get_session_factory()))
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: EventStore,
        transport_factory: Callable[[], AbstractAsyncContextManager[DeliveryTransport]]
        | None = None,
    ) -> None:
        """transport_factory defaults to a CAPIClient built from config.capi."""
        self.config = config
        self.store = store
        self._transport_factory = transport_factory or (lambda: CAPIClient(config.capi))
        self._stopping = asyncio.Event()
        self._started: float | None = None
        self._passes_ok = 0
        self._passes_failed = 0

    async def start(self) -> None:
        """Run passes until stop() is called."""
        self._started = time.monotonic()
        logger.info(
            "Delivery worker up: worker_id=%s, interval=%ss",
            self.config.worker_id,
            self.config.interval_seconds,
        )
        try:
            await self._run_loop()
        finally:
            logger.info(
                "Delivery worker down: worker_id=%s, passes_ok=%d, passes_failed=%d, uptime=%.0fs",
                self.config.worker_id,
                self._passes_ok,
                self._passes_failed,
                self.uptime_seconds(),
            )

    async def stop(self) -> None:
        """Let the current pass finish, then leave the loop."""
        logger.info("Delivery worker stopping: worker_id=%s", self.config.worker_id)
        self._stopping.set()

    async def run_once(self) -> DeliverySummary:
        """Run a single delivery pass with a fresh transport.

        Raises:
            EventStoreError: If the event store fails during the pass.
        """
        async with self._transport_factory() as transport:
            orchestrator = DeliveryOrchestrator(
                self.store,
                transport,
                options=self.config.delivery,
                worker_id=self.config.worker_id,
            )
            return await orchestrator.run()

    async def _run_loop(self) -> None:
        """Main loop: one pass, then wait for the interval or shutdown."""
        while not self._stopping.is_set():
            pass_number = self._passes_ok + self._passes_failed + 1
            token = correlation_id_ctx.set(f"{self.config.worker_id}-{pass_number}")
            try:
                await self.run_once()
                self._passes_ok += 1
            except Exception as e:
                # A failed pass leaves its events claimable once their lease lapses
                logger.exception(
                    "Delivery pass failed: worker_id=%s, error=%s",
                    self.config.worker_id,
                    e,
                )
                self._passes_failed += 1
            finally:
                correlation_id_ctx.reset(token)

            # Sleep until the next pass, waking early on shutdown
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stopping.wait(),
                    timeout=self.config.interval_seconds,
                )

    def uptime_seconds(self) -> float:
        """Seconds since start(), or 0 before the first start."""
        if self._started is None:
            return 0.0
        return time.monotonic() - self._started


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set the shutdown event on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def _handle_shutdown(signum: int) -> None:
        logger.info("Shutdown signal received (signal=%d)", signum)
        shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _handle_shutdown, signum)


async def _async_main(settings: Settings) -> None:
    """Run a DeliveryWorker until a shutdown signal, then close the engine."""
    from capi_relay.db import close_engine, get_session_factory
    from capi_relay.services.event_store import SQLAlchemyEventStore

    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)

    config = WorkerConfig.from_settings(settings)
    worker = DeliveryWorker(config, SQLAlchemyEventStore(get_session_factory()))

    worker_task = asyncio.create_task(worker.start())

    try:
        await shutdown_event.wait()
        await worker.stop()

        try:
            await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    finally:
        await close_engine()


def run() -> NoReturn:
    """capi-relay-worker console script; exits 1 on invalid settings or a crash."""
    from capi_relay.core.logging import configure_logging
    from capi_relay.core.settings import get_settings

    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("capi-relay worker starting...")

    try:
        asyncio.run(_async_main(settings))
    except KeyboardInterrupt:
        logger.info("Delivery worker interrupted")
    except Exception:
        logger.exception("Delivery worker crashed")
        sys.exit(1)

    logger.info("capi-relay worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
