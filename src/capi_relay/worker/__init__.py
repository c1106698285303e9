"""Interval-driven delivery worker.

Start it with ``capi-relay-worker`` or ``python -m capi_relay.worker``.
"""

from capi_relay.worker.main import DeliveryWorker, WorkerConfig, run

__all__ = ["DeliveryWorker", "WorkerConfig", "run"]
