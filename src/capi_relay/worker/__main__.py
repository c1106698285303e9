"""Allow running the worker with ``python -m capi_relay.worker``."""

from capi_relay.worker.main import run

run()
