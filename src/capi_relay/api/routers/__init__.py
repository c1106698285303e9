"""capi-relay API routers.

- cron: Scheduler-triggered delivery runs (shared-secret bearer auth)
"""

from capi_relay.api.routers.cron import router as cron_router

__all__ = ["cron_router"]
