"""capi-relay HTTP surface.

The API is deliberately small: an external scheduler calls
``/api/cron/send-capi-events`` every few minutes to run one delivery
pass, and orchestrators probe ``/health``. OpenAPI docs are served under
``/api/docs``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from capi_relay import __version__
from capi_relay.api.middleware import (
    ErrorHandlerMiddleware,
    RequestIDMiddleware,
    register_exception_handlers,
)
from capi_relay.api.routers import cron_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from capi_relay.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "capi-relay API"
API_DESCRIPTION = (
    "Server-side delivery of captured conversion events to the Meta Conversions API. "
    "Runs are triggered by a scheduler holding the cron shared secret."
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Dispose of the database engine when the server stops."""
    yield

    from capi_relay.db import close_engine

    await close_engine()
    logger.info("Database engine disposed")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to serve with. When omitted, request handlers
            load the process-wide settings lazily, so importing the ASGI
            module never requires a configured environment.

    Returns:
        Configured application.
    """
    version = settings.app_version if settings else __version__

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    register_exception_handlers(app)

    # Outermost last: every response, errors included, gets a request ID
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(cron_router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Liveness probe."""
        return {"status": "healthy"}

    logger.debug("API application created: version=%s", version)
    return app
