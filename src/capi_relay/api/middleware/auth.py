"""Shared-secret authentication for scheduler-triggered endpoints.

The cron endpoint is invoked by an external scheduler that presents a
static secret as a bearer token:

    Authorization: Bearer <CAPI_RELAY_CRON__SECRET>

When no secret is configured the endpoint is disabled (503) rather than
left open.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from capi_relay.core.config import Settings

logger = logging.getLogger(__name__)

# Bearer token security scheme for OpenAPI docs
bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    """Settings the app was created with, or the process-wide settings."""
    settings = getattr(request.app.state, "settings", None)
    if settings is not None:
        return settings

    from capi_relay.core.settings import get_settings

    return get_settings()


async def require_cron_secret(
    request: Request,
    credentials: Annotated[
        HTTPAuthorizationCredentials | None,
        Depends(bearer_scheme),
    ] = None,
) -> None:
    """Dependency that requires the configured cron secret.

    Raises:
        HTTPException: 503 if no secret is configured, 401 if the bearer
            token is missing or does not match.
    """
    settings = get_app_settings(request)
    secret = settings.cron.secret.get_secret_value() if settings.cron.secret else ""

    if not secret:
        logger.error("Cron endpoint called but no cron secret is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"),
        secret.encode("utf-8"),
    ):
        logger.warning(
            "Rejected cron request: path=%s, client=%s, token_present=%s",
            request.url.path,
            request.client.host if request.client else None,
            credentials is not None,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing cron secret",
            headers={"WWW-Authenticate": "Bearer"},
        )


CronAuth = Annotated[None, Depends(require_cron_secret)]
