"""ASGI entry point: ``uvicorn capi_relay.api.main:app``.

``run()`` backs the capi-relay-api console script.
"""

import logging

from capi_relay.api import create_app

logger = logging.getLogger(__name__)

app = create_app()


def run() -> None:
    """Validate configuration, set up logging and serve the API."""
    import uvicorn

    from capi_relay.core.logging import configure_logging
    from capi_relay.core.settings import get_settings

    # Exits with status 1 on invalid configuration
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info(
        "Serving capi-relay API: host=%s, port=%d, environment=%s",
        settings.api_host,
        settings.api_port,
        settings.environment.value,
    )

    uvicorn.run(
        "capi_relay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    run()
