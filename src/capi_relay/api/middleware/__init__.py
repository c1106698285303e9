"""capi-relay API middleware components.

- request_id: X-Request-ID assignment, published as the log correlation ID
- errors: Standard JSON error bodies (handlers and catch-all middleware)
- auth: Cron shared-secret bearer authentication
"""

from capi_relay.api.middleware.auth import CronAuth, get_app_settings, require_cron_secret
from capi_relay.api.middleware.errors import (
    ErrorHandlerMiddleware,
    build_error_response,
    register_exception_handlers,
)
from capi_relay.api.middleware.request_id import (
    REQUEST_ID_HEADER,
    RequestIDMiddleware,
    get_request_id,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "CronAuth",
    "ErrorHandlerMiddleware",
    "RequestIDMiddleware",
    "build_error_response",
    "get_app_settings",
    "get_request_id",
    "register_exception_handlers",
    "require_cron_secret",
]
