"""Request ID middleware for log correlation.

Every response carries an X-Request-ID header. The scheduler may send its
own ID (useful to tie retried cron calls together); anything that does not
look like a sane token is replaced by a fresh UUID. The ID is published
as the logging correlation ID for the duration of the request.
"""

import re
import uuid
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from capi_relay.core.logging import correlation_id_ctx, get_correlation_id

REQUEST_ID_HEADER = "X-Request-ID"

# Client IDs end up in logs and response headers
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def get_request_id() -> str | None:
    """Get the current request ID, or None outside a request."""
    return get_correlation_id()


def resolve_request_id(supplied: str | None) -> str:
    """Keep a well-formed client ID, otherwise generate one."""
    if supplied and _VALID_REQUEST_ID.match(supplied):
        return supplied
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign a request ID and echo it in the response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = correlation_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_ctx.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
