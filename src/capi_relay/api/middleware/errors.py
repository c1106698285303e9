"""Uniform JSON error bodies for the capi-relay API.

Every error response has the shape:

    {"error": "<code>", "message": "<text>", "request_id": "...", "detail": {...}}

HTTP and request validation errors are converted by exception handlers
registered on the app; anything escaping the routing layer (event store
outages, programming errors) is caught by ErrorHandlerMiddleware and
turned into a 500 without leaking internals.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from capi_relay.api.middleware.request_id import get_request_id
from capi_relay.services.event_store import EventStoreError

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.responses import Response

logger = logging.getLogger(__name__)

# Machine-readable codes for the statuses this API produces
STATUS_ERROR_CODES = {
    HTTPStatus.UNAUTHORIZED: "unauthorized",
    HTTPStatus.FORBIDDEN: "forbidden",
    HTTPStatus.NOT_FOUND: "not_found",
    HTTPStatus.METHOD_NOT_ALLOWED: "method_not_allowed",
    HTTPStatus.SERVICE_UNAVAILABLE: "service_unavailable",
}


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build a response with the standard error body.

    The current request ID is included when one is set.
    """
    body: dict[str, Any] = {
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body, headers=headers)


def jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    """Keep the JSON-safe part of pydantic error entries."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in errors
    ]


async def _handle_http_exception(
    _request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return build_error_response(
        STATUS_ERROR_CODES.get(exc.status_code, "http_error"),
        str(exc.detail),
        exc.status_code,
        headers=exc.headers,
    )


async def _handle_validation_error(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    return build_error_response(
        "validation_error",
        "Request validation failed",
        422,
        detail={"errors": jsonable_errors(exc.errors())},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Route HTTP and request validation errors through build_error_response."""
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Last line of defence: unhandled exceptions become a JSON 500.

    EventStoreError means the delivery run could not read or write its
    events; it is reported as "Event store unavailable".
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except EventStoreError:
            logger.exception(
                "Event store failure: method=%s, path=%s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="Event store unavailable",
                status_code=500,
            )
        except Exception:
            logger.exception(
                "Unhandled error: method=%s, path=%s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
