"""Meta Conversions API client.

Sends batches of normalized conversion events to one destination pixel
through the Graph API ``/{version}/{pixel_id}/events`` endpoint.

Identity fields are normalized (trimmed, lower-cased) and SHA-256 hashed
before they leave the process; network identifiers (IP, user agent, click
and browser ids) are passed through as collected.

Reference: https://developers.facebook.com/docs/marketing-api/conversions-api
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Self

import httpx

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from capi_relay.core.config import MetaSettings
    from capi_relay.db.models import ConversionEvent

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v18.0"

# Default timeout for Graph API requests (seconds)
DEFAULT_TIMEOUT = 30.0

# Graph API rejects larger payloads
MAX_BATCH_SIZE = 1000

DEFAULT_ACTION_SOURCE = "website"

# user_data keys that must be hashed before sending
HASHED_USER_FIELDS = ("em", "ph", "fn", "ln", "ct", "st", "zp", "country", "external_id")

# user_data keys sent as collected
PASSTHROUGH_USER_FIELDS = ("client_ip_address", "client_user_agent", "fbc", "fbp")

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class CAPIConfig:
    """Configuration for the Conversions API client."""

    api_base_url: str = DEFAULT_API_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    timeout: float = DEFAULT_TIMEOUT
    max_batch_size: int = MAX_BATCH_SIZE

    @classmethod
    def from_settings(cls, settings: MetaSettings) -> CAPIConfig:
        """Create config from the application's Meta settings."""
        return cls(
            api_base_url=settings.api_base_url,
            api_version=settings.api_version,
            timeout=float(settings.timeout),
            max_batch_size=settings.max_batch_size,
        )


@dataclass(frozen=True)
class CAPIEventInput:
    """One conversion event ready to be formatted for the Graph API."""

    event_name: str
    event_time: datetime
    event_id: str
    event_source_url: str | None = None
    action_source: str | None = None
    user_data: dict[str, Any] | None = None
    custom_data: dict[str, Any] | None = None

    @classmethod
    def from_conversion_event(cls, event: ConversionEvent) -> Self:
        """Build the transport input from a stored event.

        event_id is carried over unmodified so the destination can
        deduplicate repeated deliveries.
        """
        return cls(
            event_name=event.event_name,
            event_time=event.event_time,
            event_id=event.event_id,
            event_source_url=event.event_source_url,
            user_data=dict(event.user_data) if event.user_data else None,
            custom_data=dict(event.custom_data) if event.custom_data else None,
        )


@dataclass(frozen=True)
class CAPIResponse:
    """Outcome of a successful send.

    Attributes:
        events_received: Number of events the destination accepted.
        messages: Diagnostic messages returned by the API.
        trace_id: fbtrace_id of the request; None when the send was split
            into several requests.
    """

    events_received: int
    messages: list[str] = field(default_factory=list)
    trace_id: str | None = None


@dataclass(frozen=True)
class CAPITestEventResult:
    """Outcome of a test-event send."""

    success: bool
    message: str | None = None


class CAPIError(Exception):
    """Graph API request failed.

    Attributes:
        message: Error message reported by the API (or a local description).
        code: Graph API error code, if any.
        subcode: Graph API error_subcode, if any.
        status_code: HTTP status of the response, if one was received.
    """

    def __init__(
        self,
        message: str,
        code: int | None = None,
        subcode: int | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.subcode = subcode
        self.status_code = status_code
        super().__init__(message)


class CAPIConnectionError(CAPIError):
    """Failed to connect to the Graph API."""

    pass


class CAPITimeoutError(CAPIError):
    """Graph API request timed out."""

    pass


def hash_identity_value(value: Any) -> str:
    """Normalize and SHA-256 hash one identity value.

    Values that already are a SHA-256 hex digest are returned as-is, so
    callers may pre-hash on capture.
    """
    normalized = str(value).strip().lower()
    if _SHA256_HEX.match(normalized):
        return normalized
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def format_user_data(user_data: dict[str, Any] | None) -> dict[str, Any] | None:
    """Hash identity fields and copy passthrough fields.

    Unknown keys and empty values are dropped. Returns None when nothing
    is left to send.
    """
    if not user_data:
        return None

    result: dict[str, Any] = {}
    for key in HASHED_USER_FIELDS:
        value = user_data.get(key)
        if not value:
            continue
        if isinstance(value, list | tuple):
            result[key] = [hash_identity_value(item) for item in value if item]
        else:
            result[key] = hash_identity_value(value)

    for key in PASSTHROUGH_USER_FIELDS:
        value = user_data.get(key)
        if value:
            result[key] = value

    return result or None


class CAPIClient:
    """Async client for the Conversions API events endpoint.

    Example usage:
        async with CAPIClient(CAPIConfig()) as client:
            response = await client.send_events(token, "1234567890", events)
    """

    def __init__(
        self,
        config: CAPIConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: API location, version and limits.
            transport: Optional httpx transport (used to stub the API in tests).
        """
        self._config = config or CAPIConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> CAPIClient:
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self._config.api_base_url,
            timeout=self._config.timeout,
            transport=self._transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "CAPIClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    def _events_path(self, destination_id: str) -> str:
        return f"/{self._config.api_version}/{destination_id}/events"

    def format_event(self, event: CAPIEventInput) -> dict[str, Any]:
        """Convert one event to the Graph API wire format.

        event_time is sent as unix seconds; absent optional values are omitted.
        """
        formatted: dict[str, Any] = {
            "event_name": event.event_name,
            "event_time": int(event.event_time.timestamp()),
            "event_id": event.event_id,
            "action_source": event.action_source or DEFAULT_ACTION_SOURCE,
        }
        if event.event_source_url:
            formatted["event_source_url"] = event.event_source_url

        user_data = format_user_data(event.user_data)
        if user_data is not None:
            formatted["user_data"] = user_data
        if event.custom_data:
            formatted["custom_data"] = event.custom_data

        return formatted

    async def send_events(
        self,
        credential: str,
        destination_id: str,
        events: Sequence[CAPIEventInput],
    ) -> CAPIResponse:
        """Send events to one destination pixel.

        Batches larger than max_batch_size are split into several requests;
        the combined response sums events_received and carries no trace id.

        Args:
            credential: Access token for the destination.
            destination_id: Meta pixel id.
            events: Events to send.

        Returns:
            CAPIResponse for the whole send.

        Raises:
            CAPIError: If any request fails (the remaining chunks are not sent).
        """
        batch_size = self._config.max_batch_size
        if len(events) <= batch_size:
            return await self._send_batch(credential, destination_id, events)

        total_received = 0
        messages: list[str] = []
        for start in range(0, len(events), batch_size):
            chunk = events[start : start + batch_size]
            response = await self._send_batch(credential, destination_id, chunk)
            total_received += response.events_received
            messages.extend(response.messages)

        return CAPIResponse(events_received=total_received, messages=messages)

    async def send_test_event(
        self,
        credential: str,
        destination_id: str,
        test_event_code: str,
        event: CAPIEventInput,
    ) -> CAPITestEventResult:
        """Send one event flagged with a Test Events code.

        API errors are reported in the result instead of raised.
        """
        try:
            response = await self._send_batch(
                credential,
                destination_id,
                [event],
                test_event_code=test_event_code,
            )
        except CAPIError as e:
            logger.warning(
                "CAPI test event rejected: destination_id=%s, error=%s",
                destination_id,
                e.message,
            )
            return CAPITestEventResult(success=False, message=e.message)

        return CAPITestEventResult(success=response.events_received > 0)

    async def _send_batch(
        self,
        credential: str,
        destination_id: str,
        events: Sequence[CAPIEventInput],
        test_event_code: str | None = None,
    ) -> CAPIResponse:
        body: dict[str, Any] = {
            "data": [self.format_event(event) for event in events],
            "access_token": credential,
        }
        if test_event_code:
            body["test_event_code"] = test_event_code

        data = await self._post(self._events_path(destination_id), body)

        response = CAPIResponse(
            events_received=int(data.get("events_received", 0)),
            messages=list(data.get("messages") or []),
            trace_id=data.get("fbtrace_id"),
        )

        logger.info(
            "CAPI batch sent: destination_id=%s, events=%d, events_received=%d, trace_id=%s",
            destination_id,
            len(events),
            response.events_received,
            response.trace_id,
        )
        return response

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON body and return the decoded response.

        Raises:
            CAPIConnectionError: If the API is unreachable.
            CAPITimeoutError: If the request times out.
            CAPIError: If the API answers with an error.
        """
        client = self._get_client()
        try:
            response = await client.post(path, json=body)
        except httpx.ConnectError as e:
            raise CAPIConnectionError(
                f"Cannot connect to Graph API at {self._config.api_base_url}"
            ) from e
        except httpx.TimeoutException as e:
            raise CAPITimeoutError(f"Graph API request timed out: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise CAPIError(
                f"Invalid response from Graph API (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

        if not isinstance(data, dict):
            raise CAPIError(
                "Unexpected response shape from Graph API",
                status_code=response.status_code,
            )

        error = data.get("error")
        if not response.is_success or error:
            error = error if isinstance(error, dict) else {}
            raise CAPIError(
                error.get("message") or "Unknown API error",
                code=error.get("code"),
                subcode=error.get("error_subcode"),
                status_code=response.status_code,
            )

        return data
