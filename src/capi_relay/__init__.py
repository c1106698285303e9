"""capi-relay - Conversion event delivery pipeline for the Meta Conversions API.

Captured conversion events (purchases, sign-ups, ...) are drained from
PostgreSQL on a fixed interval and forwarded server-to-server to the
advertiser destination resolved for each pixel.

Note: Delivery is at-least-once. Duplicate sends caused by retries rely on
the destination deduplicating by event_id.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
