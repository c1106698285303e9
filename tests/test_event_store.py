"""Tests for the SQLAlchemy event store.

Tests cover:
- Claim statement (SKIP LOCKED lease claim, oldest first)
- Mapping resolution
- Guarded bulk transitions and their row counts
- Lease renewal and worker-scoped writes
- Session lifecycle (commit, rollback, close per operation)
- SQLAlchemy errors wrapped in EventStoreError

Sessions are mocked; statements are checked by compiling them for the
PostgreSQL dialect.
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from capi_relay.db.models import DeliveryStatus, Pixel
from capi_relay.services.event_store import (
    EventStoreError,
    PixelTokenMapping,
    SQLAlchemyEventStore,
)
from tests.factories import create_conversion_event


def make_session(scalars=None, rowcount=0):
    """Create a mock async session whose execute returns a canned result."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(scalars or [])
    result.rowcount = rowcount

    session = AsyncMock()
    session.execute = AsyncMock(return_value=result)
    return session


def make_store(session) -> SQLAlchemyEventStore:
    return SQLAlchemyEventStore(MagicMock(return_value=session))


def compiled_sql(session) -> str:
    """Render the statement passed to session.execute."""
    stmt = session.execute.call_args[0][0]
    return str(stmt.compile(dialect=postgresql.dialect())).lower()


class TestClaimUnsentEvents:
    """Tests for claim_unsent_events."""

    @pytest.mark.asyncio
    async def test_claim_returns_events_oldest_first(self):
        """Test that claimed rows are returned in creation order."""
        newer = create_conversion_event(age=timedelta(minutes=5))
        older = create_conversion_event(age=timedelta(hours=2))
        session = make_session(scalars=[newer, older])
        store = make_store(session)

        events = await store.claim_unsent_events(100, lease_seconds=600, worker_id="cron-1")

        assert events == [older, newer]
        session.commit.assert_awaited_once()
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_statement_uses_skip_locked_lease(self):
        """Test the UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) claim."""
        session = make_session()
        store = make_store(session)

        await store.claim_unsent_events(50, lease_seconds=600, worker_id="cron-1")

        sql = compiled_sql(session)
        assert sql.startswith("update conversion_events")
        assert "for update skip locked" in sql
        assert "lease_expires_at" in sql
        assert "claimed_by" in sql
        assert "order by conversion_events.created_at" in sql
        assert "returning" in sql

    @pytest.mark.asyncio
    async def test_claim_failure_raises_event_store_error(self):
        """Test that database errors are wrapped and the session rolled back."""
        session = make_session()
        session.execute.side_effect = OperationalError("UPDATE", {}, Exception("gone"))
        store = make_store(session)

        with pytest.raises(EventStoreError, match="Failed to claim unsent events"):
            await store.claim_unsent_events(10, lease_seconds=600, worker_id="cron-1")

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()
        session.close.assert_awaited_once()


class TestFindUnsentEvents:
    """Tests for find_unsent_events."""

    @pytest.mark.asyncio
    async def test_find_selects_unsent_with_limit(self):
        """Test the read-only selection."""
        event = create_conversion_event()
        session = make_session(scalars=[event])
        store = make_store(session)

        events = await store.find_unsent_events(25)

        assert events == [event]
        sql = compiled_sql(session)
        assert sql.startswith("select")
        assert "for update" not in sql
        assert "limit" in sql


class TestFindPixelTokenMappings:
    """Tests for find_pixel_token_mappings."""

    @pytest.mark.asyncio
    async def test_empty_input_skips_query(self):
        """Test that no routing keys means no database round-trip."""
        session = make_session()
        store = make_store(session)

        assert await store.find_pixel_token_mappings([]) == []
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pixels_become_mappings(self):
        """Test that active pixels with a token resolve to mappings."""
        pixels = [
            Pixel(pixel_id="pixel-a", meta_pixel_id="111", access_token="tok-a", name="A"),
            Pixel(pixel_id="pixel-b", meta_pixel_id="222", access_token="tok-b", name="B"),
        ]
        session = make_session(scalars=pixels)
        store = make_store(session)

        mappings = await store.find_pixel_token_mappings(["pixel-b", "pixel-a", "pixel-a"])

        assert mappings == [
            PixelTokenMapping(pixel_id="pixel-a", destination_id="111", credential="tok-a"),
            PixelTokenMapping(pixel_id="pixel-b", destination_id="222", credential="tok-b"),
        ]
        sql = compiled_sql(session)
        assert "pixels.is_active is true" in sql
        assert "pixels.access_token is not null" in sql


class TestBulkTransitions:
    """Tests for the guarded bulk status updates."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "args"),
        [
            ("mark_expired_batch", ()),
            ("mark_failed_batch", ("reason",)),
            ("mark_sent_batch", ("TRACE",)),
            ("increment_retry_batch", ("error",)),
        ],
    )
    async def test_empty_ids_do_not_touch_database(self, method, args):
        """Test that an empty id list is a no-op."""
        session = make_session()
        store = make_store(session)

        assert await getattr(store, method)([], *args) == 0
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mark_sent_is_guarded_by_unsent_status(self):
        """Test that terminal rows can never be transitioned again."""
        ids = [uuid.uuid4(), uuid.uuid4()]
        session = make_session(rowcount=2)
        store = make_store(session)

        count = await store.mark_sent_batch(ids, "TRACE")

        assert count == 2
        sql = compiled_sql(session)
        assert sql.startswith("update conversion_events")
        assert "conversion_events.status = " in sql
        assert "delivery_marker" in sql
        assert "lease_expires_at" in sql
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_partial_update_returns_row_count(self):
        """Test that rows already terminal are skipped and not counted."""
        session = make_session(rowcount=1)
        store = make_store(session)

        count = await store.mark_failed_batch([uuid.uuid4(), uuid.uuid4()], "Retry limit reached")

        assert count == 1

    @pytest.mark.asyncio
    async def test_expire_sets_expired_status(self):
        """Test the expire transition values."""
        session = make_session(rowcount=1)
        store = make_store(session)

        await store.mark_expired_batch([uuid.uuid4()])

        stmt = session.execute.call_args[0][0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert DeliveryStatus.EXPIRED in params.values()

    @pytest.mark.asyncio
    async def test_increment_retry_honours_legacy_marker(self):
        """Test that the retry increment reads the legacy marker too."""
        session = make_session(rowcount=1)
        store = make_store(session)

        await store.increment_retry_batch([uuid.uuid4()], "meta: timeout")

        sql = compiled_sql(session)
        assert "greatest" in sql
        assert "substring" in sql
        assert "retry_count" in sql
        assert "last_error" in sql

    @pytest.mark.asyncio
    async def test_update_failure_raises_event_store_error(self):
        """Test that database errors are wrapped in EventStoreError."""
        session = make_session()
        session.execute.side_effect = OperationalError("UPDATE", {}, Exception("gone"))
        store = make_store(session)

        with pytest.raises(EventStoreError, match="Failed to apply sent update"):
            await store.mark_sent_batch([uuid.uuid4()], "TRACE")

        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_worker_id_restricts_write_to_held_rows(self):
        """Test that a write naming a worker only touches rows it still holds."""
        session = make_session(rowcount=0)
        store = make_store(session)

        count = await store.mark_sent_batch([uuid.uuid4()], "TRACE", worker_id="cron-1")

        assert count == 0
        stmt = session.execute.call_args[0][0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        where_clause = str(compiled).lower().split(" where ", 1)[1]
        assert "conversion_events.claimed_by = " in where_clause
        assert "cron-1" in compiled.params.values()

    @pytest.mark.asyncio
    async def test_write_without_worker_id_has_no_owner_guard(self):
        """Test that an unscoped write is guarded by status only."""
        session = make_session(rowcount=1)
        store = make_store(session)

        await store.mark_failed_batch([uuid.uuid4()], "Pixel mapping not found: p")

        where_clause = compiled_sql(session).split(" where ", 1)[1]
        assert "claimed_by" not in where_clause


class TestRenewLease:
    """Tests for renew_lease."""

    @pytest.mark.asyncio
    async def test_empty_ids_do_not_touch_database(self):
        """Test that renewing nothing is a no-op."""
        session = make_session()
        store = make_store(session)

        assert await store.renew_lease([], 600, "cron-1") == []
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returns_only_rows_still_held(self):
        """Test that rows re-claimed by another run are not renewed."""
        held, lost = uuid.uuid4(), uuid.uuid4()
        session = make_session(scalars=[held])
        store = make_store(session)

        renewed = await store.renew_lease([held, lost], 600, "cron-1")

        assert renewed == [held]
        sql = compiled_sql(session)
        assert sql.startswith("update conversion_events set")
        assert "lease_expires_at=" in sql.split(" where ", 1)[0]
        assert "conversion_events.claimed_by = " in sql
        assert "conversion_events.status = " in sql
        assert "returning conversion_events.id" in sql
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_raises_event_store_error(self):
        """Test that database errors are wrapped in EventStoreError."""
        session = make_session()
        session.execute.side_effect = OperationalError("UPDATE", {}, Exception("gone"))
        store = make_store(session)

        with pytest.raises(EventStoreError, match="Failed to renew lease"):
            await store.renew_lease([uuid.uuid4()], 600, "cron-1")

        session.rollback.assert_awaited_once()
