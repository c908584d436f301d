"""
Unit tests for PostgresLedger against a mocked psycopg pool.

Tests:
- Config validation
- Statement/parameter shape for inserts and transitions
- Row decoding on recovery
- psycopg errors mapped to StorageError
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import psycopg
import pytest

from field_outbox.errors import StorageError
from field_outbox.ledger import PostgresLedger
from field_outbox.ledger import sql as q
from field_outbox.models import EventKind, EventStatus, OutboxEvent


def _mock_pool(rows=(), rowcount=1):
    cur = MagicMock()
    cur.execute = AsyncMock()
    cur.fetchall = AsyncMock(return_value=list(rows))
    cur.rowcount = rowcount

    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.commit = AsyncMock()
    conn.cursor.return_value.__aenter__ = AsyncMock(return_value=cur)
    conn.cursor.return_value.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.open = AsyncMock()
    pool.close = AsyncMock()
    pool.connection.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.connection.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool, conn, cur


def _event() -> OutboxEvent:
    return OutboxEvent(
        kind=EventKind.COMMENT_UPDATE,
        worker_id="w-4",
        building_id="b-8",
        payload=b'{"comment":"leak in 3B"}',
        created_at=datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc),
    )


async def _open_ledger(pool, **cfg):
    with patch("field_outbox.ledger.postgres.AsyncConnectionPool", return_value=pool):
        ledger = PostgresLedger({"dsn": "postgresql://test", **cfg})
    await ledger.open()
    return ledger


def test_dsn_required():
    with pytest.raises(ValueError, match="dsn required"):
        PostgresLedger({})


@pytest.mark.asyncio
async def test_insert_writes_sync_queue_row():
    pool, conn, cur = _mock_pool()
    ledger = await _open_ledger(pool)
    e = _event()

    await ledger.insert(e)

    stmt, params = cur.execute.call_args[0]
    assert stmt == q.PG_INSERT
    assert params["id"] == e.id
    assert params["entity_type"] == "worker_event"
    assert params["entity_id"] == "w-4"
    assert params["action"] == "comment_update"
    assert params["building_id"] == "b-8"
    assert params["status"] == "pending"
    assert OutboxEvent.deserialize(params["data"]) == e
    conn.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_session_settings_applied():
    pool, conn, cur = _mock_pool()
    ledger = await _open_ledger(pool, app_name="outbox-test", statement_timeout_ms=2000)

    await ledger.insert(_event())

    # application_name + statement_timeout
    assert conn.execute.await_count == 2


@pytest.mark.asyncio
async def test_commit_settled_single_transaction():
    pool, conn, cur = _mock_pool()
    ledger = await _open_ledger(pool)
    a, b = _event(), _event()
    a.status = EventStatus.COMPLETED
    b.status = EventStatus.DEAD_LETTERED
    b.retry_count = 5

    await ledger.commit_settled([a, b])

    assert cur.execute.await_count == 2
    statuses = [c[0][1]["status"] for c in cur.execute.call_args_list]
    assert statuses == ["completed", "dead_lettered"]
    conn.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_commit_settled_empty_is_noop():
    pool, conn, cur = _mock_pool()
    ledger = await _open_ledger(pool)
    await ledger.commit_settled([])
    cur.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_load_active_decodes_rows():
    e = _event()
    retry_at = datetime(2026, 2, 1, 12, 5, tzinfo=timezone.utc)
    pool, _, cur = _mock_pool(rows=[(e.id, e.serialize(), 2, "pending", retry_at, "503")])
    ledger = await _open_ledger(pool)

    active = await ledger.load_active()

    assert cur.execute.call_args[0][0] == q.PG_LOAD_ACTIVE
    assert len(active) == 1
    assert active[0].id == e.id
    assert active[0].retry_count == 2
    assert active[0].next_retry_at == retry_at
    assert active[0].last_error == "503"


@pytest.mark.asyncio
async def test_load_active_skips_undecodable_row():
    e = _event()
    pool, _, _ = _mock_pool(
        rows=[("bad-1", "{", 0, "pending", None, None), (e.id, e.serialize(), 0, "pending", None, None)]
    )
    ledger = await _open_ledger(pool)

    active = await ledger.load_active()

    assert [a.id for a in active] == [e.id]


@pytest.mark.asyncio
async def test_count_by_status_fills_missing():
    pool, _, _ = _mock_pool(rows=[("pending", 4), ("completed", 10)])
    ledger = await _open_ledger(pool)

    counts = await ledger.count_by_status()

    assert counts[EventStatus.PENDING] == 4
    assert counts[EventStatus.COMPLETED] == 10
    assert counts[EventStatus.DEAD_LETTERED] == 0


@pytest.mark.asyncio
async def test_reset_dead_lettered_returns_rowcount():
    pool, _, _ = _mock_pool(rowcount=3)
    ledger = await _open_ledger(pool)
    assert await ledger.reset_dead_lettered() == 3


@pytest.mark.asyncio
async def test_db_error_maps_to_storage_error():
    pool, _, cur = _mock_pool()
    cur.execute.side_effect = psycopg.OperationalError("connection refused")
    ledger = await _open_ledger(pool)

    with pytest.raises(StorageError, match="insert"):
        await ledger.insert(_event())


@pytest.mark.asyncio
async def test_not_open_raises_storage_error():
    pool, _, _ = _mock_pool()
    with patch("field_outbox.ledger.postgres.AsyncConnectionPool", return_value=pool):
        ledger = PostgresLedger({"dsn": "postgresql://test"})

    with pytest.raises(StorageError):
        await ledger.load_active()


@pytest.mark.asyncio
async def test_close_closes_pool():
    pool, _, _ = _mock_pool()
    ledger = await _open_ledger(pool)
    await ledger.close()
    pool.close.assert_awaited_once()
