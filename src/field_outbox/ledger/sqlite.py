"""
SQLite ledger for the on-device outbox.

Stores one row per event in the ``sync_queue`` table of a local database
file. WAL journaling with ``synchronous=FULL`` so a committed insert
survives a process crash or power loss.

Example:
    >>> ledger = SqliteLedger("./data/outbox.db")
    >>> await ledger.open()
    >>> await ledger.insert(event)
    >>> active = await ledger.load_active()
    >>> await ledger.close()
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Union

import aiosqlite
from loguru import logger

from ..errors import StorageError
from ..models import ENTITY_TYPE, EventStatus, OutboxEvent
from ..utils import isoformat_utc, utc_now
from . import sql as q


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return isoformat_utc(dt) if dt is not None else None


class SqliteLedger:
    """Durable ledger backed by a local SQLite file (aiosqlite)."""

    def __init__(self, path: Union[str, Path] = "./data/outbox.db", *, timeout: float = 5.0):
        self.path = str(path)
        self._timeout = timeout
        self._conn: Optional[aiosqlite.Connection] = None
        # one connection: serialize transactions so commits never interleave
        self._lock = asyncio.Lock()

    # ---------- lifecycle ----------

    async def open(self) -> None:
        if self._conn is not None:
            return
        conn: Optional[aiosqlite.Connection] = None
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.path, timeout=self._timeout)
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=FULL")
            await conn.executescript(q.SQLITE_SCHEMA)
            await conn.commit()
        except (aiosqlite.Error, OSError) as exc:
            if conn is not None:
                # stops the aiosqlite worker thread
                await conn.close()
            raise StorageError(f"cannot open ledger {self.path}: {exc}") from exc
        self._conn = conn
        logger.info(f"SQLite ledger opened: {self.path}")

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()
        logger.debug(f"SQLite ledger closed: {self.path}")

    async def __aenter__(self) -> "SqliteLedger":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError(f"ledger {self.path} is not open")
        return self._conn

    # ---------- internals ----------

    async def _write(self, statements: Sequence[tuple[str, tuple]]) -> int:
        """Run statements in one transaction; returns total affected rows."""
        conn = self._require()
        async with self._lock:
            try:
                affected = 0
                for stmt, params in statements:
                    cur = await conn.execute(stmt, params)
                    affected += max(cur.rowcount, 0)
                await conn.commit()
                return affected
            except aiosqlite.Error as exc:
                await self._rollback(conn)
                raise StorageError(f"ledger write failed: {exc}") from exc

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.rollback()
        except aiosqlite.Error as exc:
            logger.warning(f"ledger rollback failed: {exc}")

    async def _read(self, stmt: str, params: tuple) -> list[tuple]:
        conn = self._require()
        async with self._lock:
            try:
                cur = await conn.execute(stmt, params)
                rows = await cur.fetchall()
                await cur.close()
                return list(rows)
            except aiosqlite.Error as exc:
                raise StorageError(f"ledger read failed: {exc}") from exc

    @staticmethod
    def _to_event(row: tuple) -> OutboxEvent:
        _id, data, retry_count, status, next_retry_at, last_error = row
        return OutboxEvent.from_record(
            data,
            retry_count=retry_count,
            status=status,
            next_retry_at=next_retry_at,
            last_error=last_error,
        )

    # ---------- ledger operations ----------

    async def insert(self, event: OutboxEvent) -> None:
        now = isoformat_utc(utc_now())
        await self._write(
            [
                (
                    q.SQLITE_INSERT,
                    (
                        event.id,
                        ENTITY_TYPE,
                        event.worker_id,
                        event.kind.value,
                        event.serialize(),
                        event.retry_count,
                        event.status.value,
                        isoformat_utc(event.created_at),
                        _ts(event.next_retry_at),
                        event.building_id,
                        event.last_error,
                        now,
                    ),
                )
            ]
        )

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        retry_count: int,
        *,
        next_retry_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> None:
        params = (
            EventStatus(status).value,
            retry_count,
            _ts(next_retry_at),
            last_error,
            isoformat_utc(utc_now()),
            event_id,
            ENTITY_TYPE,
        )
        await self._write([(q.SQLITE_UPDATE_STATUS, params)])

    async def commit_settled(self, events: Sequence[OutboxEvent]) -> None:
        if not events:
            return
        now = isoformat_utc(utc_now())
        await self._write(
            [
                (
                    q.SQLITE_UPDATE_STATUS,
                    (
                        e.status.value,
                        e.retry_count,
                        _ts(e.next_retry_at),
                        e.last_error,
                        now,
                        e.id,
                        ENTITY_TYPE,
                    ),
                )
                for e in events
            ]
        )

    async def load_active(self) -> list[OutboxEvent]:
        rows = await self._read(q.SQLITE_LOAD_ACTIVE, (ENTITY_TYPE,))
        events = []
        for row in rows:
            try:
                events.append(self._to_event(row))
            except (ValueError, KeyError, TypeError) as exc:
                # row stays in the ledger untouched for inspection
                logger.error(f"Skipping undecodable ledger row {row[0]}: {type(exc).__name__}: {exc}")
        return events

    async def get(self, event_id: str) -> Optional[OutboxEvent]:
        rows = await self._read(q.SQLITE_GET, (event_id, ENTITY_TYPE))
        return self._to_event(rows[0]) if rows else None

    async def reset_dead_lettered(self) -> int:
        return await self._write([(q.SQLITE_RESET_DEAD, (isoformat_utc(utc_now()), ENTITY_TYPE))])

    async def clear_active(self) -> int:
        return await self._write([(q.SQLITE_CLEAR_ACTIVE, (ENTITY_TYPE,))])

    async def count_by_status(self) -> dict[EventStatus, int]:
        counts = {s: 0 for s in EventStatus}
        for status, n in await self._read(q.SQLITE_COUNT_BY_STATUS, (ENTITY_TYPE,)):
            counts[EventStatus(status)] = n
        return counts
