from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Sequence, TypedDict

import psycopg
from psycopg import sql as psql
from loguru import logger
from psycopg_pool import AsyncConnectionPool

from ..errors import StorageError
from ..models import ENTITY_TYPE, EventStatus, OutboxEvent
from ..utils import utc_now
from . import sql as q


class PostgresLedgerConfig(TypedDict, total=False):
    dsn: str
    app_name: str
    statement_timeout_ms: int
    pool_max: int


DEFAULTS: PostgresLedgerConfig = {
    "pool_max": 4,
    "app_name": "field_outbox",
}


def map_db_error(e: Exception, op: str) -> StorageError:
    return StorageError(f"ledger {op} failed: {type(e).__name__}: {e}")


class PostgresLedger:
    """
    Ledger on a shared PostgreSQL database (psycopg async pool).

    The ``sync_queue`` table is created by the Alembic migration in
    ``migrations/versions``; this class never issues DDL.
    """

    def __init__(self, cfg: PostgresLedgerConfig):
        self.cfg: PostgresLedgerConfig = {**DEFAULTS, **(cfg or {})}
        if "dsn" not in self.cfg:
            raise ValueError("dsn required")
        self.pool = AsyncConnectionPool(
            conninfo=self.cfg["dsn"],
            max_size=self.cfg["pool_max"],
            kwargs={"autocommit": False},
            open=False,
        )
        self.app_name = self.cfg.get("app_name")
        self.statement_timeout_ms = self.cfg.get("statement_timeout_ms")
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        try:
            await self.pool.open(wait=True)
        except psycopg.Error as exc:
            raise map_db_error(exc, "open") from exc
        self._opened = True
        logger.info("Postgres ledger pool opened")

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        await self.pool.close()

    @asynccontextmanager
    async def _conn(self):
        async with self.pool.connection() as conn:
            if self.app_name:
                await conn.execute(
                    psql.SQL("SET application_name = {}").format(
                        psql.Literal(self.app_name)
                    )
                )
            if self.statement_timeout_ms:
                await conn.execute(
                    psql.SQL("SET statement_timeout = {}").format(
                        psql.Literal(int(self.statement_timeout_ms))
                    )
                )
            yield conn

    async def _write(self, op: str, stmt: str, params_seq: Sequence[dict]) -> int:
        if not self._opened:
            raise StorageError("ledger is not open")
        affected = 0
        try:
            async with self._conn() as conn:
                async with conn.cursor() as cur:
                    for params in params_seq:
                        await cur.execute(stmt, params)
                        affected += max(cur.rowcount, 0)
                await conn.commit()
        except psycopg.Error as exc:
            raise map_db_error(exc, op) from exc
        return affected

    async def _read(self, op: str, stmt: str, params: dict) -> list[tuple]:
        if not self._opened:
            raise StorageError("ledger is not open")
        rows: list[tuple] = []
        try:
            async with self._conn() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(stmt, params)
                    rows = list(await cur.fetchall())
                await conn.commit()
        except psycopg.Error as exc:
            raise map_db_error(exc, op) from exc
        return rows

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
        await self._write(
            "insert",
            q.PG_INSERT,
            [
                {
                    "id": event.id,
                    "entity_type": ENTITY_TYPE,
                    "entity_id": event.worker_id,
                    "action": event.kind.value,
                    "data": event.serialize(),
                    "retry_count": event.retry_count,
                    "status": event.status.value,
                    "created_at": event.created_at,
                    "next_retry_at": event.next_retry_at,
                    "building_id": event.building_id,
                    "last_error": event.last_error,
                    "updated_at": utc_now(),
                }
            ],
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
        await self._write(
            "update_status",
            q.PG_UPDATE_STATUS,
            [
                {
                    "id": event_id,
                    "entity_type": ENTITY_TYPE,
                    "status": EventStatus(status).value,
                    "retry_count": retry_count,
                    "next_retry_at": next_retry_at,
                    "last_error": last_error,
                    "updated_at": utc_now(),
                }
            ],
        )

    async def commit_settled(self, events: Sequence[OutboxEvent]) -> None:
        if not events:
            return
        now = utc_now()
        await self._write(
            "commit_settled",
            q.PG_UPDATE_STATUS,
            [
                {
                    "id": e.id,
                    "entity_type": ENTITY_TYPE,
                    "status": e.status.value,
                    "retry_count": e.retry_count,
                    "next_retry_at": e.next_retry_at,
                    "last_error": e.last_error,
                    "updated_at": now,
                }
                for e in events
            ],
        )

    async def load_active(self) -> list[OutboxEvent]:
        rows = await self._read("load_active", q.PG_LOAD_ACTIVE, {"entity_type": ENTITY_TYPE})
        events = []
        for row in rows:
            try:
                events.append(self._to_event(row))
            except (ValueError, KeyError, TypeError) as exc:
                logger.error(f"Skipping undecodable ledger row {row[0]}: {type(exc).__name__}: {exc}")
        return events

    async def get(self, event_id: str) -> Optional[OutboxEvent]:
        rows = await self._read("get", q.PG_GET, {"id": event_id, "entity_type": ENTITY_TYPE})
        return self._to_event(rows[0]) if rows else None

    async def reset_dead_lettered(self) -> int:
        return await self._write(
            "reset_dead_lettered",
            q.PG_RESET_DEAD,
            [{"entity_type": ENTITY_TYPE, "updated_at": utc_now()}],
        )

    async def clear_active(self) -> int:
        return await self._write("clear_active", q.PG_CLEAR_ACTIVE, [{"entity_type": ENTITY_TYPE}])

    async def count_by_status(self) -> dict[EventStatus, int]:
        counts = {s: 0 for s in EventStatus}
        rows = await self._read("count_by_status", q.PG_COUNT_BY_STATUS, {"entity_type": ENTITY_TYPE})
        for status, n in rows:
            counts[EventStatus(status)] = int(n)
        return counts
