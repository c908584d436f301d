from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Sequence

from ..errors import StorageError
from ..models import EventStatus, OutboxEvent


class InMemoryLedger:
    """
    In-memory ledger for tests and ephemeral runs.

    Survives a dropped OutboxQueue (reuse the same instance to simulate a
    restart) but not the process. ``available`` can be switched off to
    simulate an unreachable store.

    Example:
        >>> ledger = InMemoryLedger()
        >>> await ledger.insert(event)
        >>> active = await ledger.load_active()
    """

    def __init__(self) -> None:
        self._rows: dict[str, OutboxEvent] = {}
        self._lock = asyncio.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StorageError("in-memory ledger is unavailable")

    async def open(self) -> None:
        self._check()

    async def close(self) -> None:
        pass

    async def insert(self, event: OutboxEvent) -> None:
        self._check()
        async with self._lock:
            if event.id in self._rows:
                raise StorageError(f"duplicate event id {event.id}")
            self._rows[event.id] = event.model_copy()

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        retry_count: int,
        *,
        next_retry_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> None:
        self._check()
        async with self._lock:
            self._apply(event_id, status, retry_count, next_retry_at, last_error)

    async def commit_settled(self, events: Sequence[OutboxEvent]) -> None:
        self._check()
        async with self._lock:
            for e in events:
                self._apply(e.id, e.status, e.retry_count, e.next_retry_at, e.last_error)

    def _apply(self, event_id, status, retry_count, next_retry_at, last_error) -> None:
        row = self._rows.get(event_id)
        if row is None:
            return
        row.status = EventStatus(status)
        row.retry_count = retry_count
        row.next_retry_at = next_retry_at
        row.last_error = last_error

    async def load_active(self) -> list[OutboxEvent]:
        self._check()
        async with self._lock:
            active = [
                e.model_copy()
                for e in self._rows.values()
                if e.status is not EventStatus.COMPLETED
            ]
        # sorted() is stable: insertion order breaks created_at ties
        return sorted(active, key=lambda e: e.created_at)

    async def get(self, event_id: str) -> Optional[OutboxEvent]:
        self._check()
        row = self._rows.get(event_id)
        return row.model_copy() if row is not None else None

    async def reset_dead_lettered(self) -> int:
        self._check()
        n = 0
        async with self._lock:
            for row in self._rows.values():
                if row.status is EventStatus.DEAD_LETTERED:
                    row.status = EventStatus.PENDING
                    row.retry_count = 0
                    row.next_retry_at = None
                    n += 1
        return n

    async def clear_active(self) -> int:
        self._check()
        async with self._lock:
            doomed = [k for k, v in self._rows.items() if v.status is not EventStatus.COMPLETED]
            for k in doomed:
                del self._rows[k]
        return len(doomed)

    async def count_by_status(self) -> dict[EventStatus, int]:
        self._check()
        counts = {s: 0 for s in EventStatus}
        for row in self._rows.values():
            counts[row.status] += 1
        return counts
