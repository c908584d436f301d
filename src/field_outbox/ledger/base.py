from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence, runtime_checkable

from ..models import EventStatus, OutboxEvent


@runtime_checkable
class OutboxLedger(Protocol):
    """
    Durable store for outbox records, the single source of truth across restarts.

    Every method raises ``StorageError`` when the backing store is
    unreachable or rejects the write. ``insert`` must complete before the
    event is handed to delivery (write-ahead).
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def insert(self, event: OutboxEvent) -> None:
        """Persist a new record. Duplicate ids are rejected."""
        ...

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        retry_count: int,
        *,
        next_retry_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Atomically persist one state transition."""
        ...

    async def commit_settled(self, events: Sequence[OutboxEvent]) -> None:
        """Persist the terminal transitions of one flush pass in one transaction."""
        ...

    async def load_active(self) -> list[OutboxEvent]:
        """Pending and dead-lettered records ordered by ``created_at``.

        Rows that fail to decode are logged and skipped, not raised.
        """
        ...

    async def get(self, event_id: str) -> Optional[OutboxEvent]: ...

    async def reset_dead_lettered(self) -> int:
        """Return dead-lettered records to pending with ``retry_count = 0``."""
        ...

    async def clear_active(self) -> int:
        """Delete pending and dead-lettered records; terminal rows are kept."""
        ...

    async def count_by_status(self) -> dict[EventStatus, int]: ...
