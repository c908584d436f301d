"""
WorkerEventOutbox: typed producers over the durable queue.

Composes ledger, queue, submitter, retry policy and alert bus, runs cold-start
recovery and an optional periodic flush loop.

Example:
    outbox = WorkerEventOutbox.from_settings(get_settings())
    async with outbox:
        await outbox.record_clock_operation("w-1", "b-7", is_clock_in=True)
        print(outbox.status())
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from .alerts import AlertBus
from .errors import StorageError
from .ledger import InMemoryLedger, OutboxLedger, PostgresLedger, SqliteLedger
from .models import EventKind, OutboxEvent, QueueStatus
from .policy import RetryPolicy
from .queue import FlushResult, OutboxQueue
from .recovery import RecoveryLoader
from .settings import OutboxSettings
from .submitter import HttpSubmitter, Submitter


@dataclass(frozen=True)
class OutboxHealth:
    ledger_ok: bool
    pending: int
    dead_lettered: int
    auth_required: bool
    in_progress: bool
    flush_loop_alive: bool
    last_sync_time: Optional[datetime] = None


def _json(data: dict[str, Any]) -> bytes:
    return json.dumps({k: v for k, v in data.items() if v is not None}).encode("utf-8")


class WorkerEventOutbox:
    def __init__(
        self,
        ledger: OutboxLedger,
        submitter: Submitter,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        alert_bus: Optional[AlertBus] = None,
        max_pending: int = 10_000,
        high_retry_threshold: int = 3,
        auto_flush: bool = True,
        flush_interval_sec: Optional[float] = None,
    ):
        if flush_interval_sec is not None and flush_interval_sec <= 0:
            raise ValueError("flush_interval_sec must be > 0")
        self.ledger = ledger
        self.submitter = submitter
        self.alerts = alert_bus or AlertBus()
        self.queue = OutboxQueue(
            ledger,
            submitter,
            retry_policy=retry_policy,
            alert_bus=self.alerts,
            max_pending=max_pending,
            high_retry_threshold=high_retry_threshold,
            auto_flush=auto_flush,
        )
        self._flush_interval = flush_interval_sec
        self._loop_task: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: OutboxSettings) -> "WorkerEventOutbox":
        """Composition root: build every collaborator from configuration."""
        backend = settings.LEDGER_BACKEND
        if backend == "sqlite":
            ledger: OutboxLedger = SqliteLedger(settings.LEDGER_PATH)
        elif backend == "postgres":
            if not settings.DATABASE_URL:
                raise ValueError("FIELD_OUTBOX_DATABASE_URL is required for the postgres ledger")
            ledger = PostgresLedger({"dsn": settings.DATABASE_URL, "pool_max": settings.POOL_MAX})
        else:
            ledger = InMemoryLedger()

        submitter = HttpSubmitter(
            settings.BASE_URL, settings.API_TOKEN, timeout=settings.REQUEST_TIMEOUT_SEC
        )
        policy = RetryPolicy(
            max_retries=settings.MAX_RETRIES,
            initial_backoff_ms=settings.INITIAL_BACKOFF_MS,
            max_backoff_ms=settings.MAX_BACKOFF_MS,
            backoff_multiplier=settings.BACKOFF_MULTIPLIER,
            jitter=settings.JITTER,
            rate_limit_multiplier=settings.RATE_LIMIT_MULTIPLIER,
        )
        return cls(
            ledger,
            submitter,
            retry_policy=policy,
            max_pending=settings.MAX_PENDING,
            high_retry_threshold=settings.HIGH_RETRY_THRESHOLD,
            auto_flush=settings.AUTO_FLUSH,
            flush_interval_sec=settings.FLUSH_INTERVAL_SEC,
        )

    # ---------- lifecycle ----------

    async def start(self) -> None:
        """Open the ledger, recover, then start the periodic flush loop."""
        if self._started:
            return
        try:
            await self.ledger.open()
        except StorageError as exc:
            logger.error(f"Outbox ledger failed to open: {exc}")
        await RecoveryLoader(self.ledger).run(self.queue)
        self._started = True

        if self._flush_interval is not None:
            self._loop_task = asyncio.create_task(self._flush_loop())
        if self.queue.pending_count and self.queue.auto_flush:
            self.queue.trigger_flush()
        logger.info(
            f"WorkerEventOutbox started (pending={self.queue.pending_count}, "
            f"interval={self._flush_interval})"
        )

    async def stop(self) -> None:
        if not self._started:
            return
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.queue.wait_idle()
        stop = getattr(self.submitter, "stop", None)
        if stop is not None:
            await stop()
        await self.ledger.close()
        self._started = False
        logger.info("WorkerEventOutbox stopped")

    async def __aenter__(self) -> "WorkerEventOutbox":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.queue.attempt_flush()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"Periodic flush failed: {type(exc).__name__}: {exc}")

    # ---------- producers ----------

    async def record(
        self, kind: EventKind, worker_id: str, building_id: str, payload: bytes = b""
    ) -> OutboxEvent:
        event = OutboxEvent(kind=kind, worker_id=worker_id, building_id=building_id, payload=payload)
        await self.queue.enqueue(event)
        return event

    async def record_task_completion(
        self, task_id: str, task_title: str, worker_id: str, building_id: str
    ) -> OutboxEvent:
        payload = _json({"taskId": task_id, "taskTitle": task_title})
        return await self.record(EventKind.TASK_COMPLETION, worker_id, building_id, payload)

    async def record_clock_operation(
        self, worker_id: str, building_id: str, is_clock_in: bool
    ) -> OutboxEvent:
        kind = EventKind.CLOCK_IN if is_clock_in else EventKind.CLOCK_OUT
        return await self.record(kind, worker_id, building_id)

    async def record_photo_upload(
        self, worker_id: str, building_id: str, photo_data: Optional[bytes] = None
    ) -> OutboxEvent:
        return await self.record(EventKind.PHOTO_UPLOAD, worker_id, building_id, photo_data or b"")

    async def record_building_status(
        self, worker_id: str, building_id: str, status: Optional[str] = None
    ) -> OutboxEvent:
        payload = _json({"status": status}) if status else b""
        return await self.record(EventKind.BUILDING_STATUS_UPDATE, worker_id, building_id, payload)

    async def record_routine_inspection(
        self, worker_id: str, building_id: str, notes: Optional[str] = None
    ) -> OutboxEvent:
        payload = _json({"notes": notes}) if notes else b""
        return await self.record(EventKind.ROUTINE_INSPECTION, worker_id, building_id, payload)

    async def record_comment(
        self, worker_id: str, building_id: str, comment: str, task_id: Optional[str] = None
    ) -> OutboxEvent:
        payload = _json({"comment": comment, "taskId": task_id})
        return await self.record(EventKind.COMMENT_UPDATE, worker_id, building_id, payload)

    async def record_emergency_report(
        self, worker_id: str, building_id: str, description: Optional[str] = None
    ) -> OutboxEvent:
        payload = _json({"description": description or "Emergency reported"})
        return await self.record(EventKind.EMERGENCY_REPORT, worker_id, building_id, payload)

    # ---------- operations ----------

    async def flush(self) -> FlushResult:
        return await self.queue.attempt_flush()

    async def retry_all(self) -> int:
        return await self.queue.retry_all()

    async def clear(self) -> int:
        return await self.queue.clear()

    def reauthenticated(self, token: Optional[str]) -> None:
        """Install a fresh bearer token and resume a halted queue."""
        set_token = getattr(self.submitter, "set_token", None)
        if set_token is not None:
            set_token(token)
        self.queue.resume()

    # ---------- introspection ----------

    @property
    def pending_count(self) -> int:
        return self.queue.pending_count

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self.queue.last_sync_time

    def pending_events(self) -> list[OutboxEvent]:
        return self.queue.pending_events()

    def status(self) -> QueueStatus:
        return self.queue.status()

    async def health(self) -> OutboxHealth:
        try:
            await self.ledger.count_by_status()
            ledger_ok = True
        except StorageError as exc:
            logger.warning(f"Ledger health check failed: {exc}")
            ledger_ok = False
        return OutboxHealth(
            ledger_ok=ledger_ok,
            pending=self.queue.pending_count,
            dead_lettered=self.queue.dead_letter_count,
            auth_required=self.queue.auth_required,
            in_progress=self.queue.in_progress,
            flush_loop_alive=self._loop_task is not None and not self._loop_task.done(),
            last_sync_time=self.queue.last_sync_time,
        )
