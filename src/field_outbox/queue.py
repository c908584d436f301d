from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .alerts import AlertBus, AuthRequiredAlert, DeadLetterAlert, DeadLetterReason
from .errors import AuthError, PermanentError, QueueFullError, RetryExhausted, TransientNetworkError
from .ledger import OutboxLedger
from .metrics import metrics_registry as m
from .models import EventStatus, OutboxEvent, QueueStatus
from .policy import RetryPolicy
from .submitter import Submitter
from .utils import utc_now


@dataclass
class FlushResult:
    """Outcome of one attempt_flush() call."""

    attempted: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: bool = False
    reason: Optional[str] = None  # busy | empty | not_due | auth_required
    halted: bool = False


class OutboxQueue:
    """In-memory mirror of the ledger's active records with a single-flight flush.

    All state lives on one event loop. The busy flag is checked and set with
    no ``await`` in between, so concurrent triggers coalesce into one pass.
    Within a pass events are submitted one at a time in ``created_at`` order.
    """

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
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_pending <= 0:
            raise ValueError("max_pending must be > 0")

        self._ledger = ledger
        self._submitter = submitter
        self._policy = retry_policy or RetryPolicy()
        self._alerts = alert_bus or AlertBus()
        self._max_pending = max_pending
        self._high_retry = high_retry_threshold
        self._auto_flush = auto_flush
        self._clock = clock

        self._pending: dict[str, OutboxEvent] = {}
        self._dead: dict[str, OutboxEvent] = {}
        self._reserved = 0  # enqueues between capacity check and ledger commit

        self._flushing = False
        self._rerun = False
        self._auth_error: Optional[AuthError] = None
        self._last_sync: Optional[datetime] = None

        self._ready = asyncio.Event()
        self._bg: set[asyncio.Task] = set()

    # ---------- recovery ----------

    @property
    def auto_flush(self) -> bool:
        return self._auto_flush

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def restore(self, events: list[OutboxEvent]) -> None:
        """Seed memory from the ledger, then start accepting enqueues.

        Called once by RecoveryLoader before any traffic.
        """
        if self._ready.is_set():
            raise RuntimeError("queue already accepting traffic; restore() must run first")
        for e in sorted(events, key=lambda e: e.created_at):
            if e.status is EventStatus.DEAD_LETTERED:
                self._dead[e.id] = e
            elif e.status is EventStatus.PENDING:
                self._pending[e.id] = e
        self._ready.set()
        self._update_gauge()

    # ---------- producer side ----------

    async def enqueue(self, event: OutboxEvent) -> None:
        """Persist, then append and schedule a flush. Returns once durable.

        Dead-lettered events stay in memory until retry_all() or clear(), so
        they count against ``max_pending`` together with pending ones.

        Raises:
            QueueFullError: active set at its high-water mark (nothing persisted)
            StorageError: ledger rejected the write (event NOT enqueued)
        """
        await self._ready.wait()
        if len(self._pending) + len(self._dead) + self._reserved >= self._max_pending:
            raise QueueFullError(
                f"outbox holds {len(self._pending)} pending and {len(self._dead)} "
                f"dead-lettered events (max {self._max_pending})"
            )

        self._reserved += 1
        try:
            await self._ledger.insert(event)
        finally:
            self._reserved -= 1

        self._pending[event.id] = event
        m.enqueued_total.labels(kind=event.kind.value).inc()
        self._update_gauge()
        logger.debug(f"Enqueued {event.kind.value} event {event.id} (worker={event.worker_id})")

        if self._auto_flush:
            self.trigger_flush()

    def trigger_flush(self) -> None:
        """Best-effort background flush; coalesced with a running pass."""
        if self._flushing:
            self._rerun = True
            return
        task = asyncio.get_running_loop().create_task(self._background_flush())
        self._bg.add(task)
        task.add_done_callback(self._bg.discard)

    async def _background_flush(self) -> None:
        try:
            await self.attempt_flush()
        except AuthError:
            pass  # alert already published; waits for resume()
        except Exception as exc:
            logger.error(f"Background flush failed: {type(exc).__name__}: {exc}")

    async def wait_idle(self) -> None:
        """Wait for scheduled background flushes (shutdown, tests)."""
        while self._bg:
            await asyncio.gather(*list(self._bg), return_exceptions=True)

    # ---------- flush ----------

    async def attempt_flush(self) -> FlushResult:
        """Run one delivery pass over due pending events.

        No-op when a pass is already running, when re-authentication is
        pending, or when nothing is due.

        Raises:
            AuthError: the endpoint rejected credentials; the pass halted
            StorageError: the ledger could not record an outcome
        """
        if self._flushing:
            return FlushResult(skipped=True, reason="busy")
        if self._auth_error is not None:
            return FlushResult(skipped=True, reason="auth_required")

        now = self._clock()
        due = sorted(
            (e for e in self._pending.values() if e.is_due(now)),
            key=lambda e: e.created_at,
        )
        if not due:
            return FlushResult(skipped=True, reason="not_due" if self._pending else "empty")

        self._flushing = True
        result = FlushResult()
        settled: list[OutboxEvent] = []
        t0 = time.monotonic()
        logger.info(f"Flushing {len(due)} of {len(self._pending)} pending events")

        try:
            for event in due:
                if self._pending.get(event.id) is not event:
                    continue  # cleared before its turn
                result.attempted += 1
                try:
                    await self._submitter.submit(event)
                except AuthError as exc:
                    result.halted = True
                    m.submissions_total.labels(outcome="auth").inc()
                    await self._halt_for_auth(exc)
                    raise
                except PermanentError as exc:
                    m.submissions_total.labels(outcome="permanent").inc()
                    if self._was_cleared(event):
                        continue
                    await self._dead_letter(event, DeadLetterReason.REJECTED, str(exc))
                    settled.append(event)
                    result.dead_lettered += 1
                except TransientNetworkError as exc:
                    m.submissions_total.labels(outcome="transient").inc()
                    if self._was_cleared(event):
                        continue
                    if await self._record_failure(event, exc):
                        settled.append(event)
                        result.dead_lettered += 1
                    else:
                        result.retried += 1
                except Exception as exc:
                    logger.opt(exception=exc).warning(f"Unexpected submit error for {event.id}")
                    if self._was_cleared(event):
                        continue
                    if self._policy.classify_retryable(exc):
                        m.submissions_total.labels(outcome="transient").inc()
                        if await self._record_failure(event, exc):
                            settled.append(event)
                            result.dead_lettered += 1
                        else:
                            result.retried += 1
                    else:
                        m.submissions_total.labels(outcome="permanent").inc()
                        await self._dead_letter(event, DeadLetterReason.REJECTED, str(exc))
                        settled.append(event)
                        result.dead_lettered += 1
                else:
                    m.submissions_total.labels(outcome="success").inc()
                    if self._was_cleared(event):
                        continue
                    self._complete(event)
                    settled.append(event)
                    result.succeeded += 1
        finally:
            try:
                if settled:
                    await self._ledger.commit_settled(settled)
            finally:
                self._flushing = False
                m.flush_duration.observe(time.monotonic() - t0)
                self._update_gauge()
                if self._rerun and self._auto_flush and self._auth_error is None:
                    self._rerun = False
                    self.trigger_flush()

        logger.info(
            f"Flush pass done: attempted={result.attempted} ok={result.succeeded} "
            f"retry={result.retried} dead={result.dead_lettered}"
        )
        return result

    def _was_cleared(self, event: OutboxEvent) -> bool:
        """True when clear() dropped the event while its submission was in flight."""
        if self._pending.get(event.id) is event:
            return False
        logger.debug(f"Event {event.id} cleared during submission; outcome discarded")
        return True

    def _complete(self, event: OutboxEvent) -> None:
        event.status = EventStatus.COMPLETED
        event.next_retry_at = None
        event.last_error = None
        self._pending.pop(event.id, None)
        self._last_sync = self._clock()
        logger.debug(f"Event {event.id} delivered")

    async def _record_failure(self, event: OutboxEvent, exc: Exception) -> bool:
        """Count one failed attempt; returns True when the event was dead-lettered."""
        event.retry_count += 1
        event.last_error = f"{type(exc).__name__}: {exc}"[:500]

        if not self._policy.is_retryable(event.retry_count):
            exhausted = RetryExhausted(event.id, event.retry_count, event.last_error)
            await self._dead_letter(event, DeadLetterReason.RETRY_EXHAUSTED, str(exhausted))
            return True

        event.next_retry_at = self._policy.next_eligible_at(
            event.retry_count,
            self._clock(),
            rate_limited=getattr(exc, "rate_limited", False),
            retry_after=getattr(exc, "retry_after", None),
        )
        await self._ledger.update_status(
            event.id,
            EventStatus.PENDING,
            event.retry_count,
            next_retry_at=event.next_retry_at,
            last_error=event.last_error,
        )
        logger.warning(
            f"Event {event.id} failed (retry {event.retry_count}/{self._policy.max_retries}), "
            f"next attempt after {event.next_retry_at.isoformat()}: {event.last_error}"
        )
        return False

    async def _dead_letter(self, event: OutboxEvent, reason: DeadLetterReason, error: str) -> None:
        event.status = EventStatus.DEAD_LETTERED
        event.next_retry_at = None
        event.last_error = error[:500]
        self._pending.pop(event.id, None)
        self._dead[event.id] = event
        m.dead_lettered_total.labels(reason=reason.value).inc()
        await self._alerts.publish(
            DeadLetterAlert(
                event_id=event.id,
                kind=event.kind.value,
                worker_id=event.worker_id,
                building_id=event.building_id,
                retry_count=event.retry_count,
                reason=reason,
                error=event.last_error,
            )
        )

    async def _halt_for_auth(self, exc: AuthError) -> None:
        self._auth_error = exc
        await self._alerts.publish(
            AuthRequiredAlert(status_code=exc.status_code, pending=len(self._pending))
        )

    def resume(self) -> None:
        """Clear the auth halt after re-authentication and schedule a flush."""
        if self._auth_error is None:
            return
        self._auth_error = None
        logger.info("Sync resumed after re-authentication")
        if self._auto_flush and self._pending:
            self.trigger_flush()

    # ---------- operator actions ----------

    async def retry_all(self) -> int:
        """Return dead-lettered events to pending with retry_count = 0."""
        await self._ready.wait()
        n = await self._ledger.reset_dead_lettered()
        for e in self._dead.values():
            e.status = EventStatus.PENDING
            e.retry_count = 0
            e.next_retry_at = None
            self._pending[e.id] = e
        self._dead.clear()

        # pending rows recovered with a budget already spent (e.g. max_retries lowered)
        for e in list(self._pending.values()):
            if not self._policy.is_retryable(e.retry_count):
                e.retry_count = 0
                e.next_retry_at = None
                await self._ledger.update_status(
                    e.id, EventStatus.PENDING, 0, next_retry_at=None, last_error=e.last_error
                )

        self._update_gauge()
        logger.info(f"Retry-all: {n} dead-lettered events returned to pending")
        if self._auto_flush and self._pending:
            self.trigger_flush()
        return n

    async def clear(self) -> int:
        """Drop every active event from memory and ledger (operational/test use)."""
        await self._ready.wait()
        n = await self._ledger.clear_active()
        self._pending.clear()
        self._dead.clear()
        self._update_gauge()
        logger.warning(f"Cleared {n} active events from the outbox")
        return n

    # ---------- introspection ----------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def dead_letter_count(self) -> int:
        return len(self._dead)

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync

    @property
    def in_progress(self) -> bool:
        return self._flushing

    @property
    def auth_required(self) -> bool:
        return self._auth_error is not None

    def pending_events(self) -> list[OutboxEvent]:
        return sorted(self._pending.values(), key=lambda e: e.created_at)

    def dead_lettered_events(self) -> list[OutboxEvent]:
        return sorted(self._dead.values(), key=lambda e: e.created_at)

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending=len(self._pending),
            high_retry=sum(1 for e in self._pending.values() if e.retry_count >= self._high_retry),
            dead_lettered=len(self._dead),
            in_progress=self._flushing,
            auth_required=self._auth_error is not None,
            last_sync_time=self._last_sync,
        )

    def _update_gauge(self) -> None:
        m.pending.set(len(self._pending))
