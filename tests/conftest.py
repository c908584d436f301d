"""
Pytest configuration and fixtures for field-outbox.

Provides a controllable clock, a scripted submitter and queue/outbox
factories wired to the in-memory ledger.
"""

import asyncio
import sys
from collections import deque
from datetime import datetime, timedelta, timezone

import pytest

from field_outbox.alerts import AlertBus
from field_outbox.ledger import InMemoryLedger
from field_outbox.models import EventKind, OutboxEvent
from field_outbox.policy import RetryPolicy
from field_outbox.queue import OutboxQueue

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedSubmitter:
    """Submitter double: records every attempt, raises scripted outcomes.

    ``outcomes`` are consumed one per call; once empty, ``default`` applies
    (``None`` means success).
    """

    def __init__(self):
        self.calls: list[str] = []
        self.outcomes: deque = deque()
        self.default = None
        self.delay = 0.0
        self.token = None

    def script(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)

    def set_token(self, token) -> None:
        self.token = token

    async def submit(self, event: OutboxEvent) -> None:
        self.calls.append(event.id)
        await asyncio.sleep(self.delay)
        outcome = self.outcomes.popleft() if self.outcomes else self.default
        if outcome is not None:
            raise outcome


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def submitter():
    return ScriptedSubmitter()


@pytest.fixture
def alert_bus():
    return AlertBus()


@pytest.fixture
def no_backoff():
    """Failed events are immediately due again."""
    return RetryPolicy(initial_backoff_ms=0, jitter=False)


@pytest.fixture
def make_event(clock):
    """Events one second apart so created_at order is unambiguous."""
    seq = {"n": 0}

    def _make(kind=EventKind.TASK_COMPLETION, worker_id="w-1", building_id="b-1", **kw):
        seq["n"] += 1
        kw.setdefault("created_at", clock.now + timedelta(seconds=seq["n"]))
        return OutboxEvent(kind=kind, worker_id=worker_id, building_id=building_id, **kw)

    return _make


@pytest.fixture
def make_queue(ledger, submitter, alert_bus, no_backoff, clock):
    """Queue already past recovery, manual flushing unless auto_flush=True."""

    def _make(restore=(), **kw):
        kw.setdefault("retry_policy", no_backoff)
        kw.setdefault("alert_bus", alert_bus)
        kw.setdefault("auto_flush", False)
        kw.setdefault("clock", clock)
        q = OutboxQueue(ledger, submitter, **kw)
        q.restore(list(restore))
        return q

    return _make
