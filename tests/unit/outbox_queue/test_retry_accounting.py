"""
Unit tests for retry accounting, backoff gating and dead-lettering.
"""

from datetime import timedelta

import pytest

from field_outbox.alerts import DeadLetterAlert, DeadLetterReason
from field_outbox.errors import PermanentError, TransientNetworkError
from field_outbox.models import EventStatus
from field_outbox.policy import RetryPolicy


@pytest.fixture
def alerts(alert_bus):
    received = []

    async def collect(alert):
        received.append(alert)

    alert_bus.subscribe(collect)
    return received


@pytest.mark.asyncio
async def test_retry_count_grows_one_per_pass_until_dead_lettered(
    make_queue, make_event, submitter, ledger, alerts
):
    q = make_queue()
    e = make_event()
    await q.enqueue(e)
    submitter.default = TransientNetworkError("offline")

    for attempt in range(1, 5):
        result = await q.attempt_flush()
        assert result.retried == 1
        assert e.retry_count == attempt
        assert e.status is EventStatus.PENDING
        assert (await ledger.get(e.id)).retry_count == attempt

    result = await q.attempt_flush()

    assert result.dead_lettered == 1
    assert e.retry_count == 5
    assert e.status is EventStatus.DEAD_LETTERED
    assert q.pending_count == 0
    assert q.dead_letter_count == 1
    stored = await ledger.get(e.id)
    assert stored.status is EventStatus.DEAD_LETTERED
    assert stored.retry_count == 5
    assert len(submitter.calls) == 5

    # withdrawn from the delivery path
    assert (await q.attempt_flush()).reason == "empty"
    assert len(submitter.calls) == 5

    [alert] = alerts
    assert isinstance(alert, DeadLetterAlert)
    assert alert.event_id == e.id
    assert alert.reason is DeadLetterReason.RETRY_EXHAUSTED
    assert "exhausted 5 retries" in alert.error


@pytest.mark.asyncio
async def test_retry_all_resets_dead_letters(make_queue, make_event, submitter, ledger):
    q = make_queue()
    e = make_event()
    await q.enqueue(e)
    submitter.default = TransientNetworkError("offline")
    for _ in range(5):
        await q.attempt_flush()
    assert q.dead_letter_count == 1

    assert await q.retry_all() == 1

    assert q.dead_letter_count == 0
    assert q.pending_count == 1
    assert e.retry_count == 0
    assert e.status is EventStatus.PENDING
    stored = await ledger.get(e.id)
    assert (stored.status, stored.retry_count) == (EventStatus.PENDING, 0)

    submitter.default = None
    result = await q.attempt_flush()
    assert result.succeeded == 1
    assert (await ledger.get(e.id)).status is EventStatus.COMPLETED


@pytest.mark.asyncio
async def test_permanent_error_dead_letters_immediately(
    make_queue, make_event, submitter, ledger, alerts
):
    q = make_queue()
    e = make_event()
    await q.enqueue(e)
    submitter.script(PermanentError("rejected (422)", 422))

    result = await q.attempt_flush()

    assert result.dead_lettered == 1
    assert e.retry_count == 0
    assert (await ledger.get(e.id)).status is EventStatus.DEAD_LETTERED
    assert alerts[0].reason is DeadLetterReason.REJECTED
    assert len(submitter.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_errors_go_through_classifier(make_queue, make_event, submitter):
    q = make_queue()
    bad, flaky = make_event(), make_event()
    await q.enqueue(bad)
    await q.enqueue(flaky)
    submitter.script(ValueError("invalid argument"), RuntimeError("service unavailable"))

    await q.attempt_flush()

    assert bad.status is EventStatus.DEAD_LETTERED
    assert flaky.status is EventStatus.PENDING
    assert flaky.retry_count == 1
    assert "RuntimeError" in flaky.last_error


@pytest.mark.asyncio
async def test_backoff_gates_next_attempt(make_queue, make_event, submitter, ledger, clock):
    q = make_queue(retry_policy=RetryPolicy(initial_backoff_ms=10_000, jitter=False))
    e = make_event()
    await q.enqueue(e)
    submitter.script(TransientNetworkError("503", 503))

    await q.attempt_flush()

    assert e.next_retry_at == clock.now + timedelta(seconds=10)
    assert (await ledger.get(e.id)).next_retry_at == e.next_retry_at

    clock.advance(seconds=9)
    result = await q.attempt_flush()
    assert result.skipped
    assert result.reason == "not_due"
    assert len(submitter.calls) == 1

    clock.advance(seconds=1)
    result = await q.attempt_flush()
    assert result.succeeded == 1
    assert len(submitter.calls) == 2


@pytest.mark.asyncio
async def test_rate_limit_backs_off_longer(make_queue, make_event, submitter, clock):
    q = make_queue(
        retry_policy=RetryPolicy(initial_backoff_ms=10_000, rate_limit_multiplier=4.0, jitter=False)
    )
    throttled, failed = make_event(), make_event()
    await q.enqueue(throttled)
    await q.enqueue(failed)
    submitter.script(
        TransientNetworkError("429", 429, rate_limited=True),
        TransientNetworkError("503", 503),
    )

    await q.attempt_flush()

    assert throttled.next_retry_at == clock.now + timedelta(seconds=40)
    assert failed.next_retry_at == clock.now + timedelta(seconds=10)


@pytest.mark.asyncio
async def test_retry_after_header_wins_when_longer(make_queue, make_event, submitter, clock):
    q = make_queue(retry_policy=RetryPolicy(initial_backoff_ms=1_000, jitter=False))
    e = make_event()
    await q.enqueue(e)
    submitter.script(TransientNetworkError("429", 429, rate_limited=True, retry_after=300))

    await q.attempt_flush()

    assert e.next_retry_at == clock.now + timedelta(seconds=300)


@pytest.mark.asyncio
async def test_only_due_events_attempted(make_queue, make_event, submitter, clock):
    waiting = make_event(next_retry_at=clock.now + timedelta(minutes=5))
    ready = make_event()
    q = make_queue(restore=[waiting, ready])

    result = await q.attempt_flush()

    assert result.attempted == 1
    assert submitter.calls == [ready.id]
    assert q.pending_count == 1


@pytest.mark.asyncio
async def test_high_retry_counter(make_queue, make_event):
    q = make_queue(
        restore=[make_event(retry_count=n) for n in (0, 2, 3, 4)],
        high_retry_threshold=3,
    )

    status = q.status()

    assert status.pending == 4
    assert status.high_retry == 2
