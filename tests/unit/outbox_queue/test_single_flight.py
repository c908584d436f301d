"""
Unit tests for OutboxQueue flush exclusivity and scheduling.
"""

import asyncio

import pytest

from field_outbox.errors import AuthError, PermanentError, StorageError, TransientNetworkError


@pytest.mark.asyncio
async def test_concurrent_flushes_submit_each_event_once(make_queue, make_event, submitter):
    """N concurrent attempt_flush() calls over M events yield exactly M submissions."""
    q = make_queue()
    events = [make_event() for _ in range(7)]
    for e in events:
        await q.enqueue(e)
    submitter.delay = 0.01

    results = await asyncio.gather(*(q.attempt_flush() for _ in range(10)))

    assert sorted(submitter.calls) == sorted(e.id for e in events)
    assert sum(r.succeeded for r in results) == 7
    assert sum(1 for r in results if r.skipped and r.reason == "busy") == 9
    assert q.pending_count == 0
    assert not q.in_progress


@pytest.mark.asyncio
async def test_flush_on_empty_queue_is_noop(make_queue, submitter):
    q = make_queue()

    result = await q.attempt_flush()

    assert result.skipped
    assert result.reason == "empty"
    assert result.attempted == 0
    assert submitter.calls == []
    assert not q.in_progress
    assert q.last_sync_time is None


@pytest.mark.asyncio
async def test_in_progress_visible_during_pass(make_queue, make_event, submitter):
    q = make_queue()
    await q.enqueue(make_event())
    submitter.delay = 0.05

    task = asyncio.create_task(q.attempt_flush())
    await asyncio.sleep(0.01)
    assert q.in_progress
    assert q.status().in_progress

    await task
    assert not q.in_progress


@pytest.mark.asyncio
async def test_flag_released_when_pass_raises(make_queue, make_event, submitter, ledger):
    q = make_queue()
    await q.enqueue(make_event())
    submitter.script(TransientNetworkError("503", 503))
    ledger.available = False

    with pytest.raises(StorageError):
        await q.attempt_flush()
    assert not q.in_progress

    ledger.available = True
    submitter.script(AuthError("401", 401))
    with pytest.raises(AuthError):
        await q.attempt_flush()
    assert not q.in_progress


@pytest.mark.asyncio
async def test_enqueue_schedules_background_flush(make_queue, make_event, submitter):
    q = make_queue(auto_flush=True)
    events = [make_event() for _ in range(3)]
    for e in events:
        await q.enqueue(e)

    await q.wait_idle()

    assert submitter.calls == [e.id for e in events]
    assert q.pending_count == 0


@pytest.mark.asyncio
async def test_enqueue_during_pass_is_picked_up_by_follow_up(make_queue, make_event, submitter):
    """An event enqueued while a pass runs is delivered by a coalesced rerun."""
    q = make_queue(auto_flush=True)
    first, second = make_event(), make_event()
    submitter.delay = 0.05

    await q.enqueue(first)
    await asyncio.sleep(0.01)
    assert q.in_progress
    await q.enqueue(second)

    await q.wait_idle()

    assert submitter.calls == [first.id, second.id]
    assert q.pending_count == 0


@pytest.mark.asyncio
async def test_background_auth_error_does_not_escape(make_queue, make_event, submitter):
    q = make_queue(auto_flush=True)
    submitter.script(AuthError("401", 401))

    await q.enqueue(make_event())
    await q.wait_idle()

    assert q.auth_required
    assert q.pending_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [None, PermanentError("unprocessable", 422), TransientNetworkError("503", 503)],
    ids=["success", "permanent", "transient"],
)
async def test_clear_during_submission_discards_outcome(
    make_queue, make_event, submitter, ledger, outcome
):
    """An event cleared while in flight does not come back through its outcome."""
    q = make_queue()
    e = make_event()
    await q.enqueue(e)
    submitter.delay = 0.05
    submitter.script(outcome)

    flush = asyncio.create_task(q.attempt_flush())
    await asyncio.sleep(0.01)
    assert q.in_progress
    await q.clear()
    result = await flush

    assert result.attempted == 1
    assert result.succeeded == result.retried == result.dead_lettered == 0
    assert q.pending_count == 0
    assert q.dead_letter_count == 0
    assert await ledger.get(e.id) is None

    assert await q.retry_all() == 0
    assert q.pending_count == 0
