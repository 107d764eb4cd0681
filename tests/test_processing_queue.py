"""
Tests for the processing queue.

Tests cover:
- FIFO claiming and attempt counting
- Status transitions and their errors
- Concurrent claims
- Stats and retention sweep
"""

import asyncio
from datetime import timedelta

import pytest

from chatledger.exceptions import InvalidQueueTransitionError, QueueItemNotFoundError
from chatledger.metrics.prometheus import PipelineMetrics
from chatledger.services.processing_queue import (
    InMemoryQueueBackend,
    ProcessingQueue,
    QueueStatus,
    SqlQueueBackend,
)


@pytest.fixture(params=["memory", "sql"])
def queue(request, session_factory, clock):
    backend = InMemoryQueueBackend() if request.param == "memory" else SqlQueueBackend(session_factory)
    return ProcessingQueue(backend, max_attempts=3, clock=clock)


# =============================================================================
# Claiming
# =============================================================================

class TestClaim:

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_enqueue_creates_pending(self, queue, clock):
        message_id = await queue.enqueue("u1", "gastei 50 no mercado")

        item = await queue.get(message_id)

        assert item.status == QueueStatus.PENDING
        assert item.attempts == 0
        assert item.raw_text == "gastei 50 no mercado"
        assert item.enqueued_at == clock()

    @pytest.mark.asyncio
    async def test_claims_oldest_first(self, queue, clock):
        first = await queue.enqueue("u1", "one")
        clock.advance(seconds=1)
        second = await queue.enqueue("u2", "two")

        assert (await queue.claim_next()).id == first
        assert (await queue.claim_next()).id == second
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_claim_marks_processing_and_counts_attempt(self, queue):
        message_id = await queue.enqueue("u1", "one")

        claimed = await queue.claim_next()

        assert claimed.id == message_id
        assert claimed.status == QueueStatus.PROCESSING
        assert claimed.attempts == 1
        assert (await queue.get(message_id)).status == QueueStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_an_item(self, clock):
        queue = ProcessingQueue(InMemoryQueueBackend(), clock=clock)
        ids = {await queue.enqueue("u1", f"message {n}") for n in range(5)}

        claimed = await asyncio.gather(*(queue.claim_next() for _ in range(8)))
        claimed_ids = [item.id for item in claimed if item is not None]

        assert len(claimed_ids) == 5
        assert set(claimed_ids) == ids


# =============================================================================
# Transitions
# =============================================================================

class TestTransitions:

    @pytest.mark.asyncio
    async def test_complete(self, queue):
        message_id = await queue.enqueue("u1", "one")
        await queue.claim_next()

        await queue.complete(message_id, result='{"kind": "executed"}')

        item = await queue.get(message_id)
        assert item.status == QueueStatus.DONE
        assert item.result == '{"kind": "executed"}'

    @pytest.mark.asyncio
    async def test_fail_is_terminal(self, queue):
        message_id = await queue.enqueue("u1", "one")
        await queue.claim_next()

        await queue.fail(message_id, "HTTP 401: unauthorized")

        item = await queue.get(message_id)
        assert item.status == QueueStatus.FAILED
        assert item.error == "HTTP 401: unauthorized"
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_release_returns_to_pending(self, queue):
        message_id = await queue.enqueue("u1", "one")
        await queue.claim_next()

        status = await queue.release(message_id, "timeout")

        assert status == QueueStatus.PENDING
        item = await queue.get(message_id)
        assert item.status == QueueStatus.PENDING
        assert item.error == "timeout"
        assert (await queue.claim_next()).attempts == 2

    @pytest.mark.asyncio
    async def test_release_after_last_attempt_fails(self, queue):
        message_id = await queue.enqueue("u1", "one")
        for _ in range(2):
            await queue.claim_next()
            await queue.release(message_id, "timeout")
        await queue.claim_next()

        status = await queue.release(message_id, "timeout")

        assert status == QueueStatus.FAILED
        assert (await queue.get(message_id)).status == QueueStatus.FAILED
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_complete_pending_item_is_rejected(self, queue):
        message_id = await queue.enqueue("u1", "one")

        with pytest.raises(InvalidQueueTransitionError):
            await queue.complete(message_id)

    @pytest.mark.asyncio
    async def test_terminal_states_cannot_move(self, queue):
        message_id = await queue.enqueue("u1", "one")
        await queue.claim_next()
        await queue.complete(message_id)

        with pytest.raises(InvalidQueueTransitionError):
            await queue.fail(message_id, "late failure")
        with pytest.raises(InvalidQueueTransitionError):
            await queue.release(message_id, "late retry")
        assert (await queue.get(message_id)).status == QueueStatus.DONE

    @pytest.mark.asyncio
    async def test_unknown_id(self, queue):
        with pytest.raises(QueueItemNotFoundError):
            await queue.complete("missing")
        with pytest.raises(QueueItemNotFoundError):
            await queue.release("missing", "timeout")


# =============================================================================
# Stats and sweep
# =============================================================================

class TestMaintenance:

    @pytest.mark.asyncio
    async def test_stats_include_every_status(self, queue, clock):
        done = await queue.enqueue("u1", "done")
        clock.advance(seconds=1)
        await queue.enqueue("u1", "pending")
        await queue.claim_next()
        await queue.complete(done)

        stats = await queue.stats()

        assert stats == {
            QueueStatus.PENDING: 1,
            QueueStatus.PROCESSING: 0,
            QueueStatus.DONE: 1,
            QueueStatus.FAILED: 0,
        }

    @pytest.mark.asyncio
    async def test_stats_update_gauge(self, clock, registry):
        metrics = PipelineMetrics(registry)
        queue = ProcessingQueue(InMemoryQueueBackend(), clock=clock, metrics=metrics)
        await queue.enqueue("u1", "one")

        await queue.stats()

        assert registry.get_sample_value("chatledger_queue_items", {"status": "PENDING"}) == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_old_terminal_items(self, queue, clock):
        done = await queue.enqueue("u1", "done")
        clock.advance(seconds=1)
        failed = await queue.enqueue("u1", "failed")
        clock.advance(seconds=1)
        pending = await queue.enqueue("u1", "pending")
        await queue.claim_next()
        await queue.complete(done)
        await queue.claim_next()
        await queue.fail(failed, "boom")

        clock.advance(days=8)
        recent = await queue.enqueue("u1", "recent")
        await queue.claim_next()

        removed = await queue.sweep_older_than()

        assert removed == 2
        assert await queue.get(done) is None
        assert await queue.get(failed) is None
        assert (await queue.get(pending)).status == QueueStatus.PROCESSING
        assert await queue.get(recent) is not None

    @pytest.mark.asyncio
    async def test_sweep_respects_age(self, queue, clock):
        message_id = await queue.enqueue("u1", "done")
        await queue.claim_next()
        await queue.complete(message_id)
        clock.advance(days=6)

        assert await queue.sweep_older_than(timedelta(days=7)) == 0
