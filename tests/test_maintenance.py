"""
Tests for the maintenance sweep.

Tests cover:
- Every store swept in one pass
- A failing step reported without stopping the others
"""

from unittest.mock import AsyncMock

import pytest

from chatledger.cache import CacheKind, InMemoryCacheBackend, ResultCache
from chatledger.metrics.recorder import InMemoryMetricsBackend, MetricsRecorder
from chatledger.schemas.transaction import TransactionCandidate
from chatledger.services.confirmation import ConfirmationStore, InMemoryConfirmationBackend
from chatledger.services.conversation_history import (
    ConversationHistoryStore,
    InMemoryHistoryBackend,
    TurnRole,
)
from chatledger.services.conversation_state import (
    ConversationStage,
    ConversationStateStore,
    InMemoryStateBackend,
)
from chatledger.services.maintenance import MaintenanceService
from chatledger.services.processing_queue import InMemoryQueueBackend, ProcessingQueue


@pytest.fixture
def service(clock):
    return MaintenanceService(
        cache=ResultCache(InMemoryCacheBackend(), clock=clock),
        states=ConversationStateStore(InMemoryStateBackend(), clock=clock),
        confirmations=ConfirmationStore(InMemoryConfirmationBackend(), clock=clock),
        history=ConversationHistoryStore(InMemoryHistoryBackend(), clock=clock),
        recorder=MetricsRecorder(InMemoryMetricsBackend(), clock=clock),
        queue=ProcessingQueue(InMemoryQueueBackend(), clock=clock),
    )


async def populate(service: MaintenanceService) -> None:
    await service.cache.put("qual meu saldo?", CacheKind.ENDPOINT_DECISION, {"serviceId": "query"})
    await service.states.set("u1", ConversationStage.CONFIRMING)
    await service.confirmations.stage(
        "u1", [TransactionCandidate(descricao="almoço", valor=30.0)]
    )
    await service.history.append("u1", TurnRole.USER, "gastei 30 no almoço")
    await service.recorder.record("u1", "inbound_message", 120.0, True)
    message_id = await service.queue.enqueue("u1", "gastei 30 no almoço")
    await service.queue.claim_next()
    await service.queue.complete(message_id)


class TestSweepAll:

    @pytest.mark.asyncio
    async def test_nothing_to_remove(self, service):
        report = await service.sweep_all()

        assert report.ok
        assert report.total_removed == 0
        assert set(report.removed) == {
            "cache", "conversation_states", "confirmations", "conversation_history", "metrics", "queue",
        }

    @pytest.mark.asyncio
    async def test_fresh_rows_survive(self, service, clock):
        await populate(service)
        clock.advance(minutes=1)

        report = await service.sweep_all()

        assert report.total_removed == 0

    @pytest.mark.asyncio
    async def test_old_rows_are_removed(self, service, clock):
        await populate(service)
        clock.advance(days=31)

        report = await service.sweep_all()

        assert report.ok
        assert report.removed == {
            "cache": 1,
            "conversation_states": 1,
            "confirmations": 1,
            "conversation_history": 1,
            "metrics": 1,
            "queue": 1,
        }

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, service, clock):
        await populate(service)
        clock.advance(days=31)
        service.states.sweep_expired = AsyncMock(side_effect=ConnectionError("database is down"))

        report = await service.sweep_all()

        assert not report.ok
        assert report.errors == {"conversation_states": "database is down"}
        assert "conversation_states" not in report.removed
        assert report.removed["queue"] == 1
        assert report.removed["metrics"] == 1

    @pytest.mark.asyncio
    async def test_best_effort_error_is_reported(self, service, clock):
        service.recorder.backend.delete_before = AsyncMock(side_effect=ConnectionError("metrics store down"))

        report = await service.sweep_all()

        assert report.errors == {"metrics": "metrics store down"}
        assert report.removed["metrics"] == 0
