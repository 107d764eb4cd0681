"""
Tests for the metrics recorder.

Tests cover:
- Recording and summarizing (in-memory and SQL backends)
- Retention purge
- wrap(): exactly one record, errors re-raised
- Failure swallowing
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from chatledger.metrics.prometheus import PipelineMetrics
from chatledger.metrics.recorder import (
    InMemoryMetricsBackend,
    MetricsRecorder,
    MetricsSummary,
    SqlMetricsBackend,
)


class StepTimer:
    """Monotonic timer advancing a fixed step on every read."""

    def __init__(self, step: float):
        self.step = step
        self.value = 0.0

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


@pytest.fixture(params=["memory", "sql"])
def recorder(request, session_factory, clock):
    backend = InMemoryMetricsBackend() if request.param == "memory" else SqlMetricsBackend(session_factory)
    return MetricsRecorder(backend, clock=clock, timer=StepTimer(0.25))


def broken_backend() -> MagicMock:
    backend = MagicMock()
    backend.insert = AsyncMock(side_effect=ConnectionError("database is down"))
    backend.select_since = AsyncMock(side_effect=ConnectionError("database is down"))
    backend.delete_before = AsyncMock(side_effect=ConnectionError("database is down"))
    return backend


# =============================================================================
# Record and summarize
# =============================================================================

class TestSummary:

    @pytest.mark.asyncio
    async def test_empty_summary(self, recorder):
        result = await recorder.summarize()

        assert result.ok
        assert result.value == MetricsSummary.empty()
        assert result.value.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_summary_aggregates(self, recorder):
        await recorder.record("u1", "transaction", 100.0, True)
        await recorder.record("u1", "transaction", 300.0, False, error="timeout")
        await recorder.record("u2", "query", 200.0, True, details={"cache": "hit"})

        summary = (await recorder.summarize()).value

        assert summary.total == 3
        assert summary.success == 2
        assert summary.failure == 1
        assert summary.success_rate == pytest.approx(66.666, rel=1e-3)
        assert summary.avg_duration_ms == pytest.approx(200.0)
        assert summary.counts_by_kind == {"transaction": 2, "query": 1}

    @pytest.mark.asyncio
    async def test_summary_for_one_user(self, recorder):
        await recorder.record("u1", "transaction", 100.0, True)
        await recorder.record("u2", "query", 200.0, False)

        summary = (await recorder.summarize(user_id="u2")).value

        assert summary.total == 1
        assert summary.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_summary_window(self, recorder, clock):
        await recorder.record("u1", "query", 100.0, True)
        clock.advance(days=8)
        await recorder.record("u1", "query", 300.0, True)

        assert (await recorder.summarize()).value.total == 1
        assert (await recorder.summarize(window_days=30)).value.total == 2

    @pytest.mark.asyncio
    async def test_purge_older_than(self, recorder, clock):
        await recorder.record("u1", "query", 100.0, True)
        clock.advance(days=31)
        await recorder.record("u1", "query", 100.0, True)

        result = await recorder.purge_older_than(30)

        assert result.value == 1
        assert (await recorder.summarize(window_days=365)).value.total == 1

    def test_summary_to_dict(self):
        summary = MetricsSummary(total=3, success=2, failure=1, success_rate=66.6666, avg_duration_ms=12.3456)
        assert summary.to_dict()["success_rate"] == 66.67
        assert summary.to_dict()["avg_duration_ms"] == 12.35


# =============================================================================
# wrap
# =============================================================================

class TestWrap:

    @pytest.mark.asyncio
    async def test_success_recorded_once(self, recorder):
        result = await recorder.wrap("u1", "transaction", AsyncMock(return_value="done"), details={"n": 1})

        summary = (await recorder.summarize()).value
        assert result == "done"
        assert summary.total == 1
        assert summary.success == 1
        assert summary.avg_duration_ms == pytest.approx(250.0)

    @pytest.mark.asyncio
    async def test_failure_recorded_once_and_reraised(self, recorder):
        error = TimeoutError("timeout")

        with pytest.raises(TimeoutError) as exc_info:
            await recorder.wrap("u1", "transaction", AsyncMock(side_effect=error))

        summary = (await recorder.summarize()).value
        assert exc_info.value is error
        assert summary.total == 1
        assert summary.failure == 1

    @pytest.mark.asyncio
    async def test_cancellation_recorded_once_and_reraised(self, recorder):
        with pytest.raises(asyncio.CancelledError):
            await recorder.wrap("u1", "inbound_message", AsyncMock(side_effect=asyncio.CancelledError()))

        summary = (await recorder.summarize()).value
        assert summary.total == 1
        assert summary.failure == 1

    @pytest.mark.asyncio
    async def test_broken_backend_does_not_hide_result(self, clock):
        recorder = MetricsRecorder(broken_backend(), clock=clock)

        assert await recorder.wrap("u1", "query", AsyncMock(return_value=42)) == 42

    @pytest.mark.asyncio
    async def test_broken_backend_keeps_original_error(self, clock):
        recorder = MetricsRecorder(broken_backend(), clock=clock)

        with pytest.raises(ValueError, match="bad amount"):
            await recorder.wrap("u1", "query", AsyncMock(side_effect=ValueError("bad amount")))


# =============================================================================
# Failure handling
# =============================================================================

class TestBestEffort:

    @pytest.mark.asyncio
    async def test_record_failure_reported(self, clock):
        result = await MetricsRecorder(broken_backend(), clock=clock).record("u1", "query", 1.0, True)

        assert not result.ok
        assert result.error == "database is down"

    @pytest.mark.asyncio
    async def test_collector_failure_reported(self, clock):
        prometheus = MagicMock()
        prometheus.observe_message.side_effect = ValueError("bad label")
        recorder = MetricsRecorder(InMemoryMetricsBackend(), clock=clock, prometheus=prometheus)

        result = await recorder.record("u1", "query", 1.0, True)

        assert not result.ok
        assert result.error == "bad label"
        assert await recorder.wrap("u1", "query", AsyncMock(return_value=7)) == 7

    @pytest.mark.asyncio
    async def test_summarize_failure_returns_empty(self, clock):
        result = await MetricsRecorder(broken_backend(), clock=clock).summarize()

        assert not result.ok
        assert result.value == MetricsSummary.empty()

    @pytest.mark.asyncio
    async def test_purge_failure_reported(self, clock):
        result = await MetricsRecorder(broken_backend(), clock=clock).purge_older_than()

        assert result.error
        assert result.value == 0


# =============================================================================
# Prometheus mirror
# =============================================================================

class TestPrometheusMirror:

    @pytest.mark.asyncio
    async def test_record_observes_collectors(self, clock, registry):
        recorder = MetricsRecorder(InMemoryMetricsBackend(), clock=clock, prometheus=PipelineMetrics(registry))

        await recorder.record("u1", "query", 500.0, True)
        await recorder.record("u1", "query", 100.0, False)

        labels = {"kind": "query", "status": "success"}
        assert registry.get_sample_value("chatledger_messages_total", labels) == 1
        assert registry.get_sample_value("chatledger_message_duration_seconds_sum", labels) == pytest.approx(0.5)
        assert registry.get_sample_value(
            "chatledger_messages_total", {"kind": "query", "status": "error"}
        ) == 1
