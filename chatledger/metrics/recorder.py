"""Metrics recorder - latency and outcome of every processed message.

Records are append-only rows read only in aggregate. Recording is
best-effort: a persistence failure is logged and reported through
``BestEffort`` but never breaks message processing.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.clock import Clock, utcnow
from chatledger.logging_config import get_logger
from chatledger.metrics.prometheus import PipelineMetrics
from chatledger.models.processing_metric import ProcessingMetricRow
from chatledger.schemas.results import BestEffort

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_SUMMARY_WINDOW_DAYS = 7
DEFAULT_RETENTION_DAYS = 30


@dataclass
class MetricsRecord:
    user_id: str
    message_kind: str
    duration_ms: float
    success: bool
    recorded_at: datetime
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class MetricsSummary:
    """Aggregate over a window of records."""

    total: int = 0
    success: int = 0
    failure: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    counts_by_kind: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "MetricsSummary":
        return cls()

    @classmethod
    def from_records(cls, records: List[MetricsRecord]) -> "MetricsSummary":
        if not records:
            return cls.empty()

        total = len(records)
        success = sum(1 for record in records if record.success)
        counts: Dict[str, int] = {}
        for record in records:
            counts[record.message_kind] = counts.get(record.message_kind, 0) + 1

        return cls(
            total=total,
            success=success,
            failure=total - success,
            success_rate=success / total * 100,
            avg_duration_ms=sum(record.duration_ms for record in records) / total,
            counts_by_kind=counts,
        )

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "success": self.success,
            "failure": self.failure,
            "success_rate": round(self.success_rate, 2),
            "avg_duration_ms": round(self.avg_duration_ms, 2),
            "counts_by_kind": dict(self.counts_by_kind),
        }


# =============================================================================
# Backends
# =============================================================================


class MetricsBackend(ABC):
    @abstractmethod
    async def insert(self, record: MetricsRecord) -> None:
        """Append one record."""

    @abstractmethod
    async def select_since(self, since: datetime, user_id: Optional[str] = None) -> List[MetricsRecord]:
        """Records at or after ``since``, optionally for one user."""

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        """Delete records older than ``cutoff``."""


class InMemoryMetricsBackend(MetricsBackend):
    def __init__(self) -> None:
        self._records: List[MetricsRecord] = []

    async def insert(self, record: MetricsRecord) -> None:
        self._records.append(record)

    async def select_since(self, since: datetime, user_id: Optional[str] = None) -> List[MetricsRecord]:
        return [
            record for record in self._records
            if record.recorded_at >= since and (user_id is None or record.user_id == user_id)
        ]

    async def delete_before(self, cutoff: datetime) -> int:
        kept = [record for record in self._records if record.recorded_at >= cutoff]
        removed = len(self._records) - len(kept)
        self._records = kept
        return removed


class SqlMetricsBackend(MetricsBackend):
    """Backend on the ``processing_metrics`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, record: MetricsRecord) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    ProcessingMetricRow(
                        user_id=record.user_id,
                        message_kind=record.message_kind,
                        duration_ms=record.duration_ms,
                        success=record.success,
                        error=record.error,
                        recorded_at=record.recorded_at,
                        details=record.details,
                    )
                )

    async def select_since(self, since: datetime, user_id: Optional[str] = None) -> List[MetricsRecord]:
        stmt = select(ProcessingMetricRow).where(ProcessingMetricRow.recorded_at >= since)
        if user_id is not None:
            stmt = stmt.where(ProcessingMetricRow.user_id == user_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            MetricsRecord(
                user_id=row.user_id,
                message_kind=row.message_kind,
                duration_ms=row.duration_ms,
                success=row.success,
                recorded_at=row.recorded_at,
                error=row.error,
                details=row.details,
            )
            for row in rows
        ]

    async def delete_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ProcessingMetricRow).where(ProcessingMetricRow.recorded_at < cutoff)
                )
                return result.rowcount or 0


# =============================================================================
# Recorder
# =============================================================================


class MetricsRecorder:
    """Persists per-message metrics and mirrors them to Prometheus."""

    def __init__(
        self,
        backend: MetricsBackend,
        clock: Clock = utcnow,
        prometheus: Optional[PipelineMetrics] = None,
        timer: Callable[[], float] = time.perf_counter,
    ):
        """Initialize metrics recorder.

        Args:
            backend: Persistence backend
            clock: Source of ``recorded_at`` timestamps
            prometheus: Optional collectors mirroring each record
            timer: Monotonic clock used by ``wrap``, in seconds
        """
        self.backend = backend
        self._clock = clock
        self._prometheus = prometheus
        self._timer = timer

    async def record(
        self,
        user_id: str,
        message_kind: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> BestEffort[bool]:
        """Append one record. Never raises on persistence or collector failure."""
        record = MetricsRecord(
            user_id=user_id,
            message_kind=message_kind,
            duration_ms=duration_ms,
            success=success,
            recorded_at=self._clock(),
            error=error,
            details=details,
        )
        try:
            if self._prometheus is not None:
                self._prometheus.observe_message(message_kind, success, duration_ms / 1000)
            await self.backend.insert(record)
            return BestEffort(value=True)
        except Exception as e:
            logger.error("Failed to record metrics", user_id=user_id, kind=message_kind, error=str(e))
            return BestEffort(value=False, error=str(e))

    async def summarize(
        self,
        user_id: Optional[str] = None,
        window_days: int = DEFAULT_SUMMARY_WINDOW_DAYS,
    ) -> BestEffort[MetricsSummary]:
        """Aggregate records of the last ``window_days`` days."""
        since = self._clock() - timedelta(days=window_days)
        try:
            records = await self.backend.select_since(since, user_id)
        except Exception as e:
            logger.error("Failed to summarize metrics", user_id=user_id, error=str(e))
            return BestEffort(value=MetricsSummary.empty(), error=str(e))
        return BestEffort(value=MetricsSummary.from_records(records))

    async def purge_older_than(self, days: int = DEFAULT_RETENTION_DAYS) -> BestEffort[int]:
        """Delete records older than ``days`` days."""
        try:
            removed = await self.backend.delete_before(self._clock() - timedelta(days=days))
        except Exception as e:
            logger.error("Failed to purge metrics", error=str(e))
            return BestEffort(value=0, error=str(e))
        if removed:
            logger.info("Purged old metrics", count=removed)
        return BestEffort(value=removed)

    async def wrap(
        self,
        user_id: str,
        message_kind: str,
        operation: Callable[[], Awaitable[T]],
        details: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run ``operation`` and record its duration and outcome exactly once.

        The operation's own error is re-raised unchanged after recording.

        Example:
            result = await recorder.wrap(user_id, "transaction", lambda: handle(message))
        """
        start_time = self._timer()
        success = False
        error: Optional[str] = None
        try:
            result = await operation()
            success = True
            return result
        except BaseException as e:
            # Cancellation is recorded too, then re-raised
            error = str(e) or type(e).__name__
            raise
        finally:
            duration_ms = (self._timer() - start_time) * 1000
            await self.record(user_id, message_kind, duration_ms, success, error=error, details=details)
