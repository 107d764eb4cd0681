"""Periodic cleanup of every store with an expiry or retention window."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional

from chatledger.cache import ResultCache
from chatledger.logging_config import get_logger
from chatledger.metrics.recorder import MetricsRecorder
from chatledger.schemas.results import BestEffort
from chatledger.services.confirmation import ConfirmationStore
from chatledger.services.conversation_history import ConversationHistoryStore
from chatledger.services.conversation_state import ConversationStateStore
from chatledger.services.processing_queue import ProcessingQueue

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """Rows removed per store, and the steps that failed."""

    removed: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())


class MaintenanceService:
    """Runs every sweep in one pass. A failing step does not stop the others."""

    def __init__(
        self,
        cache: ResultCache,
        states: ConversationStateStore,
        confirmations: ConfirmationStore,
        history: ConversationHistoryStore,
        recorder: MetricsRecorder,
        queue: ProcessingQueue,
        queue_retention: timedelta = timedelta(days=7),
        metrics_retention_days: int = 30,
    ):
        self.cache = cache
        self.states = states
        self.confirmations = confirmations
        self.history = history
        self.recorder = recorder
        self.queue = queue
        self.queue_retention = queue_retention
        self.metrics_retention_days = metrics_retention_days

    async def sweep_all(self) -> SweepReport:
        report = SweepReport()
        steps: Dict[str, Callable[[], Awaitable[object]]] = {
            "cache": self.cache.sweep_expired,
            "conversation_states": self.states.sweep_expired,
            "confirmations": self.confirmations.sweep_expired,
            "conversation_history": self.history.sweep_expired,
            "metrics": lambda: self.recorder.purge_older_than(self.metrics_retention_days),
            "queue": lambda: self.queue.sweep_older_than(self.queue_retention),
        }

        for name, step in steps.items():
            try:
                outcome = await step()
            except Exception as e:
                logger.error("Sweep step failed", step=name, error=str(e))
                report.errors[name] = str(e)
                continue

            error: Optional[str] = None
            if isinstance(outcome, BestEffort):
                error = outcome.error
                outcome = outcome.value or 0
            if error is not None:
                report.errors[name] = error
            report.removed[name] = int(outcome)

        logger.info("Maintenance sweep finished", removed=report.removed, failed=sorted(report.errors))
        return report
