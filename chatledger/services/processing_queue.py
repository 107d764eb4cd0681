"""
Processing Queue - durable hand-off between message intake and the workers.

Lifecycle of an item::

    PENDING -> PROCESSING -> DONE
                          -> PENDING   (release, retry later)
                          -> FAILED

DONE and FAILED are terminal. Only PENDING items with attempts below the
limit can be claimed, oldest first. Claiming is atomic: two concurrent
workers never receive the same item.
"""

import asyncio
import itertools
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.clock import Clock, utcnow
from chatledger.exceptions import InvalidQueueTransitionError, QueueItemNotFoundError
from chatledger.logging_config import get_logger
from chatledger.models.queued_message import QueuedMessageRow

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETENTION = timedelta(days=7)


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


TERMINAL_STATUSES: FrozenSet[QueueStatus] = frozenset({QueueStatus.DONE, QueueStatus.FAILED})


@dataclass
class QueuedMessage:
    """One inbound message and its processing status."""

    id: str
    user_id: str
    raw_text: str
    enqueued_at: datetime
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    result: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Backends
# =============================================================================


class QueueBackend(ABC):
    """Persistence for queue items.

    ``transition`` is a compare-and-set on status: it applies the change only
    while the item is still in ``expected`` and reports whether it did.
    """

    @abstractmethod
    async def insert(self, item: QueuedMessage) -> None:
        """Persist a new PENDING item."""

    @abstractmethod
    async def fetch(self, message_id: str) -> Optional[QueuedMessage]:
        """Return an item by id."""

    @abstractmethod
    async def claim_next(self, max_attempts: int) -> Optional[QueuedMessage]:
        """Atomically move the oldest eligible PENDING item to PROCESSING."""

    @abstractmethod
    async def transition(
        self,
        message_id: str,
        expected: QueueStatus,
        status: QueueStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move an item out of ``expected``."""

    @abstractmethod
    async def count_by_status(self) -> Dict[QueueStatus, int]:
        """Count items per status."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime, statuses: FrozenSet[QueueStatus]) -> int:
        """Delete items in ``statuses`` enqueued before ``cutoff``."""


class InMemoryQueueBackend(QueueBackend):
    """Process-local backend. A lock serializes claims."""

    def __init__(self) -> None:
        self._items: Dict[str, QueuedMessage] = {}
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def insert(self, item: QueuedMessage) -> None:
        self._items[item.id] = replace(item)
        self._order[item.id] = next(self._seq)

    async def fetch(self, message_id: str) -> Optional[QueuedMessage]:
        item = self._items.get(message_id)
        return replace(item) if item else None

    async def claim_next(self, max_attempts: int) -> Optional[QueuedMessage]:
        async with self._lock:
            eligible = [
                item for item in self._items.values()
                if item.status == QueueStatus.PENDING and item.attempts < max_attempts
            ]
            if not eligible:
                return None
            item = min(eligible, key=lambda i: (i.enqueued_at, self._order[i.id]))
            item.status = QueueStatus.PROCESSING
            item.attempts += 1
            return replace(item)

    async def transition(
        self,
        message_id: str,
        expected: QueueStatus,
        status: QueueStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            item = self._items.get(message_id)
            if item is None or item.status != expected:
                return False
            item.status = status
            if result is not None:
                item.result = result
            if error is not None:
                item.error = error
            return True

    async def count_by_status(self) -> Dict[QueueStatus, int]:
        counts: Dict[QueueStatus, int] = {}
        for item in self._items.values():
            counts[item.status] = counts.get(item.status, 0) + 1
        return counts

    async def delete_older_than(self, cutoff: datetime, statuses: FrozenSet[QueueStatus]) -> int:
        doomed = [
            message_id for message_id, item in self._items.items()
            if item.status in statuses and item.enqueued_at < cutoff
        ]
        for message_id in doomed:
            del self._items[message_id]
            self._order.pop(message_id, None)
        return len(doomed)


def _row_to_item(row: QueuedMessageRow) -> QueuedMessage:
    return QueuedMessage(
        id=row.id,
        user_id=row.user_id,
        raw_text=row.raw_text,
        enqueued_at=row.enqueued_at,
        status=QueueStatus(row.status),
        attempts=row.attempts,
        result=row.result,
        error=row.error,
    )


class SqlQueueBackend(QueueBackend):
    """Backend on the ``message_queue`` table.

    A claim selects the oldest candidate and flips it with an UPDATE guarded
    by ``status = 'PENDING'``. If another worker won the race the UPDATE hits
    zero rows and the next candidate is tried.
    """

    CLAIM_CANDIDATES = 5

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, item: QueuedMessage) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    QueuedMessageRow(
                        id=item.id,
                        user_id=item.user_id,
                        raw_text=item.raw_text,
                        enqueued_at=item.enqueued_at,
                        status=item.status.value,
                        attempts=item.attempts,
                    )
                )

    async def fetch(self, message_id: str) -> Optional[QueuedMessage]:
        async with self._session_factory() as session:
            row = await session.get(QueuedMessageRow, message_id)
            return _row_to_item(row) if row else None

    async def claim_next(self, max_attempts: int) -> Optional[QueuedMessage]:
        async with self._session_factory() as session:
            while True:
                async with session.begin():
                    candidates = (
                        await session.execute(
                            select(QueuedMessageRow.id)
                            .where(
                                QueuedMessageRow.status == QueueStatus.PENDING.value,
                                QueuedMessageRow.attempts < max_attempts,
                            )
                            .order_by(QueuedMessageRow.enqueued_at, QueuedMessageRow.id)
                            .limit(self.CLAIM_CANDIDATES)
                        )
                    ).scalars().all()
                    if not candidates:
                        return None

                    for message_id in candidates:
                        result = await session.execute(
                            update(QueuedMessageRow)
                            .where(
                                QueuedMessageRow.id == message_id,
                                QueuedMessageRow.status == QueueStatus.PENDING.value,
                            )
                            .values(
                                status=QueueStatus.PROCESSING.value,
                                attempts=QueuedMessageRow.attempts + 1,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount:
                            row = await session.get(QueuedMessageRow, message_id, populate_existing=True)
                            return _row_to_item(row)

    async def transition(
        self,
        message_id: str,
        expected: QueueStatus,
        status: QueueStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        values = {"status": status.value}
        if result is not None:
            values["result"] = result
        if error is not None:
            values["error"] = error
        async with self._session_factory() as session:
            async with session.begin():
                outcome = await session.execute(
                    update(QueuedMessageRow)
                    .where(
                        QueuedMessageRow.id == message_id,
                        QueuedMessageRow.status == expected.value,
                    )
                    .values(**values)
                )
                return (outcome.rowcount or 0) > 0

    async def count_by_status(self) -> Dict[QueueStatus, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(QueuedMessageRow.status, func.count()).group_by(QueuedMessageRow.status)
            )
            return {QueueStatus(status): count for status, count in rows.all()}

    async def delete_older_than(self, cutoff: datetime, statuses: FrozenSet[QueueStatus]) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(QueuedMessageRow).where(
                        QueuedMessageRow.enqueued_at < cutoff,
                        QueuedMessageRow.status.in_([status.value for status in statuses]),
                    )
                )
                return result.rowcount or 0


# =============================================================================
# Queue
# =============================================================================


class ProcessingQueue:
    """At-least-once delivery of inbound messages to workers.

    Persistence errors propagate: a lost claim or completion would leave a
    message stuck or processed twice.
    """

    def __init__(
        self,
        backend: QueueBackend,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Clock = utcnow,
        metrics: Optional[object] = None,
    ):
        self.backend = backend
        self.max_attempts = max_attempts
        self._clock = clock
        self._metrics = metrics

    async def enqueue(self, user_id: str, raw_text: str) -> str:
        """Add a message as PENDING. Returns its id."""
        item = QueuedMessage(
            id=uuid.uuid4().hex,
            user_id=user_id,
            raw_text=raw_text,
            enqueued_at=self._clock(),
        )
        await self.backend.insert(item)
        logger.info("Message enqueued", message_id=item.id, user_id=user_id)
        return item.id

    async def get(self, message_id: str) -> Optional[QueuedMessage]:
        return await self.backend.fetch(message_id)

    async def claim_next(self) -> Optional[QueuedMessage]:
        """Claim the oldest eligible PENDING message, or None."""
        item = await self.backend.claim_next(self.max_attempts)
        if item is not None:
            logger.info(
                "Message claimed",
                message_id=item.id,
                user_id=item.user_id,
                attempt=item.attempts,
            )
        return item

    async def _transition(
        self,
        message_id: str,
        status: QueueStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        moved = await self.backend.transition(
            message_id, QueueStatus.PROCESSING, status, result=result, error=error
        )
        if moved:
            return

        current = await self.backend.fetch(message_id)
        if current is None:
            raise QueueItemNotFoundError(f"Queued message {message_id} not found")
        raise InvalidQueueTransitionError(
            f"Cannot move message {message_id} from {current.status.value} to {status.value}"
        )

    async def complete(self, message_id: str, result: Optional[str] = None) -> None:
        """Mark a claimed message DONE."""
        await self._transition(message_id, QueueStatus.DONE, result=result)
        logger.info("Message completed", message_id=message_id)

    async def fail(self, message_id: str, error: str) -> None:
        """Mark a claimed message FAILED. Terminal."""
        await self._transition(message_id, QueueStatus.FAILED, error=error)
        logger.warning("Message failed", message_id=message_id, error=error)

    async def release(self, message_id: str, error: str) -> QueueStatus:
        """Return a claimed message to PENDING so it is retried later.

        A message that already used every attempt is failed instead.

        Returns:
            The status the message ended in
        """
        current = await self.backend.fetch(message_id)
        if current is None:
            raise QueueItemNotFoundError(f"Queued message {message_id} not found")

        if current.attempts >= self.max_attempts:
            await self.fail(message_id, error)
            return QueueStatus.FAILED

        await self._transition(message_id, QueueStatus.PENDING, error=error)
        logger.info(
            "Message released for retry",
            message_id=message_id,
            attempts=current.attempts,
            error=error,
        )
        return QueueStatus.PENDING

    async def stats(self) -> Dict[QueueStatus, int]:
        """Count messages in every status, zero included."""
        counts = await self.backend.count_by_status()
        stats = {status: counts.get(status, 0) for status in QueueStatus}
        if self._metrics is not None:
            self._metrics.update_queue_stats({status.value: count for status, count in stats.items()})
        return stats

    async def sweep_older_than(
        self,
        age: timedelta = DEFAULT_RETENTION,
        statuses: Iterable[QueueStatus] = TERMINAL_STATUSES,
    ) -> int:
        """Delete messages in ``statuses`` enqueued more than ``age`` ago."""
        removed = await self.backend.delete_older_than(self._clock() - age, frozenset(statuses))
        if removed:
            logger.info("Swept old queued messages", count=removed)
        return removed
