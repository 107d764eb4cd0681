"""Recent conversation turns, fed to the intent router as context."""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.clock import Clock, utcnow
from chatledger.logging_config import get_logger
from chatledger.models.conversation_state import HistoryTurnRow

logger = get_logger(__name__)

DEFAULT_HISTORY_TTL = timedelta(minutes=10)


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class HistoryTurn:
    user_id: str
    role: TurnRole
    content: str
    created_at: datetime

    def render(self) -> str:
        speaker = "Usuário" if self.role == TurnRole.USER else "Assistente"
        return f"{speaker}: {self.content}"


class HistoryBackend(ABC):
    """Append-only turn storage."""

    @abstractmethod
    async def append(self, turn: HistoryTurn) -> None:
        """Store one turn."""

    @abstractmethod
    async def latest(self, user_id: str, limit: int) -> List[HistoryTurn]:
        """Return the newest ``limit`` turns of a user, oldest first."""

    @abstractmethod
    async def last_activity(self, user_id: str) -> Optional[datetime]:
        """Timestamp of the newest turn of a user."""

    @abstractmethod
    async def delete_user(self, user_id: str) -> int:
        """Delete every turn of a user."""

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        """Delete turns created before ``cutoff``."""


class InMemoryHistoryBackend(HistoryBackend):
    def __init__(self) -> None:
        self._turns: Dict[str, List[HistoryTurn]] = defaultdict(list)

    async def append(self, turn: HistoryTurn) -> None:
        self._turns[turn.user_id].append(turn)

    async def latest(self, user_id: str, limit: int) -> List[HistoryTurn]:
        turns = self._turns.get(user_id, [])
        return turns[-limit:] if limit > 0 else []

    async def last_activity(self, user_id: str) -> Optional[datetime]:
        turns = self._turns.get(user_id)
        return turns[-1].created_at if turns else None

    async def delete_user(self, user_id: str) -> int:
        return len(self._turns.pop(user_id, []))

    async def delete_before(self, cutoff: datetime) -> int:
        removed = 0
        for user_id in list(self._turns):
            kept = [turn for turn in self._turns[user_id] if turn.created_at >= cutoff]
            removed += len(self._turns[user_id]) - len(kept)
            if kept:
                self._turns[user_id] = kept
            else:
                del self._turns[user_id]
        return removed


class SqlHistoryBackend(HistoryBackend):
    """Backend on the ``conversation_history`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, turn: HistoryTurn) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    HistoryTurnRow(
                        user_id=turn.user_id,
                        role=turn.role.value,
                        content=turn.content,
                        created_at=turn.created_at,
                    )
                )

    async def latest(self, user_id: str, limit: int) -> List[HistoryTurn]:
        if limit <= 0:
            return []
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(HistoryTurnRow)
                    .where(HistoryTurnRow.user_id == user_id)
                    .order_by(HistoryTurnRow.created_at.desc(), HistoryTurnRow.id.desc())
                    .limit(limit)
                )
            ).scalars().all()
        return [
            HistoryTurn(
                user_id=row.user_id,
                role=TurnRole(row.role),
                content=row.content,
                created_at=row.created_at,
            )
            for row in reversed(rows)
        ]

    async def last_activity(self, user_id: str) -> Optional[datetime]:
        async with self._session_factory() as session:
            return await session.scalar(
                select(func.max(HistoryTurnRow.created_at)).where(HistoryTurnRow.user_id == user_id)
            )

    async def delete_user(self, user_id: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(HistoryTurnRow).where(HistoryTurnRow.user_id == user_id)
                )
                return result.rowcount or 0

    async def delete_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(HistoryTurnRow).where(HistoryTurnRow.created_at < cutoff)
                )
                return result.rowcount or 0


class ConversationHistoryStore:
    """Per-user turn log that lapses after a stretch of inactivity.

    A conversation is live while its newest turn is younger than ``ttl``.
    Once it lapses, reads return nothing and the next append starts fresh.
    """

    def __init__(
        self,
        backend: HistoryBackend,
        ttl: timedelta = DEFAULT_HISTORY_TTL,
        clock: Clock = utcnow,
    ):
        self.backend = backend
        self.ttl = ttl
        self._clock = clock

    async def _is_live(self, user_id: str, now: datetime) -> bool:
        last = await self.backend.last_activity(user_id)
        return last is not None and now - last < self.ttl

    async def append(self, user_id: str, role: TurnRole, content: str) -> None:
        now = self._clock()
        if not await self._is_live(user_id, now):
            await self.backend.delete_user(user_id)
        await self.backend.append(
            HistoryTurn(user_id=user_id, role=TurnRole(role), content=content, created_at=now)
        )

    async def recent(self, user_id: str, limit: int = 5) -> List[HistoryTurn]:
        """Last ``limit`` turns of a live conversation, oldest first."""
        now = self._clock()
        if not await self._is_live(user_id, now):
            return []
        return await self.backend.latest(user_id, limit)

    async def clear(self, user_id: str) -> None:
        await self.backend.delete_user(user_id)

    async def sweep_expired(self) -> int:
        """Delete turns older than the inactivity window."""
        removed = await self.backend.delete_before(self._clock() - self.ttl)
        if removed:
            logger.info("Swept expired conversation turns", count=removed)
        return removed
