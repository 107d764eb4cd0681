"""
Conversation State Store - per-user position in a multi-turn flow.

One live row per user. Every write recomputes ``expires_at`` from
``updated_at`` and the row's ttl; an expired row reads as absent. The store
persists whatever state it is given and does not police transitions.

Flows:
    INITIAL -> EXTRACTING -> CONFIRMING -> (EDITING <-> CONFIRMING) -> INITIAL
    INITIAL -> SCHEDULING -> (EDITING_SCHEDULE <-> SCHEDULING) -> INITIAL
    AWAITING_INPUT / AWAITING_CONFIRMATION for one extra round-trip
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.clock import Clock, utcnow
from chatledger.exceptions import ConversationStateNotFoundError
from chatledger.logging_config import get_logger
from chatledger.models.conversation_state import ConversationStateRow

logger = get_logger(__name__)

DEFAULT_STATE_TTL = timedelta(minutes=10)


class ConversationStage(str, Enum):
    """Where a user is in a conversation flow."""
    INITIAL = "initial"
    EXTRACTING = "extracting_transaction"
    CONFIRMING = "confirming_transaction"
    EDITING = "editing_transaction"
    AWAITING_INPUT = "awaiting_input"
    SCHEDULING = "processing_schedule"
    EDITING_SCHEDULE = "editing_schedule"
    AWAITING_CONFIRMATION = "awaiting_confirmation"

    # Aliases
    PROCESSING_SCHEDULE = "processing_schedule"
    AWAITING_DATA = "awaiting_input"


@dataclass
class ConversationState:
    """Live state row of one user."""

    user_id: str
    state: ConversationStage
    scratch: Optional[Any]
    updated_at: datetime
    expires_at: datetime

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.updated_at

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


# =============================================================================
# Backends
# =============================================================================


class StateBackend(ABC):
    """Row store keyed by user id."""

    @abstractmethod
    async def fetch(self, user_id: str) -> Optional[ConversationState]:
        """Return the stored row, expired or not."""

    @abstractmethod
    async def upsert(self, state: ConversationState) -> None:
        """Insert or overwrite the row of ``state.user_id``."""

    @abstractmethod
    async def update_scratch(
        self, user_id: str, scratch: Any, updated_at: datetime, expires_at: datetime, now: datetime
    ) -> bool:
        """Replace scratch data of a live row. Returns False if there is none."""

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        """Delete the row of a user, if any."""

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Delete rows that expired before ``now``."""


class InMemoryStateBackend(StateBackend):
    """Process-local backend for tests and single-process runs."""

    def __init__(self) -> None:
        self._rows: Dict[str, ConversationState] = {}

    async def fetch(self, user_id: str) -> Optional[ConversationState]:
        row = self._rows.get(user_id)
        return replace(row) if row else None

    async def upsert(self, state: ConversationState) -> None:
        self._rows[state.user_id] = replace(state)

    async def update_scratch(
        self, user_id: str, scratch: Any, updated_at: datetime, expires_at: datetime, now: datetime
    ) -> bool:
        row = self._rows.get(user_id)
        if row is None or row.is_expired(now):
            return False
        row.scratch = scratch
        row.updated_at = updated_at
        row.expires_at = expires_at
        return True

    async def delete(self, user_id: str) -> None:
        self._rows.pop(user_id, None)

    async def delete_expired(self, now: datetime) -> int:
        expired = [user_id for user_id, row in self._rows.items() if row.is_expired(now)]
        for user_id in expired:
            del self._rows[user_id]
        return len(expired)


class SqlStateBackend(StateBackend):
    """Backend storing rows in the ``conversation_states`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def fetch(self, user_id: str) -> Optional[ConversationState]:
        async with self._session_factory() as session:
            row = await session.get(ConversationStateRow, user_id)
            if row is None:
                return None
            return ConversationState(
                user_id=row.user_id,
                state=ConversationStage(row.state),
                scratch=row.scratch,
                updated_at=row.updated_at,
                expires_at=row.expires_at,
            )

    async def upsert(self, state: ConversationState) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(
                    ConversationStateRow(
                        user_id=state.user_id,
                        state=state.state.value,
                        scratch=state.scratch,
                        updated_at=state.updated_at,
                        expires_at=state.expires_at,
                    )
                )

    async def update_scratch(
        self, user_id: str, scratch: Any, updated_at: datetime, expires_at: datetime, now: datetime
    ) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(ConversationStateRow)
                    .where(
                        ConversationStateRow.user_id == user_id,
                        ConversationStateRow.expires_at > now,
                    )
                    .values(scratch=scratch, updated_at=updated_at, expires_at=expires_at)
                )
                return (result.rowcount or 0) > 0

    async def delete(self, user_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(ConversationStateRow).where(ConversationStateRow.user_id == user_id)
                )

    async def delete_expired(self, now: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ConversationStateRow).where(ConversationStateRow.expires_at <= now)
                )
                return result.rowcount or 0


# =============================================================================
# Store
# =============================================================================


class ConversationStateStore:
    """Per-user conversation state with TTL expiry.

    Writes are last-writer-wins. Persistence errors propagate: losing a state
    write would corrupt the user-visible flow.
    """

    def __init__(
        self,
        backend: StateBackend,
        default_ttl: timedelta = DEFAULT_STATE_TTL,
        clock: Clock = utcnow,
    ):
        self.backend = backend
        self.default_ttl = default_ttl
        self._clock = clock

    async def get(self, user_id: str) -> Optional[ConversationState]:
        """Return the live state of a user, or None if absent or expired."""
        row = await self.backend.fetch(user_id)
        if row is None or row.is_expired(self._clock()):
            return None
        return row

    async def set(
        self,
        user_id: str,
        state: ConversationStage,
        scratch: Optional[Any] = None,
        ttl: Optional[timedelta] = None,
    ) -> ConversationState:
        """Write the state of a user, refreshing its expiry."""
        now = self._clock()
        row = ConversationState(
            user_id=user_id,
            state=ConversationStage(state),
            scratch=scratch,
            updated_at=now,
            expires_at=now + (self.default_ttl if ttl is None else ttl),
        )
        await self.backend.upsert(row)
        logger.debug("Conversation state set", user_id=user_id, state=row.state.value)
        return row

    async def clear(self, user_id: str) -> None:
        """Return the user to INITIAL by deleting the row."""
        await self.backend.delete(user_id)
        logger.debug("Conversation state cleared", user_id=user_id)

    async def sweep_expired(self) -> int:
        """Delete expired rows."""
        removed = await self.backend.delete_expired(self._clock())
        if removed:
            logger.info("Swept expired conversation states", count=removed)
        return removed

    async def get_scratch(self, user_id: str) -> Optional[Any]:
        """Return the scratch data of a live state."""
        row = await self.get(user_id)
        return row.scratch if row else None

    async def update_scratch(self, user_id: str, scratch: Any) -> None:
        """Replace scratch data without changing the state.

        Raises:
            ConversationStateNotFoundError: The user has no live state
        """
        now = self._clock()
        current = await self.get(user_id)
        if current is None:
            raise ConversationStateNotFoundError(f"No live conversation state for user {user_id}")

        # Keep the row's own ttl span so expires_at stays updated_at + ttl
        updated = await self.backend.update_scratch(
            user_id, scratch, updated_at=now, expires_at=now + current.ttl, now=now
        )
        if not updated:
            raise ConversationStateNotFoundError(f"No live conversation state for user {user_id}")
