"""
Confirmation Store - transaction candidates waiting for user approval.

At most one pending confirmation per user. Staging a new one replaces the
previous entry. Entries older than five minutes are purged on every read,
so a stale batch can never be confirmed.

Replies are classified with fixed synonym lists in Portuguese and English,
checked in order: confirmation, cancellation, edit.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.clock import Clock, utcnow
from chatledger.logging_config import get_logger
from chatledger.models.conversation_state import PendingConfirmationRow
from chatledger.schemas.transaction import TransactionCandidate

logger = get_logger(__name__)

DEFAULT_CONFIRMATION_TTL = timedelta(minutes=5)


@dataclass
class PendingConfirmation:
    """Candidates staged for one user."""

    user_id: str
    token: str
    candidates: List[TransactionCandidate]
    created_at: datetime
    source_message_id: Optional[str] = None


# =============================================================================
# Reply classification
# =============================================================================


class ReplyKind(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    EDIT = "edit"
    OTHER = "other"


CONFIRM_WORDS = frozenset({"confirmar", "confirmar todas", "sim", "ok", "✅", "confirm", "confirm all", "yes"})
CANCEL_WORDS = frozenset({"cancelar", "não", "nao", "n", "❌", "cancel", "no"})
EDIT_WORDS = frozenset({"editar", "✏️", "edit"})

CONFIRM_PREFIXES = ("confirm",)
CANCEL_PREFIXES = ("cancel",)
EDIT_PREFIXES = ("editar", "corrigir", "alterar", "edit", "correct", "change")


def _normalize_reply(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def _matches(text: Optional[str], words: frozenset, prefixes: Sequence[str]) -> bool:
    reply = _normalize_reply(text)
    if not reply:
        return False
    return reply in words or reply.startswith(tuple(prefixes))


def is_confirmation(text: Optional[str]) -> bool:
    """True when the reply approves the pending candidates."""
    return _matches(text, CONFIRM_WORDS, CONFIRM_PREFIXES)


def is_cancellation(text: Optional[str]) -> bool:
    """True when the reply discards the pending candidates."""
    return _matches(text, CANCEL_WORDS, CANCEL_PREFIXES)


def is_edit(text: Optional[str]) -> bool:
    """True when the reply asks to change a candidate."""
    return _matches(text, EDIT_WORDS, EDIT_PREFIXES)


def classify_reply(text: Optional[str]) -> ReplyKind:
    if is_confirmation(text):
        return ReplyKind.CONFIRM
    if is_cancellation(text):
        return ReplyKind.CANCEL
    if is_edit(text):
        return ReplyKind.EDIT
    return ReplyKind.OTHER


# =============================================================================
# Backends
# =============================================================================


class ConfirmationBackend(ABC):
    """Storage for pending confirmations keyed by user id."""

    @abstractmethod
    async def fetch(self, user_id: str) -> Optional[PendingConfirmation]:
        """Return the stored entry, expired or not."""

    @abstractmethod
    async def upsert(self, pending: PendingConfirmation) -> None:
        """Insert or replace the entry of ``pending.user_id``."""

    @abstractmethod
    async def delete(self, user_id: str, token: Optional[str] = None) -> bool:
        """Delete the entry of a user. With a token, only a matching entry."""

    @abstractmethod
    async def delete_created_before(self, cutoff: datetime) -> int:
        """Delete entries created at or before ``cutoff``."""


class InMemoryConfirmationBackend(ConfirmationBackend):
    """Process-local backend for tests and single-process runs."""

    def __init__(self) -> None:
        self._entries: Dict[str, PendingConfirmation] = {}

    async def fetch(self, user_id: str) -> Optional[PendingConfirmation]:
        return self._entries.get(user_id)

    async def upsert(self, pending: PendingConfirmation) -> None:
        self._entries[pending.user_id] = pending

    async def delete(self, user_id: str, token: Optional[str] = None) -> bool:
        current = self._entries.get(user_id)
        if current is None or (token is not None and current.token != token):
            return False
        del self._entries[user_id]
        return True

    async def delete_created_before(self, cutoff: datetime) -> int:
        expired = [user_id for user_id, entry in self._entries.items() if entry.created_at <= cutoff]
        for user_id in expired:
            del self._entries[user_id]
        return len(expired)


class SqlConfirmationBackend(ConfirmationBackend):
    """Backend storing entries in the ``pending_confirmations`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def fetch(self, user_id: str) -> Optional[PendingConfirmation]:
        async with self._session_factory() as session:
            row = await session.get(PendingConfirmationRow, user_id)
            if row is None:
                return None
            return PendingConfirmation(
                user_id=row.user_id,
                token=row.token,
                candidates=[TransactionCandidate.model_validate(item) for item in row.candidates],
                created_at=row.created_at,
                source_message_id=row.source_message_id,
            )

    async def upsert(self, pending: PendingConfirmation) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(
                    PendingConfirmationRow(
                        user_id=pending.user_id,
                        token=pending.token,
                        candidates=[candidate.model_dump() for candidate in pending.candidates],
                        created_at=pending.created_at,
                        source_message_id=pending.source_message_id,
                    )
                )

    async def delete(self, user_id: str, token: Optional[str] = None) -> bool:
        stmt = delete(PendingConfirmationRow).where(PendingConfirmationRow.user_id == user_id)
        if token is not None:
            stmt = stmt.where(PendingConfirmationRow.token == token)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                return (result.rowcount or 0) > 0

    async def delete_created_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(PendingConfirmationRow).where(PendingConfirmationRow.created_at <= cutoff)
                )
                return result.rowcount or 0


# =============================================================================
# Store
# =============================================================================


class ConfirmationStore:
    """Pending confirmations with a fixed expiry window.

    Persistence errors propagate to the caller.
    """

    def __init__(
        self,
        backend: ConfirmationBackend,
        ttl: timedelta = DEFAULT_CONFIRMATION_TTL,
        clock: Clock = utcnow,
    ):
        self.backend = backend
        self.ttl = ttl
        self._clock = clock

    async def stage(
        self,
        user_id: str,
        candidates: Sequence[TransactionCandidate],
        source_message_id: Optional[str] = None,
    ) -> str:
        """Stage candidates for a user, replacing any earlier batch.

        Returns:
            Token identifying this batch, used to clear it without racing a
            newer one
        """
        pending = PendingConfirmation(
            user_id=user_id,
            token=uuid.uuid4().hex,
            candidates=list(candidates),
            created_at=self._clock(),
            source_message_id=source_message_id,
        )
        await self.backend.upsert(pending)
        logger.info(
            "Confirmation staged",
            user_id=user_id,
            candidates=len(pending.candidates),
            source_message_id=source_message_id,
        )
        return pending.token

    async def peek(self, user_id: str) -> Optional[PendingConfirmation]:
        """Return the live pending confirmation of a user, if any."""
        await self.sweep_expired()
        pending = await self.backend.fetch(user_id)
        if pending is None or pending.created_at <= self._clock() - self.ttl:
            return None
        return pending

    async def clear(self, user_id: str, token: Optional[str] = None) -> bool:
        """Remove the pending confirmation of a user.

        With a token, only the batch staged under that token is removed, so a
        late reply to an old batch cannot discard a newer one.
        """
        removed = await self.backend.delete(user_id, token)
        if removed:
            logger.debug("Confirmation cleared", user_id=user_id)
        return removed

    async def sweep_expired(self) -> int:
        """Delete every entry past the expiry window."""
        removed = await self.backend.delete_created_before(self._clock() - self.ttl)
        if removed:
            logger.info("Swept expired confirmations", count=removed)
        return removed
