"""Per-user conversation state rows."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from chatledger.models.base import Base


class ConversationStateRow(Base):
    """Exactly one live row per user identifier."""

    __tablename__ = "conversation_states"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    scratch: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("idx_conversation_states_expires", "expires_at"),)


class PendingConfirmationRow(Base):
    """Transaction candidates waiting for the user's approval."""

    __tablename__ = "pending_confirmations"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    candidates: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    source_message_id: Mapped[Optional[str]] = mapped_column(String(128))


class HistoryTurnRow(Base):
    """One user or assistant turn of a conversation."""

    __tablename__ = "conversation_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_conversation_history_user_created", "user_id", "created_at"),
    )
