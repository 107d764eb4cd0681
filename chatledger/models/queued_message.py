"""Durable processing queue rows."""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatledger.models.base import Base


class QueuedMessageRow(Base):
    """Inbound message waiting for (or done with) processing."""

    __tablename__ = "message_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[Optional[str]] = mapped_column(Text)
    error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'DONE', 'FAILED')",
            name="check_message_queue_status",
        ),
        CheckConstraint("attempts >= 0", name="check_message_queue_attempts"),
        Index("idx_message_queue_status_enqueued", "status", "enqueued_at"),
    )
