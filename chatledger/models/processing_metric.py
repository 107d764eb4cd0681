"""Append-only processing metrics."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatledger.models.base import Base


class ProcessingMetricRow(Base):
    """Latency and outcome of one processed message."""

    __tablename__ = "processing_metrics"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    details: Mapped[Optional[Any]] = mapped_column(JSON)

    __table_args__ = (
        Index("idx_processing_metrics_recorded", "recorded_at"),
        Index("idx_processing_metrics_user_recorded", "user_id", "recorded_at"),
    )
