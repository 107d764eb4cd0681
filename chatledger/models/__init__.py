"""Database models package."""

from chatledger.models.base import Base
from chatledger.models.cache_entry import CacheEntryRow
from chatledger.models.conversation_state import (
    ConversationStateRow,
    HistoryTurnRow,
    PendingConfirmationRow,
)
from chatledger.models.processing_metric import ProcessingMetricRow
from chatledger.models.queued_message import QueuedMessageRow

__all__ = [
    "Base",
    "CacheEntryRow",
    "ConversationStateRow",
    "HistoryTurnRow",
    "PendingConfirmationRow",
    "ProcessingMetricRow",
    "QueuedMessageRow",
]
