"""Pipeline services."""

from chatledger.services.confirmation import ConfirmationStore, classify_reply
from chatledger.services.conversation_history import ConversationHistoryStore
from chatledger.services.conversation_state import ConversationStage, ConversationStateStore
from chatledger.services.intent_router import HandlerRegistry, IntentRouter
from chatledger.services.maintenance import MaintenanceService, SweepReport
from chatledger.services.processing_queue import ProcessingQueue, QueueStatus
from chatledger.services.retry_executor import RetryExecutor, RetryPolicy
from chatledger.services.service_catalog import ServiceCatalog, default_catalog

__all__ = [
    "ConfirmationStore",
    "ConversationHistoryStore",
    "ConversationStage",
    "ConversationStateStore",
    "HandlerRegistry",
    "IntentRouter",
    "MaintenanceService",
    "ProcessingQueue",
    "QueueStatus",
    "RetryExecutor",
    "RetryPolicy",
    "ServiceCatalog",
    "SweepReport",
    "classify_reply",
    "default_catalog",
]
