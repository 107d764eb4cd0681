"""
Message Processor - claims queued messages and runs the per-message flow.

Flow for one message:

1. A pending confirmation is answered first (confirm, cancel or edit).
2. Otherwise the message is classified by the intent router.
3. Transactions are staged for confirmation, other services execute
   directly, invalid decisions ask the user for the missing data.

Queue bookkeeping: success completes the item, a retryable error releases it
for another attempt, anything else fails it.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from chatledger.llm.client import CompletionClient
from chatledger.logging_config import bind_contextvars, clear_contextvars, get_logger
from chatledger.metrics.recorder import MetricsRecorder
from chatledger.schemas.routing import RouteDecision, ServiceId
from chatledger.schemas.transaction import TransactionCandidate
from chatledger.services.confirmation import ConfirmationStore, PendingConfirmation, ReplyKind, classify_reply
from chatledger.services.conversation_history import ConversationHistoryStore, TurnRole
from chatledger.services.conversation_state import ConversationStage, ConversationStateStore
from chatledger.services.intent_router import HandlerRegistry, IntentRouter
from chatledger.services.processing_queue import ProcessingQueue, QueueStatus
from chatledger.services.retry_executor import RetryExecutor

logger = get_logger(__name__)

MESSAGE_METRIC_KIND = "inbound_message"


class OutcomeKind(str, Enum):
    EXECUTED = "executed"
    STAGED = "staged"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EDITING = "editing"
    INVALID = "invalid"
    NO_ACTION = "no_action"
    RELEASED = "released"
    FAILED = "failed"


@dataclass
class ProcessingOutcome:
    """What happened to one message."""

    kind: OutcomeKind
    service_id: Optional[ServiceId] = None
    result: Any = None
    errors: List[str] = field(default_factory=list)
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "service_id": self.service_id.value if self.service_id else None,
            "result": self.result,
            "errors": list(self.errors),
        }


class MessageProcessor:
    """Runs inbound messages through the pipeline."""

    def __init__(
        self,
        queue: ProcessingQueue,
        router: IntentRouter,
        states: ConversationStateStore,
        confirmations: ConfirmationStore,
        history: ConversationHistoryStore,
        recorder: MetricsRecorder,
        retry: RetryExecutor,
        handlers: HandlerRegistry,
        completion_client: CompletionClient,
    ):
        self.queue = queue
        self.router = router
        self.states = states
        self.confirmations = confirmations
        self.history = history
        self.recorder = recorder
        self.retry = retry
        self.handlers = handlers
        self.completion_client = completion_client

    async def submit(self, user_id: str, text: str) -> str:
        """Accept an inbound message for asynchronous processing."""
        return await self.queue.enqueue(user_id, text)

    # -------------------------------------------------------------------------
    # Per-message flow
    # -------------------------------------------------------------------------

    async def handle(self, user_id: str, text: str, message_id: Optional[str] = None) -> ProcessingOutcome:
        """Process one message synchronously and return its outcome."""
        await self.history.append(user_id, TurnRole.USER, text)

        pending = await self.confirmations.peek(user_id)
        if pending is not None:
            outcome = await self._answer_pending(user_id, text, pending)
            if outcome is not None:
                await self._remember(user_id, outcome)
                return outcome

        outcome = await self._route(user_id, text, message_id)
        await self._remember(user_id, outcome)
        return outcome

    async def _answer_pending(
        self, user_id: str, text: str, pending: PendingConfirmation
    ) -> Optional[ProcessingOutcome]:
        reply = classify_reply(text)

        if reply == ReplyKind.CONFIRM:
            handler = self.handlers.get(ServiceId.TRANSACTION)
            results = [await handler(candidate.model_dump(), user_id) for candidate in pending.candidates]
            await self.confirmations.clear(user_id, pending.token)
            await self.states.clear(user_id)
            logger.info("Confirmation accepted", user_id=user_id, candidates=len(results))
            return ProcessingOutcome(OutcomeKind.CONFIRMED, ServiceId.TRANSACTION, results)

        if reply == ReplyKind.CANCEL:
            await self.confirmations.clear(user_id, pending.token)
            await self.states.clear(user_id)
            logger.info("Confirmation cancelled", user_id=user_id)
            return ProcessingOutcome(OutcomeKind.CANCELLED, ServiceId.TRANSACTION)

        if reply == ReplyKind.EDIT:
            await self.states.set(user_id, ConversationStage.EDITING, {"token": pending.token})
            return ProcessingOutcome(OutcomeKind.EDITING, ServiceId.TRANSACTION)

        # Anything else is a new request; an edit in progress re-routes it
        return None

    async def _route(self, user_id: str, text: str, message_id: Optional[str]) -> ProcessingOutcome:
        current = await self.states.get(user_id)
        turns = await self.history.recent(user_id, self.router.history_turns)

        decision = await self.router.classify(text, turns, self.completion_client)
        if decision is None:
            return ProcessingOutcome(OutcomeKind.NO_ACTION)

        if current is not None and current.state == ConversationStage.AWAITING_INPUT:
            decision = self._merge_awaited_fields(decision, current.scratch)

        if decision.errors:
            await self.states.set(
                user_id,
                ConversationStage.AWAITING_INPUT,
                {"service_id": decision.service_id.value, "fields": decision.extracted_fields},
            )
            return ProcessingOutcome(OutcomeKind.INVALID, decision.service_id, errors=decision.errors)

        if decision.service_id == ServiceId.TRANSACTION:
            try:
                candidate = TransactionCandidate.from_fields(decision.extracted_fields)
            except ValidationError as e:
                errors = [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()]
                return ProcessingOutcome(OutcomeKind.INVALID, ServiceId.TRANSACTION, errors=errors)
            token = await self.confirmations.stage(user_id, [candidate], source_message_id=message_id)
            await self.states.set(user_id, ConversationStage.CONFIRMING, {"token": token})
            return ProcessingOutcome(OutcomeKind.STAGED, ServiceId.TRANSACTION, candidate.model_dump())

        execution = await self.router.execute(decision, user_id, self.handlers)
        await self.states.clear(user_id)
        return ProcessingOutcome(OutcomeKind.EXECUTED, execution.service_id, execution.result)

    def _merge_awaited_fields(self, decision: RouteDecision, scratch: Any) -> RouteDecision:
        """Complete a decision with the fields collected before the follow-up."""
        if not isinstance(scratch, dict) or scratch.get("service_id") != decision.service_id.value:
            return decision

        fields = {**scratch.get("fields", {}), **decision.extracted_fields}
        validation = self.router.catalog.validate(decision.service_id, fields)
        return decision.model_copy(update={"extracted_fields": fields, "errors": validation.errors})

    async def _remember(self, user_id: str, outcome: ProcessingOutcome) -> None:
        summary = outcome.kind.value
        if outcome.service_id is not None:
            summary = f"{summary} {outcome.service_id.value}"
        await self.history.append(user_id, TurnRole.ASSISTANT, summary)

    # -------------------------------------------------------------------------
    # Queue consumption
    # -------------------------------------------------------------------------

    async def process_next(self) -> Optional[ProcessingOutcome]:
        """Claim and process one queued message. Returns None if the queue is empty."""
        item = await self.queue.claim_next()
        if item is None:
            return None

        bind_contextvars(message_id=item.id, user_id=item.user_id)
        try:
            try:
                outcome = await self.recorder.wrap(
                    item.user_id,
                    MESSAGE_METRIC_KIND,
                    lambda: self.handle(item.user_id, item.raw_text, item.id),
                    details={"message_id": item.id, "attempt": item.attempts},
                )
            except Exception as e:
                logger.error("Message processing failed", error=str(e), error_type=type(e).__name__)
                if self.retry.is_retryable(e):
                    status = await self.queue.release(item.id, str(e))
                else:
                    await self.queue.fail(item.id, str(e))
                    status = QueueStatus.FAILED
                kind = OutcomeKind.RELEASED if status == QueueStatus.PENDING else OutcomeKind.FAILED
                return ProcessingOutcome(kind, errors=[str(e)], message_id=item.id)

            outcome.message_id = item.id
            await self.queue.complete(item.id, json.dumps(outcome.to_dict(), default=str))
            return outcome
        finally:
            clear_contextvars()

    async def drain(self, limit: Optional[int] = None) -> List[ProcessingOutcome]:
        """Process queued messages until the queue is empty or ``limit`` is reached."""
        outcomes: List[ProcessingOutcome] = []
        while limit is None or len(outcomes) < limit:
            outcome = await self.process_next()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes
