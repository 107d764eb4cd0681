"""
Intent Router - maps a free-text message to a catalog service.

Classification asks the completion service for a JSON decision. The call
runs under the retry executor, behind the result cache. The raw decision is
then interpreted against the catalog:

- no service named            -> None ("no action")
- unknown service             -> default query decision
- invalid fields, low conf.   -> default query decision
- invalid fields, high conf.  -> decision kept, errors attached
- valid                       -> decision as-is

Execution dispatches a decision to the handler registered for its service.
"""

import json
import math
import re
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from chatledger.cache import CacheKind, ResultCache
from chatledger.exceptions import DecisionParseError, HandlerNotRegisteredError
from chatledger.llm.client import CompletionClient
from chatledger.logging_config import get_logger
from chatledger.metrics.prometheus import PipelineMetrics
from chatledger.schemas.routing import ExecutionResult, RouteDecision, ServiceId
from chatledger.services.retry_executor import RetryExecutor
from chatledger.services.service_catalog import DEFAULT_QUERY_FIELDS, ServiceCatalog, default_catalog

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any], str], Awaitable[Any]]

SERVICE_ID_KEYS = ("serviceId", "servicoId", "service_id")
FIELDS_KEYS = ("extractedFields", "dadosExtraidos", "params")
CONFIDENCE_KEYS = ("confidence", "confianca")

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
FALLBACK_CONFIDENCE = 0.5

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_INNER_OBJECT_RE = re.compile(r"\{[\s\S]*?\}")


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the JSON object out of a completion response.

    Strips code fences and any prose around the outermost braces. If that
    does not parse, the first innermost ``{...}`` is tried.

    Raises:
        DecisionParseError: No parseable JSON object in the text
    """
    cleaned = _FENCE_RE.sub("", text or "").strip()

    first = cleaned.find("{")
    if first > 0:
        cleaned = cleaned[first:]
    last = cleaned.rfind("}")
    if last >= 0:
        cleaned = cleaned[: last + 1]

    try:
        parsed = json.loads(cleaned)
    except ValueError:
        parsed = None
        match = _INNER_OBJECT_RE.search(cleaned)
        if match:
            try:
                parsed = json.loads(match.group(0))
            except ValueError:
                parsed = None

    if not isinstance(parsed, dict):
        raise DecisionParseError(f"Completion has no valid JSON object: {(text or '')[:200]}")
    return parsed


def _first_present(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _render_turn(turn: Any) -> str:
    if hasattr(turn, "render"):
        return turn.render()
    if isinstance(turn, Mapping):
        return f"{turn.get('role', 'user')}: {turn.get('content', '')}"
    return str(turn)


class HandlerRegistry:
    """Start-up table from service id to handler coroutine."""

    def __init__(self, handlers: Optional[Mapping[ServiceId, Handler]] = None):
        self._handlers: Dict[ServiceId, Handler] = {}
        for service_id, handler in (handlers or {}).items():
            self.register(service_id, handler)

    def register(self, service_id: ServiceId, handler: Handler) -> None:
        self._handlers[ServiceId(service_id)] = handler

    def get(self, service_id: ServiceId) -> Handler:
        try:
            return self._handlers[ServiceId(service_id)]
        except KeyError:
            raise HandlerNotRegisteredError(f"No handler registered for service {service_id}") from None

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._handlers


class IntentRouter:
    """Classifies messages and dispatches decisions to handlers."""

    def __init__(
        self,
        retry: RetryExecutor,
        cache: ResultCache,
        catalog: ServiceCatalog = default_catalog,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        history_turns: int = 5,
        metrics: Optional[PipelineMetrics] = None,
    ):
        """
        Initialize intent router.

        Args:
            retry: Executor wrapping the completion call
            cache: Result cache consulted before the completion call
            catalog: Services a message can be routed to
            confidence_threshold: Minimum confidence to keep an invalid decision
            history_turns: Conversation turns included in the prompt
            metrics: Optional PipelineMetrics for fallback and confidence
        """
        self.retry = retry
        self.cache = cache
        self.catalog = catalog
        self.confidence_threshold = confidence_threshold
        self.history_turns = history_turns
        self._metrics = metrics

    def build_prompt(self, message: str, history: Sequence[Any] = ()) -> str:
        recent = list(history)[-self.history_turns:] if self.history_turns > 0 else []
        context = "\n".join(_render_turn(turn) for turn in recent) or "Nenhum contexto anterior"
        return (
            "Você decide qual serviço atende a mensagem do usuário e extrai os dados.\n\n"
            f"SERVIÇOS DISPONÍVEIS:\n{self.catalog.describe()}\n\n"
            f'MENSAGEM DO USUÁRIO: "{message}"\n\n'
            f"CONTEXTO DA CONVERSA:\n{context}\n\n"
            "Retorne APENAS um JSON no formato:\n"
            '{"serviceId": "<id>", "confidence": <0 a 1>, "extractedFields": {...}}\n'
            'Se nenhum serviço se aplica, retorne {"serviceId": null, "extractedFields": {}}'
        )

    async def _request_decision(self, message: str, history: Sequence[Any], client: CompletionClient) -> Dict[str, Any]:
        prompt = self.build_prompt(message, history)

        async def call_and_parse() -> Dict[str, Any]:
            response = await client.complete(prompt)
            return extract_json(response)

        return await self.retry.run(call_and_parse, operation_name="route_decision")

    def _fallback(self, reason: str, message: str) -> RouteDecision:
        logger.info("Routing fell back to default query", reason=reason, message=message[:80])
        if self._metrics is not None:
            self._metrics.record_route_fallback(reason)
        return RouteDecision(
            service_id=ServiceId.QUERY,
            confidence=FALLBACK_CONFIDENCE,
            extracted_fields=dict(DEFAULT_QUERY_FIELDS),
            fallback=True,
        )

    def interpret(self, raw: Mapping[str, Any], message: str = "") -> Optional[RouteDecision]:
        """Turn a parsed completion into a decision, applying the fallback rules."""
        service_ref = _first_present(raw, SERVICE_ID_KEYS)
        if service_ref is None and raw.get("endpointIndex") is not None:
            definition = self.catalog.at_index(raw["endpointIndex"])
            if definition is None:
                return self._fallback("unknown_service", message)
            service_ref = definition.id
        if service_ref is None:
            return None

        definition = self.catalog.lookup(service_ref)
        if definition is None:
            return self._fallback("unknown_service", message)

        fields = _first_present(raw, FIELDS_KEYS)
        if not isinstance(fields, Mapping):
            fields = {}
        fields = dict(fields)

        try:
            confidence = float(_first_present(raw, CONFIDENCE_KEYS) or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        if not math.isfinite(confidence):
            confidence = 0.0
        confidence = min(max(confidence, 0.0), 1.0)

        if self._metrics is not None:
            self._metrics.record_confidence(definition.id.value, confidence)

        validation = self.catalog.validate(definition.id, fields)
        if not validation.valid and confidence < self.confidence_threshold:
            return self._fallback("low_confidence", message)

        return RouteDecision(
            service_id=definition.id,
            confidence=confidence,
            extracted_fields=fields,
            errors=validation.errors,
        )

    async def classify(
        self,
        message: str,
        conversation_history: Sequence[Any],
        completion_client: CompletionClient,
    ) -> Optional[RouteDecision]:
        """Classify a message.

        Returns:
            The routing decision, or None when no service applies

        Raises:
            CompletionError: The completion service kept failing
            DecisionParseError: The completion had no JSON object
        """
        raw = await self.cache.with_cache(
            message,
            CacheKind.ENDPOINT_DECISION,
            lambda: self._request_decision(message, conversation_history, completion_client),
        )
        decision = self.interpret(raw, message)
        if decision is not None:
            logger.info(
                "Message routed",
                service=decision.service_id.value,
                confidence=decision.confidence,
                fallback=decision.fallback,
                errors=len(decision.errors),
            )
        return decision

    async def execute(self, decision: RouteDecision, user_id: str, handlers: HandlerRegistry) -> ExecutionResult:
        """Run the handler registered for the decision's service."""
        handler = handlers.get(decision.service_id)
        result = await handler(dict(decision.extracted_fields), user_id)
        return ExecutionResult(service_id=decision.service_id, result=result)
