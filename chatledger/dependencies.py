"""Construction of the pipeline components.

Every store is built here and passed to the components that use it. The
backend of each store is chosen by the settings: ``memory`` for tests and
single-process runs, ``sql`` for the shared database, and ``redis`` for the
result cache.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.cache import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    ResultCache,
    SqlCacheBackend,
)
from chatledger.clock import Clock, utcnow
from chatledger.config import Settings
from chatledger.llm.client import CompletionClient, build_completion_client
from chatledger.logging_config import get_logger
from chatledger.metrics.prometheus import PipelineMetrics
from chatledger.metrics.recorder import InMemoryMetricsBackend, MetricsRecorder, SqlMetricsBackend
from chatledger.services.confirmation import (
    ConfirmationStore,
    InMemoryConfirmationBackend,
    SqlConfirmationBackend,
)
from chatledger.services.conversation_history import (
    ConversationHistoryStore,
    InMemoryHistoryBackend,
    SqlHistoryBackend,
)
from chatledger.services.conversation_state import (
    ConversationStateStore,
    InMemoryStateBackend,
    SqlStateBackend,
)
from chatledger.services.intent_router import HandlerRegistry, IntentRouter
from chatledger.services.maintenance import MaintenanceService
from chatledger.services.processing_queue import InMemoryQueueBackend, ProcessingQueue, SqlQueueBackend
from chatledger.services.retry_executor import RetryExecutor, RetryPolicy
from chatledger.services.service_catalog import default_catalog
from chatledger.worker import MessageProcessor

logger = get_logger(__name__)


@dataclass
class Pipeline:
    """Every wired component of one process."""

    cache: ResultCache
    retry: RetryExecutor
    states: ConversationStateStore
    confirmations: ConfirmationStore
    history: ConversationHistoryStore
    queue: ProcessingQueue
    recorder: MetricsRecorder
    router: IntentRouter
    maintenance: MaintenanceService
    processor: Optional[MessageProcessor] = None
    metrics: Optional[PipelineMetrics] = None


def create_redis_client(settings: Settings) -> Redis:
    """Create the Redis client used by the cache backend."""
    return Redis.from_url(
        settings.redis_url,
        max_connections=settings.redis_max_connections,
        decode_responses=True,
    )


def _build_cache_backend(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]],
    redis: Optional[Redis],
) -> CacheBackend:
    if settings.cache_backend == "memory":
        return InMemoryCacheBackend()
    if settings.cache_backend == "redis":
        return RedisCacheBackend(redis or create_redis_client(settings))
    if settings.cache_backend == "sql":
        return SqlCacheBackend(_require_sessions(session_factory, "cache"))
    raise ValueError(f"Unknown cache backend: {settings.cache_backend}")


def _require_sessions(
    session_factory: Optional[async_sessionmaker[AsyncSession]], component: str
) -> async_sessionmaker[AsyncSession]:
    if session_factory is None:
        raise ValueError(f"The sql backend of {component} needs a session factory")
    return session_factory


def build_pipeline(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis: Optional[Redis] = None,
    handlers: Optional[HandlerRegistry] = None,
    completion_client: Optional[CompletionClient] = None,
    clock: Clock = utcnow,
    registry: CollectorRegistry = REGISTRY,
) -> Pipeline:
    """Wire the pipeline described by the settings.

    The message processor is only built when handlers are given. Without an
    explicit completion client one is built from the provider settings.
    """
    if settings.storage_backend not in ("memory", "sql"):
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    use_sql = settings.storage_backend == "sql"
    if use_sql:
        session_factory = _require_sessions(session_factory, "storage")

    metrics = PipelineMetrics(registry) if settings.enable_metrics else None

    cache = ResultCache(
        _build_cache_backend(settings, session_factory, redis),
        default_ttl=settings.cache_ttl_seconds,
        clock=clock,
        metrics=metrics,
    )
    retry = RetryExecutor(
        RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        ),
        metrics=metrics,
    )
    states = ConversationStateStore(
        SqlStateBackend(session_factory) if use_sql else InMemoryStateBackend(),
        default_ttl=timedelta(seconds=settings.conversation_state_ttl_seconds),
        clock=clock,
    )
    confirmations = ConfirmationStore(
        SqlConfirmationBackend(session_factory) if use_sql else InMemoryConfirmationBackend(),
        ttl=timedelta(seconds=settings.confirmation_ttl_seconds),
        clock=clock,
    )
    history = ConversationHistoryStore(
        SqlHistoryBackend(session_factory) if use_sql else InMemoryHistoryBackend(),
        ttl=timedelta(seconds=settings.history_ttl_seconds),
        clock=clock,
    )
    queue = ProcessingQueue(
        SqlQueueBackend(session_factory) if use_sql else InMemoryQueueBackend(),
        max_attempts=settings.queue_max_attempts,
        clock=clock,
        metrics=metrics,
    )
    recorder = MetricsRecorder(
        SqlMetricsBackend(session_factory) if use_sql else InMemoryMetricsBackend(),
        clock=clock,
        prometheus=metrics,
    )
    router = IntentRouter(
        retry,
        cache,
        catalog=default_catalog,
        confidence_threshold=settings.router_confidence_threshold,
        history_turns=settings.router_history_turns,
        metrics=metrics,
    )
    maintenance = MaintenanceService(
        cache,
        states,
        confirmations,
        history,
        recorder,
        queue,
        queue_retention=timedelta(days=settings.queue_retention_days),
        metrics_retention_days=settings.metrics_retention_days,
    )

    pipeline = Pipeline(
        cache=cache,
        retry=retry,
        states=states,
        confirmations=confirmations,
        history=history,
        queue=queue,
        recorder=recorder,
        router=router,
        maintenance=maintenance,
        metrics=metrics,
    )

    if handlers is not None:
        pipeline.processor = MessageProcessor(
            queue=queue,
            router=router,
            states=states,
            confirmations=confirmations,
            history=history,
            recorder=recorder,
            retry=retry,
            handlers=handlers,
            completion_client=completion_client or build_completion_client(settings),
        )

    logger.info(
        "Pipeline built",
        storage_backend=settings.storage_backend,
        cache_backend=settings.cache_backend,
        processor=pipeline.processor is not None,
    )
    return pipeline
