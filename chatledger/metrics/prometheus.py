"""Pipeline metrics for Prometheus.

Counters and histograms for message processing latency, cache efficiency,
retries, routing fallbacks and queue depth. Every collector is registered on
an injectable registry so tests can use a private ``CollectorRegistry``.
"""

from typing import Mapping

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class PipelineMetrics:
    """Prometheus collectors for the message pipeline."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize pipeline metrics.

        Args:
            registry: Prometheus registry to use
        """
        self.registry = registry

        # -------------------------------------------------------------------------
        # Message Processing
        # -------------------------------------------------------------------------
        self.message_duration = Histogram(
            "chatledger_message_duration_seconds",
            "Time spent processing one inbound message",
            labelnames=["kind", "status"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=registry,
        )

        self.messages_total = Counter(
            "chatledger_messages_total",
            "Total processed messages",
            labelnames=["kind", "status"],
            registry=registry,
        )

        # -------------------------------------------------------------------------
        # Result Cache
        # -------------------------------------------------------------------------
        self.cache_hits = Counter(
            "chatledger_cache_hits_total",
            "Result cache hits",
            labelnames=["kind"],
            registry=registry,
        )

        self.cache_misses = Counter(
            "chatledger_cache_misses_total",
            "Result cache misses",
            labelnames=["kind"],
            registry=registry,
        )

        # -------------------------------------------------------------------------
        # Retries and Routing
        # -------------------------------------------------------------------------
        self.retry_attempts = Counter(
            "chatledger_retry_attempts_total",
            "Retries performed by the retry executor",
            labelnames=["operation"],
            registry=registry,
        )

        self.route_fallbacks = Counter(
            "chatledger_route_fallbacks_total",
            "Decisions replaced by the default query decision",
            labelnames=["reason"],
            registry=registry,
        )

        self.route_confidence = Histogram(
            "chatledger_route_confidence",
            "Distribution of classifier confidence scores",
            labelnames=["service"],
            buckets=[0.3, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0],
            registry=registry,
        )

        # -------------------------------------------------------------------------
        # Processing Queue
        # -------------------------------------------------------------------------
        self.queue_items = Gauge(
            "chatledger_queue_items",
            "Queued messages by status",
            labelnames=["status"],
            registry=registry,
        )

    def observe_message(self, kind: str, success: bool, duration_seconds: float) -> None:
        status = "success" if success else "error"
        self.message_duration.labels(kind=kind, status=status).observe(duration_seconds)
        self.messages_total.labels(kind=kind, status=status).inc()

    def record_cache_hit(self, kind: str) -> None:
        self.cache_hits.labels(kind=kind).inc()

    def record_cache_miss(self, kind: str) -> None:
        self.cache_misses.labels(kind=kind).inc()

    def record_retry(self, operation: str) -> None:
        self.retry_attempts.labels(operation=operation).inc()

    def record_route_fallback(self, reason: str) -> None:
        self.route_fallbacks.labels(reason=reason).inc()

    def record_confidence(self, service: str, score: float) -> None:
        self.route_confidence.labels(service=service).observe(score)

    def update_queue_stats(self, counts: Mapping[str, int]) -> None:
        for status, count in counts.items():
            self.queue_items.labels(status=status).set(count)
