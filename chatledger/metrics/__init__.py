"""Metrics module for observability."""

from chatledger.metrics.prometheus import PipelineMetrics
from chatledger.metrics.recorder import (
    InMemoryMetricsBackend,
    MetricsRecorder,
    MetricsSummary,
    SqlMetricsBackend,
)

__all__ = [
    "InMemoryMetricsBackend",
    "MetricsRecorder",
    "MetricsSummary",
    "PipelineMetrics",
    "SqlMetricsBackend",
]
