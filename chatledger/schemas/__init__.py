"""Pydantic schemas and result types."""

from chatledger.schemas.results import BestEffort, CacheLookup
from chatledger.schemas.routing import (
    ExecutionResult,
    RouteDecision,
    ServiceId,
    ValidationResult,
)
from chatledger.schemas.transaction import TransactionCandidate

__all__ = [
    "BestEffort",
    "CacheLookup",
    "ExecutionResult",
    "RouteDecision",
    "ServiceId",
    "TransactionCandidate",
    "ValidationResult",
]
