"""Schemas for intent routing decisions."""

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class ServiceId(str, Enum):
    """Closed set of operations a message can be routed to."""
    TRANSACTION = "transaction"
    SCHEDULE = "schedule"
    QUERY = "query"


class RouteDecision(BaseModel):
    """Output of intent classification for one message."""
    service_id: ServiceId = Field(..., description="Catalog entry the message was routed to")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Classifier confidence")
    extracted_fields: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(
        default_factory=list,
        description="Validation errors kept on a high-confidence decision",
    )
    fallback: bool = Field(default=False, description="True when the default query decision was substituted")


class ValidationResult(BaseModel):
    """Outcome of validating extracted fields against a service schema."""
    valid: bool
    errors: List[str] = Field(default_factory=list)


class ExecutionResult(BaseModel):
    """Handler output paired with the service that produced it."""
    service_id: ServiceId
    result: Any = None
