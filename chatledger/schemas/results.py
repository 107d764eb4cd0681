"""Result objects for best-effort subsystems (cache and metrics).

These operations never raise on persistence failures. The failure is logged
and reported through ``error`` so callers can observe it without having to
handle it.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class BestEffort(Generic[T]):
    """Outcome of an operation whose failure must not break the pipeline."""

    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a cache read. A backend error is reported as a miss."""

    hit: bool
    payload: Any = None
    error: Optional[str] = None
