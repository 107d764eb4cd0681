"""Time helpers shared by the stores."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC now, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
