"""Time source shared by the token codec and the services."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)
