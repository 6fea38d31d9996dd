"""Injectable time source for validation and defaults."""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching how timestamps are stored."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_clock() -> Clock:
    return utcnow
