"""Clock helpers.

Timestamps are stored as naive UTC datetimes. Components accept a `clock`
callable so tests can control time.
"""

from datetime import UTC, datetime
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)
