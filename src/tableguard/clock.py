"""Time helpers.

Timestamps are naive UTC datetimes throughout, matching what the event store
persists. Components take an injectable ``clock`` so tests can pin time.
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_epoch(moment: datetime) -> float:
    """Seconds since the epoch for a naive UTC datetime."""
    return moment.replace(tzinfo=UTC).timestamp()
