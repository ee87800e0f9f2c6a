"""
Shared utility functions for the Lifeworld engine modules.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite round-trips drop tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value) -> datetime:
    """Parse an ISO string (or pass through a datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def hours_between(later: datetime, earlier: datetime) -> float:
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 3600.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def clamp_density(value: float) -> int:
    """Semantic density is an integer in [0, 100]."""
    return int(max(0, min(100, int(value))))


class RingBuffer(Generic[T]):
    """
    Fixed-capacity history buffer.

    Appending beyond capacity silently evicts the oldest entry. Iteration and
    ``latest()`` follow insertion order (oldest first / newest first).
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"RingBuffer capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items: deque = deque(maxlen=capacity)

    def append(self, item: T) -> None:
        self._items.append(item)

    def latest(self, limit: Optional[int] = None) -> List[T]:
        """Newest-first slice of at most ``limit`` entries."""
        items = list(reversed(self._items))
        if limit is None:
            return items
        return items[:max(0, limit)]

    def last(self) -> Optional[T]:
        return self._items[-1] if self._items else None

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __bool__(self) -> bool:
        return bool(self._items)
