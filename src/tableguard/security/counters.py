"""Time-boxed counter store.

Counters back the alert thresholds and the behavioral tracker. They are
ephemeral: everything here can be rebuilt from the event store.

Every operation must complete within ``timeout_seconds``; a store that cannot
acquire its lock in time raises :class:`CounterStoreTimeout` so callers on the
request path never stall on a slow cache.
"""

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from .exceptions import CounterStoreTimeout


class CounterStore(Protocol):
    """Concurrency-safe key/value store with TTLs."""

    def increment(self, key: str, amount: int = 1, ttl: float | None = None) -> int: ...

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def add_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool: ...

    def append(
        self, key: str, value: Any, max_items: int | None = None, ttl: float | None = None
    ) -> list[Any]: ...

    def delete(self, key: str) -> None: ...


class InMemoryCounterStore:
    """Lock-protected in-process counter store with TTL expiry.

    Safe for multi-threaded hosts. Multi-process deployments should supply a
    shared store implementing :class:`CounterStore` instead.

    Usage:
        store = InMemoryCounterStore()
        store.increment("alert_count:xss_attempt:medium:1942", ttl=900)
        if store.add_if_absent("alert_sent:xss_attempt:medium:1942", True, ttl=900):
            ...  # first breach in this bucket
    """

    def __init__(
        self,
        timeout_seconds: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize store.

        Args:
            timeout_seconds: Maximum time to wait for the store lock
            clock: Monotonic seconds source used for TTL expiry
        """
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (expires_at or None, value)
        self._data: dict[str, tuple[float | None, Any]] = {}

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self.timeout_seconds):
            raise CounterStoreTimeout(
                f"Counter store lock not acquired within {self.timeout_seconds}s"
            )

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _live(self, key: str) -> tuple[float | None, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, _ = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def increment(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        """Increment a counter, creating it with ``ttl`` when absent.

        The TTL is only set on creation so a bucket counter expires with its
        bucket rather than being extended by every hit.
        """
        self._acquire()
        try:
            entry = self._live(key)
            if entry is None:
                value = amount
                self._data[key] = (self._expiry(ttl), value)
            else:
                expires_at, current = entry
                value = int(current) + amount
                self._data[key] = (expires_at, value)
            return value
        finally:
            self._lock.release()

    def get(self, key: str, default: Any = None) -> Any:
        self._acquire()
        try:
            entry = self._live(key)
            return default if entry is None else entry[1]
        finally:
            self._lock.release()

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._acquire()
        try:
            self._data[key] = (self._expiry(ttl), value)
        finally:
            self._lock.release()

    def add_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Set key only if it does not exist.

        Returns:
            True if the key was created by this call
        """
        self._acquire()
        try:
            if self._live(key) is not None:
                return False
            self._data[key] = (self._expiry(ttl), value)
            return True
        finally:
            self._lock.release()

    def append(
        self, key: str, value: Any, max_items: int | None = None, ttl: float | None = None
    ) -> list[Any]:
        """Append to a list value, keeping only the newest ``max_items``.

        Returns:
            Copy of the list after the append
        """
        self._acquire()
        try:
            entry = self._live(key)
            items = [] if entry is None else list(entry[1])
            items.append(value)
            if max_items is not None and len(items) > max_items:
                items = items[-max_items:]
            self._data[key] = (self._expiry(ttl), items)
            return list(items)
        finally:
            self._lock.release()

    def delete(self, key: str) -> None:
        self._acquire()
        try:
            self._data.pop(key, None)
        finally:
            self._lock.release()

    def clear(self) -> None:
        self._acquire()
        try:
            self._data.clear()
        finally:
            self._lock.release()

    def __len__(self) -> int:
        return len(self._data)
