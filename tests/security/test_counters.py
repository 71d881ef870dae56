"""Tests for the in-memory counter store."""

import threading

import pytest

from tableguard.security.counters import InMemoryCounterStore
from tableguard.security.exceptions import CounterStoreError, CounterStoreTimeout


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def ticker():
    return FakeMonotonic()


@pytest.fixture
def store(ticker):
    return InMemoryCounterStore(clock=ticker)


class TestIncrement:
    def test_counts_up(self, store):
        assert store.increment("k") == 1
        assert store.increment("k") == 2
        assert store.increment("k", amount=3) == 5
        assert store.get("k") == 5

    def test_ttl_set_on_creation_only(self, store, ticker):
        store.increment("bucket", ttl=60)
        ticker.value += 50
        store.increment("bucket", ttl=60)
        ticker.value += 15

        # Expired 60s after creation even though it was hit at +50s
        assert store.get("bucket") is None
        assert store.increment("bucket", ttl=60) == 1

    def test_no_ttl_never_expires(self, store, ticker):
        store.increment("forever")
        ticker.value += 10**6
        assert store.get("forever") == 1


class TestAddIfAbsent:
    def test_first_writer_wins(self, store):
        assert store.add_if_absent("alert_sent", "evt-1", ttl=60) is True
        assert store.add_if_absent("alert_sent", "evt-2", ttl=60) is False
        assert store.get("alert_sent") == "evt-1"

    def test_available_again_after_expiry(self, store, ticker):
        store.add_if_absent("alert_sent", True, ttl=60)
        ticker.value += 61
        assert store.add_if_absent("alert_sent", True, ttl=60) is True


class TestAppend:
    def test_keeps_newest_items(self, store):
        for i in range(5):
            items = store.append("recent", i, max_items=3)

        assert items == [2, 3, 4]
        assert store.get("recent") == [2, 3, 4]

    def test_returns_copy(self, store):
        items = store.append("recent", "a")
        items.append("mutated")
        assert store.get("recent") == ["a"]


class TestMisc:
    def test_set_get_delete(self, store):
        store.set("baseline", {"x": 1})
        assert store.get("baseline") == {"x": 1}
        store.delete("baseline")
        assert store.get("baseline", "missing") == "missing"

    def test_clear(self, store):
        store.set("a", 1)
        store.set("b", 2)
        store.clear()
        assert len(store) == 0

    def test_lock_timeout(self):
        store = InMemoryCounterStore(timeout_seconds=0.01)
        store._lock.acquire()
        try:
            with pytest.raises(CounterStoreTimeout):
                store.increment("k")
        finally:
            store._lock.release()

    def test_timeout_is_a_store_error(self):
        assert issubclass(CounterStoreTimeout, CounterStoreError)

    def test_concurrent_increments(self):
        store = InMemoryCounterStore(timeout_seconds=5.0)

        def worker():
            for _ in range(500):
                store.increment("shared")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("shared") == 4000
