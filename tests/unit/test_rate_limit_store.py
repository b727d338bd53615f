from datetime import datetime, timedelta, timezone

from metahub.services.rate_limit_store import (
    DatabaseRateLimitStore,
    InMemoryRateLimitStore,
    build_rate_limit_store,
)


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def test_in_memory_window_counts_and_resets():
    clock = Clock()
    store = InMemoryRateLimitStore(clock)

    assert store.hit("k", 60).count == 1
    window = store.hit("k", 60)
    assert window.count == 2
    assert window.allowed(2)
    assert not store.hit("k", 60).allowed(2)
    assert window.retry_after(clock.now) == 60.0

    clock.advance(61)
    assert store.peek("k") is None
    assert store.hit("k", 60).count == 1


def test_in_memory_keys_are_independent_and_resettable():
    store = InMemoryRateLimitStore(Clock())
    store.hit("a", 60)
    store.hit("a", 60)
    store.hit("b", 60)
    assert store.peek("a").count == 2
    assert store.peek("b").count == 1
    store.reset("a")
    assert store.peek("a") is None


def test_database_store_shares_counters(session_factory):
    clock = Clock()
    first = DatabaseRateLimitStore(session_factory, clock)
    second = DatabaseRateLimitStore(session_factory, clock)

    assert first.hit("ai:thread-1", 3600).count == 1
    assert second.hit("ai:thread-1", 3600).count == 2
    assert first.peek("ai:thread-1").count == 2

    clock.advance(3601)
    assert first.peek("ai:thread-1") is None
    window = second.hit("ai:thread-1", 3600)
    assert window.count == 1
    assert window.reset_at == clock.now + timedelta(seconds=3600)

    first.reset("ai:thread-1")
    assert second.peek("ai:thread-1") is None


def test_build_rate_limit_store(session_factory):
    assert isinstance(build_rate_limit_store("memory", session_factory), InMemoryRateLimitStore)
    assert isinstance(build_rate_limit_store("database", session_factory), DatabaseRateLimitStore)
