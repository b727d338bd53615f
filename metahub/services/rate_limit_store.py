"""
Fixed-window counters behind one small interface: ``key -> (count, reset_at)``.

The in-memory store is per process and lost on restart. The database store
shares counters between instances through ``rate_limit_counters``.
"""
from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from metahub.persistence.models import RateLimitCounter, ensure_utc, now_utc
from metahub.persistence.upsert import upsert


@dataclass(frozen=True)
class Window:
    count: int
    reset_at: datetime

    def allowed(self, limit: int) -> bool:
        return self.count <= limit

    def retry_after(self, now: datetime) -> float:
        return max((self.reset_at - now).total_seconds(), 0.0)


class RateLimitStore(Protocol):
    def hit(self, key: str, window_seconds: int) -> Window:
        """Count one hit against ``key`` and return the window after counting."""

    def peek(self, key: str) -> Window | None:
        ...

    def reset(self, key: str) -> None:
        ...


class InMemoryRateLimitStore:
    def __init__(self, clock: Callable[[], datetime] = now_utc) -> None:
        self._clock = clock
        self._windows: dict[str, Window] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int) -> Window:
        now = self._clock()
        with self._lock:
            current = self._windows.get(key)
            if current is None or current.reset_at <= now:
                current = Window(count=1, reset_at=now + timedelta(seconds=window_seconds))
            else:
                current = Window(count=current.count + 1, reset_at=current.reset_at)
            self._windows[key] = current
            if len(self._windows) > 10_000:
                self._evict(now)
            return current

    def peek(self, key: str) -> Window | None:
        now = self._clock()
        with self._lock:
            current = self._windows.get(key)
            if current is None or current.reset_at <= now:
                return None
            return current

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _evict(self, now: datetime) -> None:
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]


class DatabaseRateLimitStore:
    """Counters in SQL. Each hit is one upsert plus one conditional reset."""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = now_utc) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def hit(self, key: str, window_seconds: int) -> Window:
        now = self._clock()
        reset_at = now + timedelta(seconds=window_seconds)
        db = self._session_factory()
        try:
            # Expired window: restart it before counting
            db.execute(
                update(RateLimitCounter)
                .where(RateLimitCounter.key == key, RateLimitCounter.reset_at <= now)
                .values(count=0, reset_at=reset_at)
                .execution_options(synchronize_session=False)
            )
            upsert(
                db,
                RateLimitCounter,
                {"key": key, "count": 1, "reset_at": reset_at},
                ("key",),
                lambda excluded: {"count": RateLimitCounter.count + 1},
            )
            row = db.execute(
                select(RateLimitCounter.count, RateLimitCounter.reset_at).where(RateLimitCounter.key == key)
            ).one()
            db.commit()
            return Window(count=row.count, reset_at=ensure_utc(row.reset_at))
        finally:
            db.close()

    def peek(self, key: str) -> Window | None:
        now = self._clock()
        db = self._session_factory()
        try:
            row = db.get(RateLimitCounter, key)
            if row is None or ensure_utc(row.reset_at) <= now:
                return None
            return Window(count=row.count, reset_at=ensure_utc(row.reset_at))
        finally:
            db.close()

    def reset(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.execute(delete(RateLimitCounter).where(RateLimitCounter.key == key))
            db.commit()
        finally:
            db.close()


def build_rate_limit_store(backend: str, session_factory: Callable[[], Session]) -> RateLimitStore:
    if backend == "database":
        return DatabaseRateLimitStore(session_factory)
    return InMemoryRateLimitStore()
