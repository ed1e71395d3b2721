"""
core/ratelimit.py -- Keyed fixed-window rate limiter and per-key locks.

RateLimiter is the only owner of RateLimitRecord state. Callers choose the key
(e.g. "codegen:42", "code.redeem:17") and pass the limit and window on every
call, so one limiter instance serves every action class.

Window semantics:
  - First request for a key, or any request strictly after window_reset_at:
    the counter restarts at 1 with window_reset_at = now + window. Allowed.
  - Otherwise the counter increments and the request is allowed iff the
    pre-increment count was below the limit.

Concurrency: the read-decide-write sequence runs under one mutex, so two
threads racing for the last slot cannot both be allowed. Contention is a
dict lookup and two integer writes -- a single lock is cheaper than a lock per
key here.

Scaling limitation: state is process-local. Several independent worker
processes each enforce their own counters; a deployment that needs a global
limit must put a shared counter service behind the same check() contract.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from limits import parse

from core.models import RateLimitDecision, RateLimitRecord


def parse_rate(text: str) -> tuple[int, int]:
    """Turn a limits-style string ("5/minute", "1/day") into (amount, window_seconds)."""
    item = parse(text)
    return item.amount, item.get_expiry()


class RateLimiter:
    """In-process keyed counter with an atomic check-and-increment.

    Usage:
        limiter = RateLimiter()
        if not limiter.allow("codegen:42", limit=1, window_seconds=86400):
            ...  # reject with RATE_LIMITED
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        return self.check(key, limit, window_seconds).allowed

    def check(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        """Count one request against key and report whether it is allowed.

        Raises ValueError for a non-positive limit or window -- those are
        programming errors, not request outcomes.
        """
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")

        with self._lock:
            now = self._clock()
            record = self._records.get(key)
            if record is None or now > record.window_reset_at:
                record = RateLimitRecord(count=1, window_reset_at=now + window_seconds)
                self._records[key] = record
                return RateLimitDecision(
                    allowed=True,
                    count=1,
                    limit=limit,
                    reset_at=record.window_reset_at,
                    key=key,
                )

            allowed = record.count < limit
            record.count += 1
            retry_after = 0 if allowed else max(1, math.ceil(record.window_reset_at - now))
            return RateLimitDecision(
                allowed=allowed,
                count=record.count,
                limit=limit,
                reset_at=record.window_reset_at,
                retry_after=retry_after,
                key=key,
            )

    def release(self, key: str) -> None:
        """Give back one counted request for key inside its current window.

        For callers that take a slot before an operation that can still fail.
        A record whose window has already passed is left alone.
        """
        with self._lock:
            record = self._records.get(key)
            if record is not None and record.count > 0 and self._clock() <= record.window_reset_at:
                record.count -= 1

    def get_record(self, key: str) -> RateLimitRecord | None:
        """Return a copy of the current record for key, or None."""
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            return RateLimitRecord(count=record.count, window_reset_at=record.window_reset_at)

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when key is None."""
        with self._lock:
            if key is None:
                self._records.clear()
            else:
                self._records.pop(key, None)

    def purge_expired(self) -> int:
        """Evict records whose window has passed. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, r in self._records.items() if now > r.window_reset_at]
            for k in expired:
                del self._records[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class KeyedLocks:
    """Hand out one lock per key so work on a single resource is serialised.

    Locks are reference counted and dropped once nobody holds or waits on
    them, so the map does not grow with every code ever touched.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
