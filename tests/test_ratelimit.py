"""Unit tests for core/ratelimit.py.

Covers:
- parse_rate() turns limits-style strings into (amount, window_seconds)
- Fixed-window semantics: allow up to the limit, deny with retry_after, reset
  strictly after the window
- Independent keys, purge_expired(), reset()
- Atomic check-and-increment under thread contention
- KeyedLocks cleans up after itself
"""

from __future__ import annotations

import threading

import pytest
from conftest import FakeMonotonic

from core.ratelimit import KeyedLocks, RateLimiter, parse_rate


class TestParseRate:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("5/minute", (5, 60)),
            ("1/day", (1, 86400)),
            ("10/hour", (10, 3600)),
            ("5/5minute", (5, 300)),
        ],
    )
    def test_known_rates(self, text: str, expected: tuple[int, int]) -> None:
        assert parse_rate(text) == expected

    def test_garbage_raises(self) -> None:
        with pytest.raises(ValueError):
            parse_rate("often")


class TestFixedWindow:
    def test_allows_up_to_limit_then_denies(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        results = [limiter.allow("code.verify:ip:1.2.3.0", 5, 60) for _ in range(6)]
        assert results == [True, True, True, True, True, False]

    def test_denial_carries_retry_after(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        limiter.check("codegen:42", 1, 86400)
        monotonic.advance(400)
        decision = limiter.check("codegen:42", 1, 86400)
        assert decision.allowed is False
        assert decision.retry_after == 86000
        assert decision.key == "codegen:42"

    def test_window_resets_strictly_after_expiry(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        assert limiter.allow("k", 1, 60)
        monotonic.advance(60)
        # Exactly at window_reset_at the old window still applies.
        assert not limiter.allow("k", 1, 60)
        monotonic.advance(0.001)
        assert limiter.allow("k", 1, 60)
        assert limiter.get_record("k").count == 1

    def test_keys_are_independent(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        assert limiter.allow("code.redeem:1", 1, 60)
        assert limiter.allow("code.redeem:2", 1, 60)
        assert not limiter.allow("code.redeem:1", 1, 60)

    def test_non_positive_limit_is_a_programming_error(self) -> None:
        limiter = RateLimiter()
        with pytest.raises(ValueError):
            limiter.check("k", 0, 60)
        with pytest.raises(ValueError):
            limiter.check("k", 1, 0)

    def test_get_record_returns_a_copy(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        limiter.allow("k", 3, 60)
        record = limiter.get_record("k")
        record.count = 99
        assert limiter.get_record("k").count == 1
        assert limiter.get_record("missing") is None

    def test_release_gives_a_slot_back(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        assert limiter.allow("codegen:42", 1, 86400)
        limiter.release("codegen:42")
        assert limiter.get_record("codegen:42").count == 0
        assert limiter.allow("codegen:42", 1, 86400)
        assert not limiter.allow("codegen:42", 1, 86400)

    def test_release_ignores_missing_and_stale_keys(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        limiter.release("missing")
        assert limiter.get_record("missing") is None
        limiter.allow("k", 1, 60)
        monotonic.advance(61)
        limiter.release("k")
        assert limiter.get_record("k").count == 1


class TestHousekeeping:
    def test_purge_expired_drops_only_stale_windows(self, monotonic: FakeMonotonic) -> None:
        limiter = RateLimiter(clock=monotonic)
        limiter.allow("short", 1, 10)
        limiter.allow("long", 1, 1000)
        monotonic.advance(11)
        assert limiter.purge_expired() == 1
        assert len(limiter) == 1
        assert limiter.get_record("short") is None

    def test_reset_one_key_and_all(self) -> None:
        limiter = RateLimiter()
        limiter.allow("a", 1, 60)
        limiter.allow("b", 1, 60)
        limiter.reset("a")
        assert limiter.allow("a", 1, 60)
        limiter.reset()
        assert len(limiter) == 0


class TestConcurrency:
    def test_racing_threads_never_exceed_limit(self) -> None:
        limiter = RateLimiter()
        allowed: list[bool] = []
        guard = threading.Lock()
        start = threading.Barrier(40)

        def worker() -> None:
            start.wait()
            ok = limiter.allow("code.redeem:7", 10, 60)
            with guard:
                allowed.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert allowed.count(True) == 10
        assert limiter.get_record("code.redeem:7").count == 40

    def test_keyed_locks_serialise_and_clean_up(self) -> None:
        locks = KeyedLocks()
        inside = 0
        peak = 0
        guard = threading.Lock()

        def worker() -> None:
            nonlocal inside, peak
            with locks.hold("AB12CD34"):
                with guard:
                    inside += 1
                    peak = max(peak, inside)
                with guard:
                    inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert peak == 1
        assert len(locks) == 0
