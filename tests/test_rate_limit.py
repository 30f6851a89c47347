import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub.services.rate_limit import (
    MemoryRateLimitStore,
    RateLimitConfig,
    RateLimiter,
)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_limiter(strategy, requests=3, window=60, clock=None):
    clock = clock or FakeClock()
    config = RateLimitConfig(name="test", strategy=strategy, requests=requests, window=window)
    return RateLimiter(config, MemoryRateLimitStore(clock=clock), clock=clock), clock


def test_config_rejects_unknown_strategy_and_bad_values():
    with pytest.raises(ValueError):
        RateLimitConfig(name="x", strategy="leaky_bucket", requests=1, window=1)
    with pytest.raises(ValueError):
        RateLimitConfig(name="x", strategy="fixed_window", requests=0, window=1)


def test_config_from_mapping_defaults_to_fixed_window():
    config = RateLimitConfig.from_mapping("admin", {"requests": "5", "window": 30})
    assert config.strategy == "fixed_window"
    assert config.requests == 5
    assert config.window == 30.0


def test_fixed_window_blocks_then_resets_on_next_window():
    limiter, clock = make_limiter("fixed_window", clock=FakeClock(now=120.0))

    remaining = [limiter.check("ip:1").remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    clock.advance(10)
    blocked = limiter.check("ip:1")
    assert not blocked.allowed
    assert blocked.retry_after == 50
    assert blocked.headers()["Retry-After"] == "50"

    clock.advance(50)
    assert limiter.check("ip:1").allowed


def test_sliding_window_frees_capacity_as_requests_age_out():
    limiter, clock = make_limiter("sliding_window", requests=2, window=10)

    assert limiter.check("user:1").allowed
    clock.advance(4)
    assert limiter.check("user:1").allowed
    clock.advance(1)
    blocked = limiter.check("user:1")
    assert not blocked.allowed
    assert blocked.retry_after == 5

    clock.advance(5.5)
    result = limiter.check("user:1")
    assert result.allowed
    assert result.remaining == 0


def test_token_bucket_refills_one_token_per_interval():
    limiter, clock = make_limiter("token_bucket", requests=2, window=10)

    assert limiter.check("k").remaining == 1
    assert limiter.check("k").remaining == 0
    blocked = limiter.check("k")
    assert not blocked.allowed
    assert blocked.retry_after == 5

    clock.advance(5)
    assert limiter.check("k").allowed
    assert not limiter.check("k").allowed


def test_limits_are_tracked_per_identifier_and_can_be_reset():
    limiter, _ = make_limiter("fixed_window", requests=1)

    assert limiter.check("a").allowed
    assert limiter.check("b").allowed
    assert not limiter.check("a").allowed

    limiter.reset("a")
    assert limiter.check("a").allowed


def test_store_entries_expire():
    clock = FakeClock()
    store = MemoryRateLimitStore(clock=clock)
    store.set("one", {"count": 1}, ttl=5)
    store.set("two", {"count": 1}, ttl=50)

    clock.advance(10)

    assert store.get("one") is None
    assert store.get("two") == {"count": 1}
    store.set("three", {}, ttl=1)
    clock.advance(2)
    assert store.cleanup() == 1
    assert len(store) == 1
