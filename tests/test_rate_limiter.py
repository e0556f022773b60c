from __future__ import annotations

import asyncio
import math
import os
import uuid
from typing import Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from config.constants import Buckets, RateLimitScope
from config.settings import BucketPolicy, RateLimitSettings, RateRule
from exceptions import RateLimitExceededError, StorageUnavailableError
from monitoring.rate_limiter import (
    SLIDING_WINDOW_LUA,
    CounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    SlidingWindowRateLimiter,
    WindowState,
)
from tests.conftest import FakeClock


FIVE_PER_MINUTE = RateRule(max_count=5, window_seconds=60)


class BrokenStore(CounterStore):
    backend = "broken"

    async def hit(self, key: str, now: float, window: float, max_count: int) -> WindowState:
        raise StorageUnavailableError("store offline", backend=self.backend)

    async def reset(self, key: str) -> None:
        raise StorageUnavailableError("store offline", backend=self.backend)


def _settings(**buckets: BucketPolicy) -> RateLimitSettings:
    return RateLimitSettings(enabled=True, backend="memory", buckets=buckets)


async def test_sixth_call_in_window_is_denied(limiter: SlidingWindowRateLimiter) -> None:
    decisions = [await limiter.check("demo", "user-1", FIVE_PER_MINUTE) for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]

    denied = decisions[-1]
    assert denied.retry_after == pytest.approx(60)
    assert denied.headers()["Retry-After"] == "60"
    assert denied.headers()["X-RateLimit-Remaining"] == "0"


async def test_window_slides(limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
    for _ in range(5):
        assert (await limiter.check("demo", "user-1", FIVE_PER_MINUTE)).allowed
        clock.advance(10)

    # oldest call was 50s ago
    assert not (await limiter.check("demo", "user-1", FIVE_PER_MINUTE)).allowed

    clock.advance(10)
    decision = await limiter.check("demo", "user-1", FIVE_PER_MINUTE)
    assert decision.allowed
    assert decision.remaining == 0


async def test_denied_calls_are_not_recorded(limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
    for _ in range(5):
        await limiter.check("demo", "user-1", FIVE_PER_MINUTE)

    clock.advance(30)
    for _ in range(10):
        assert not (await limiter.check("demo", "user-1", FIVE_PER_MINUTE)).allowed

    clock.advance(30)
    decision = await limiter.check("demo", "user-1", FIVE_PER_MINUTE)
    assert decision.allowed
    assert decision.remaining == 4


async def test_identities_have_separate_windows(limiter: SlidingWindowRateLimiter) -> None:
    for _ in range(5):
        await limiter.check("demo", "user-1", FIVE_PER_MINUTE)

    assert not (await limiter.check("demo", "user-1", FIVE_PER_MINUTE)).allowed
    assert (await limiter.check("demo", "user-2", FIVE_PER_MINUTE)).allowed
    assert (await limiter.check("other", "user-1", FIVE_PER_MINUTE)).allowed


async def test_concurrent_calls_never_exceed_the_limit(limiter: SlidingWindowRateLimiter) -> None:
    decisions = await asyncio.gather(
        *(limiter.check("demo", "user-1", FIVE_PER_MINUTE) for _ in range(50))
    )

    assert sum(d.allowed for d in decisions) == 5


async def test_composite_ip_denial_does_not_charge_user(clock: FakeClock) -> None:
    settings = _settings(
        ping=BucketPolicy(
            ip=RateRule(max_count=2, window_seconds=3600),
            users={"free": RateRule(max_count=3, window_seconds=3600)},
        )
    )
    limiter = SlidingWindowRateLimiter(settings, MemoryCounterStore(), clock=clock)

    for _ in range(2):
        assert (await limiter.check_composite(Buckets.PING, ip="203.0.113.9", user_id="u1")).allowed

    denied = await limiter.check_composite(Buckets.PING, ip="203.0.113.9", user_id="u1")
    assert not denied.allowed
    assert denied.scope == RateLimitScope.IP

    # user window still has one slot left from another address
    decision = await limiter.check_composite(Buckets.PING, ip="198.51.100.7", user_id="u1")
    assert decision.allowed
    assert decision.remaining == 0


async def test_user_quota_depends_on_plan(clock: FakeClock) -> None:
    settings = _settings(
        crawl=BucketPolicy(
            users={
                "free": RateRule(max_count=1, window_seconds=3600),
                "pro": RateRule(max_count=3, window_seconds=3600),
            }
        )
    )
    limiter = SlidingWindowRateLimiter(settings, MemoryCounterStore(), clock=clock)

    assert (await limiter.check_composite(Buckets.CRAWL, user_id="free-user", plan="free")).allowed
    assert not (await limiter.check_composite(Buckets.CRAWL, user_id="free-user", plan="free")).allowed

    pro = [await limiter.check_composite(Buckets.CRAWL, user_id="pro-user", plan="pro") for _ in range(4)]
    assert [d.allowed for d in pro] == [True, True, True, False]

    # unknown tiers fall back to the free allowance
    assert (await limiter.check_composite(Buckets.CRAWL, user_id="odd-user", plan="platinum")).limit == 1


async def test_enforce_raises_with_retry_after(clock: FakeClock) -> None:
    settings = _settings(ping=BucketPolicy(users={"free": RateRule(max_count=1, window_seconds=600)}))
    limiter = SlidingWindowRateLimiter(settings, MemoryCounterStore(), clock=clock)

    await limiter.enforce(Buckets.PING, user_id="u1")
    clock.advance(100)

    with pytest.raises(RateLimitExceededError) as exc_info:
        await limiter.enforce(Buckets.PING, user_id="u1")

    error = exc_info.value
    assert error.retry_after == 500
    assert error.scope == "user"
    assert error.bucket == Buckets.PING
    assert error.limit == 1


async def test_store_outage_fails_open(rate_limit_settings: RateLimitSettings, clock: FakeClock) -> None:
    limiter = SlidingWindowRateLimiter(rate_limit_settings, BrokenStore(), clock=clock)

    decision = await limiter.check("demo", "user-1", FIVE_PER_MINUTE)

    assert decision.allowed
    assert decision.degraded
    assert limiter.get_stats()["degraded_checks"] == 1


async def test_reset_clears_every_scope(limiter: SlidingWindowRateLimiter) -> None:
    for scope in RateLimitScope:
        for _ in range(5):
            await limiter.check("demo", "203.0.113.9", FIVE_PER_MINUTE, scope=scope)

    await limiter.reset("demo", "203.0.113.9")

    for scope in RateLimitScope:
        assert (await limiter.check("demo", "203.0.113.9", FIVE_PER_MINUTE, scope=scope)).allowed


async def test_unknown_bucket_and_disabled_limiter_are_unlimited(clock: FakeClock) -> None:
    limiter = SlidingWindowRateLimiter(_settings(), MemoryCounterStore(), clock=clock)
    assert (await limiter.check_composite("nope", ip="203.0.113.9", user_id="u1")).allowed

    disabled = SlidingWindowRateLimiter(
        RateLimitSettings(enabled=False, backend="memory"),
        MemoryCounterStore(),
        clock=clock,
    )
    results = [await disabled.check("demo", "u1", RateRule(max_count=1, window_seconds=60)) for _ in range(3)]
    assert all(d.allowed for d in results)


async def test_idle_windows_are_purged(clock: FakeClock) -> None:
    store = MemoryCounterStore()
    limiter = SlidingWindowRateLimiter(_settings(), store, clock=clock)

    await limiter.check("demo", "a", FIVE_PER_MINUTE)
    await limiter.check("demo", "b", RateRule(max_count=5, window_seconds=3600))
    clock.advance(120)

    assert await limiter.purge_idle() == 1
    assert len(store) == 1


async def test_purge_keeps_windows_a_caller_is_waiting_on(clock: FakeClock) -> None:
    store = MemoryCounterStore()
    await store.hit("k", clock(), 60, 5)
    clock.advance(120)

    async with store._locks.hold("k"):
        waiter = asyncio.create_task(store.hit("k", clock(), 60, 5))
        await asyncio.sleep(0)
        assert await store.purge_idle(clock()) == 0

    state = await waiter
    assert state.allowed
    assert state.count == 1
    assert len(store._locks) == 0
    assert await store.purge_idle(clock()) == 0


# ============================================================================
# REDIS COUNTER STORE
# ============================================================================

def _score(value: float) -> str:
    return f"{value:.17g}"


class ScriptedRedis:
    """Redis client double replaying the sliding-window script over in-memory sorted sets."""

    def __init__(self, replies: Optional[List[list]] = None, fail: bool = False) -> None:
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.expiry: Dict[str, int] = {}
        self.scripts: List[str] = []
        self.replies = replies
        self.fail = fail
        self.closed = False

    def register_script(self, script: str):
        self.scripts.append(script)

        async def run(keys: List[str], args: list) -> list:
            if self.fail:
                raise RedisConnectionError("connection refused")
            if self.replies is not None:
                return self.replies.pop(0)
            return self._sliding_window(keys[0], *args)

        return run

    def _sliding_window(self, key: str, now: float, window: float, max_count: int, member: str) -> list:
        zset = self.zsets.setdefault(key, {})
        for existing, score in list(zset.items()):
            if score <= now - window:
                del zset[existing]
        count = len(zset)
        if count >= max_count:
            return [0, count, _score(min(zset.values())) if zset else None]
        zset[member] = now
        self.expiry[key] = math.ceil(window)
        return [1, count + 1, _score(min(zset.values()))]

    async def delete(self, key: str) -> int:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return 1 if self.zsets.pop(key, None) is not None else 0

    async def ping(self) -> bool:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return True

    async def aclose(self) -> None:
        self.closed = True


async def test_redis_store_admits_until_the_window_is_full(rate_limit_settings: RateLimitSettings, clock: FakeClock) -> None:
    client = ScriptedRedis()
    limiter = SlidingWindowRateLimiter(rate_limit_settings, RedisCounterStore(client), clock=clock)

    decisions = []
    for _ in range(6):
        decisions.append(await limiter.check("demo", "user-1", FIVE_PER_MINUTE))
        clock.advance(5)

    assert client.scripts == [SLIDING_WINDOW_LUA]
    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[-1].retry_after == pytest.approx(35)
    assert list(client.expiry.values()) == [60]
    assert all(len(zset) == 5 for zset in client.zsets.values())


async def test_redis_store_decodes_script_replies() -> None:
    store = RedisCounterStore(ScriptedRedis(replies=[[0, 3, "1000.25"], [0, 0, None], [1, 1, "1000"]]))

    assert await store.hit("k", 1010.0, 60, 3) == WindowState(False, 3, 1000.25)
    assert await store.hit("k", 1010.0, 60, 0) == WindowState(False, 0, None)
    assert await store.hit("k", 1000.0, 60, 3) == WindowState(True, 1, 1000.0)


async def test_redis_outage_fails_open(rate_limit_settings: RateLimitSettings, clock: FakeClock) -> None:
    store = RedisCounterStore(ScriptedRedis(fail=True))
    limiter = SlidingWindowRateLimiter(rate_limit_settings, store, clock=clock)

    decision = await limiter.check("demo", "user-1", FIVE_PER_MINUTE)

    assert decision.allowed
    assert decision.degraded
    assert not await store.ping()
    with pytest.raises(StorageUnavailableError) as exc_info:
        await store.reset("k")
    assert exc_info.value.details["backend"] == "redis"


@pytest.mark.skipif(not os.environ.get("SENTINEL_TEST_REDIS_URL"), reason="SENTINEL_TEST_REDIS_URL not set")
async def test_sliding_window_script_on_real_redis() -> None:
    store = RedisCounterStore.from_url(os.environ["SENTINEL_TEST_REDIS_URL"])
    key = f"sentinel-test:{uuid.uuid4().hex}"
    try:
        assert (await store.hit(key, 1000.0, 60, 2)).allowed
        assert (await store.hit(key, 1010.0, 60, 2)).allowed
        assert await store.hit(key, 1020.0, 60, 2) == WindowState(False, 2, 1000.0)
        assert await store.hit(key, 1061.0, 60, 2) == WindowState(True, 2, 1010.0)
    finally:
        await store.reset(key)
        await store.close()
