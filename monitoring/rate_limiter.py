"""
============================================================================
UPTIME SENTINEL - SLIDING WINDOW RATE LIMITER
============================================================================
Sliding-window log limiter guarding the on-demand trigger interfaces
(ping now, dead-link scan, manual pass) and the alert reminder cadence.

A window is the list of timestamps of ADMITTED calls for one
(bucket, scope, identity) key. A call is admitted iff, after evicting
timestamps older than the window, fewer than ``max_count`` remain.
Denied calls are not recorded.

Counter stores
--------------
MemoryCounterStore   single process; evict/count/record under a per-key
                     asyncio.Lock
RedisCounterStore    shared across processes; one Lua script round trip
                     (ZREMRANGEBYSCORE → ZCARD → ZADD → EXPIRE)

When the store is unavailable the limiter fails OPEN and logs a warning.

License: MIT
============================================================================
"""

import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, NamedTuple, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.constants import Buckets, RateLimitScope
from config.settings import RateLimitBackend, RateLimitSettings, RateRule
from exceptions import RateLimitExceededError, StorageUnavailableError
from utils.helpers import KeyedLocks
from utils.logger import get_logger


logger = get_logger("RateLimiter")


# ============================================================================
# DECISION
# ============================================================================

@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate-limit check."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: float
    bucket: str
    scope: Optional[RateLimitScope] = None
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        """Standard ``X-RateLimit-*`` response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, int(self.retry_after + 0.999)))
        return headers


class WindowState(NamedTuple):
    allowed: bool
    count: int
    oldest: Optional[float]


# ============================================================================
# COUNTER STORES
# ============================================================================

class CounterStore(ABC):
    """Storage for sliding-window logs."""

    backend: str = "abstract"

    @abstractmethod
    async def hit(self, key: str, now: float, window: float, max_count: int) -> WindowState:
        """Evict, count and (if admitted) record ``now`` atomically."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the window for ``key``."""

    async def purge_idle(self, now: float) -> int:
        """Drop windows with no live entries. Returns how many were dropped."""
        return 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryCounterStore(CounterStore):
    """
    In-process store: ``key → (window, deque[timestamps])`` plus one
    lock per key around the evict/count/record step. Purging skips keys
    that a caller holds or is waiting on.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[float, Deque[float]]] = {}
        self._locks = KeyedLocks()

    async def hit(self, key: str, now: float, window: float, max_count: int) -> WindowState:
        async with self._locks.hold(key):
            entries = self._windows[key][1] if key in self._windows else deque()
            self._windows[key] = (window, entries)

            cutoff = now - window
            while entries and entries[0] <= cutoff:
                entries.popleft()

            if len(entries) >= max_count:
                return WindowState(False, len(entries), entries[0] if entries else None)

            entries.append(now)
            return WindowState(True, len(entries), entries[0])

    async def reset(self, key: str) -> None:
        async with self._locks.hold(key):
            self._windows.pop(key, None)

    async def purge_idle(self, now: float) -> int:
        idle = [
            key for key, (window, entries) in self._windows.items()
            if not entries or entries[-1] <= now - window
        ]
        purged = 0
        for key in idle:
            if self._locks.is_held(key):
                continue
            del self._windows[key]
            purged += 1
        return purged

    def __len__(self) -> int:
        return len(self._windows)


SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_count = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= max_count then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {0, count, oldest[2] or false}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, count + 1, oldest[2]}
"""


class RedisCounterStore(CounterStore):
    """
    Shared store on Redis sorted sets. Keys expire after one window,
    so idle windows are garbage collected by Redis itself.
    """

    backend = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client
        self._script = client.register_script(SLIDING_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, timeout: float = 2.0) -> "RedisCounterStore":
        client = aioredis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client)

    async def hit(self, key: str, now: float, window: float, max_count: int) -> WindowState:
        member = f"{now:.6f}-{uuid.uuid4().hex}"
        try:
            allowed, count, oldest = await self._script(
                keys=[key],
                args=[now, window, max_count, member],
            )
        except RedisError as e:
            raise StorageUnavailableError(
                f"Redis counter store unavailable: {e}",
                backend=self.backend,
                cause=e,
            )
        return WindowState(
            bool(int(allowed)),
            int(count),
            float(oldest) if oldest else None,
        )

    async def reset(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            raise StorageUnavailableError(
                f"Redis counter store unavailable: {e}",
                backend=self.backend,
                cause=e,
            )

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning(f"[RateLimiter] Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def build_counter_store(settings: RateLimitSettings) -> CounterStore:
    """Construct the configured counter store."""
    if settings.backend == RateLimitBackend.REDIS:
        logger.info("[RateLimiter] Using Redis counter store")
        return RedisCounterStore.from_url(settings.redis_url, timeout=settings.redis_timeout)
    logger.info("[RateLimiter] Using in-memory counter store")
    return MemoryCounterStore()


# ============================================================================
# RATE LIMITER
# ============================================================================

class SlidingWindowRateLimiter:
    """
    Per-bucket, per-identity sliding-window limiter.

    Parameters
    ----------
    settings : RateLimitSettings
        Bucket policies and key prefix.
    store : CounterStore
        Backing store; constructed once per process and injected.
    clock : callable, optional
        Returns epoch seconds. Injected in tests.
    """

    def __init__(
        self,
        settings: RateLimitSettings,
        store: CounterStore,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self._clock = clock
        self._degraded_count = 0

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    async def check(
        self,
        bucket: str,
        identity: str,
        rule: Optional[RateRule] = None,
        scope: RateLimitScope = RateLimitScope.USER,
    ) -> RateLimitDecision:
        """
        Check and, if admitted, record one call for ``identity``.

        Parameters
        ----------
        bucket : str
            Bucket name, e.g. ``"ping"``.
        identity : str
            Actor id or client IP.
        rule : RateRule, optional
            Explicit allowance; defaults to the bucket policy for ``scope``.
        scope : RateLimitScope
            Identity dimension, part of the storage key.
        """
        now = self._clock()
        rule = rule or self._default_rule(bucket, scope)

        if not self.settings.enabled or rule is None:
            return self._unlimited(bucket, scope, now)

        key = self._key(bucket, scope, identity)
        try:
            state = await self.store.hit(key, now, rule.window_seconds, rule.max_count)
        except StorageUnavailableError as e:
            self._degraded_count += 1
            logger.warning(
                f"[RateLimiter] Store unavailable, allowing {bucket}/{scope.value}:{identity} "
                f"(fail open): {e.message}"
            )
            return RateLimitDecision(
                allowed=True,
                remaining=rule.max_count,
                limit=rule.max_count,
                reset_at=now + rule.window_seconds,
                retry_after=0.0,
                bucket=bucket,
                scope=scope,
                degraded=True,
            )

        reset_at = (state.oldest + rule.window_seconds) if state.oldest is not None else now + rule.window_seconds
        decision = RateLimitDecision(
            allowed=state.allowed,
            remaining=max(0, rule.max_count - state.count),
            limit=rule.max_count,
            reset_at=reset_at,
            retry_after=0.0 if state.allowed else max(0.0, reset_at - now),
            bucket=bucket,
            scope=scope,
        )

        if not decision.allowed:
            logger.info(
                f"[RateLimiter] ✗ {bucket}/{scope.value}:{identity} denied "
                f"({state.count}/{rule.max_count}), retry in {decision.retry_after:.0f}s"
            )
        return decision

    async def check_composite(
        self,
        bucket: str,
        ip: Optional[str] = None,
        user_id: Optional[str] = None,
        plan: Optional[str] = None,
    ) -> RateLimitDecision:
        """
        Check the IP rule and the plan-tiered user rule of ``bucket``.

        Failure of either fails the whole check; the returned decision
        names the exhausted scope. The user window is not charged when
        the IP check already failed.
        """
        policy = self.settings.policy(bucket)
        decisions = []

        if ip and policy is not None and policy.ip is not None:
            ip_decision = await self.check(bucket, ip, policy.ip, RateLimitScope.IP)
            if not ip_decision.allowed:
                return ip_decision
            decisions.append(ip_decision)

        if user_id and policy is not None:
            user_rule = policy.rule_for_plan(plan)
            if user_rule is not None:
                user_decision = await self.check(bucket, str(user_id), user_rule, RateLimitScope.USER)
                if not user_decision.allowed:
                    return user_decision
                decisions.append(user_decision)

        if not decisions:
            return self._unlimited(bucket, None, self._clock())

        return min(decisions, key=lambda d: d.remaining)

    async def enforce(
        self,
        bucket: str,
        ip: Optional[str] = None,
        user_id: Optional[str] = None,
        plan: Optional[str] = None,
    ) -> RateLimitDecision:
        """
        Like ``check_composite`` but raises when denied.

        Raises
        ------
        RateLimitExceededError
            Carrying retry-after seconds and the exhausted scope.
        """
        decision = await self.check_composite(bucket, ip=ip, user_id=user_id, plan=plan)
        if not decision.allowed:
            raise RateLimitExceededError(
                f"Rate limit exceeded for {bucket} ({decision.scope.value if decision.scope else 'unknown'})",
                retry_after=decision.retry_after,
                limit=decision.limit,
                bucket=bucket,
                scope=decision.scope.value if decision.scope else None,
                reset_at=decision.reset_at,
            )
        return decision

    async def reset(
        self,
        bucket: str,
        identity: str,
        scope: Optional[RateLimitScope] = None,
    ) -> None:
        """Clear the window(s) for ``identity`` immediately."""
        scopes = [scope] if scope is not None else list(RateLimitScope)
        for item in scopes:
            await self.store.reset(self._key(bucket, item, identity))
        logger.info(f"[RateLimiter] Reset {bucket} window for {identity}")

    async def purge_idle(self) -> int:
        """Garbage-collect idle windows."""
        purged = await self.store.purge_idle(self._clock())
        if purged:
            logger.debug(f"[RateLimiter] Purged {purged} idle windows")
        return purged

    def get_stats(self) -> Dict[str, object]:
        return {
            "backend": self.store.backend,
            "enabled": self.settings.enabled,
            "degraded_checks": self._degraded_count,
            "buckets": sorted(self.settings.buckets),
        }

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _key(self, bucket: str, scope: RateLimitScope, identity: str) -> str:
        return f"{self.settings.key_prefix}{bucket}:{scope.value}:{identity}"

    def _default_rule(self, bucket: str, scope: RateLimitScope) -> Optional[RateRule]:
        policy = self.settings.policy(bucket)
        if policy is None:
            return None
        if scope == RateLimitScope.IP:
            return policy.ip
        return policy.rule_for_plan(None)

    @staticmethod
    def _unlimited(bucket: str, scope: Optional[RateLimitScope], now: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            remaining=0,
            limit=0,
            reset_at=now,
            retry_after=0.0,
            bucket=bucket,
            scope=scope,
        )


__all__ = [
    "Buckets",
    "CounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
    "RateLimitDecision",
    "SlidingWindowRateLimiter",
    "build_counter_store",
]
