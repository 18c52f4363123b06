"""
Rate Limiting

Daily per-user, per-provider call quotas:
- Free tier: 10/day for chat providers, 5/day for vision and mistral
- Premium tier: 100/day and 50/day respectively

Counting is behind a small counter interface. The default counter lives in
process memory (a soft throttle that resets on restart); a Redis counter
shares the count across instances.
"""

from __future__ import annotations
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import redis.asyncio as redis

from app.core.config import Config, config
from app.database import FirestoreDB, db

logger = logging.getLogger("functions.rate_limit")

DAY_SECONDS = 24 * 60 * 60

FREE_LIMITS = {
    "openai": 10,
    "deepseek": 10,
    "vision": 5,
    "mistral": 5,
}

PREMIUM_LIMITS = {
    "openai": 100,
    "deepseek": 100,
    "vision": 50,
    "mistral": 50,
}

PREMIUM_PLAN_TYPES = {"premium_monthly", "premium_yearly"}


# =============================================================================
# COUNTERS
# =============================================================================

class QuotaCounter(ABC):
    """Counts calls per key inside a rolling reset window."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> int:
        """Add one call and return the count inside the current window."""

    async def close(self) -> None:
        pass


@dataclass
class _Window:
    count: int = 0
    started_at: float = field(default_factory=time.time)


class InMemoryQuotaCounter(QuotaCounter):
    """
    Process-local counter.

    All counts are dropped once a full window has passed since the last
    global reset; each key also resets a window after its own first call.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._last_reset = clock()
        self._lock = asyncio.Lock()

    async def increment(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            now = self._clock()

            if now - self._last_reset > window_seconds:
                self._windows.clear()
                self._last_reset = now

            window = self._windows.get(key)
            if window is None or now - window.started_at > window_seconds:
                window = _Window(started_at=now)
                self._windows[key] = window

            window.count += 1
            return window.count


class RedisQuotaCounter(QuotaCounter):
    """Shared counter. INCR and EXPIRE NX run in one MULTI/EXEC on every call."""

    def __init__(self, url: Optional[str] = None, prefix: str = "quota:", client: Optional[redis.Redis] = None):
        self._redis = client if client is not None else redis.Redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    async def increment(self, key: str, window_seconds: int) -> int:
        name = f"{self._prefix}{key}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(name)
            pipe.expire(name, window_seconds, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        await self._redis.aclose()


def build_counter(cfg: Config = config) -> QuotaCounter:
    if cfg.redis_url:
        logger.info("Using Redis quota counter")
        return RedisQuotaCounter(cfg.redis_url)
    return InMemoryQuotaCounter()


# =============================================================================
# QUOTA TRACKER
# =============================================================================

class QuotaTracker:
    """Decides whether a caller may make another call to a provider."""

    def __init__(
        self,
        counter: Optional[QuotaCounter] = None,
        store: Optional[FirestoreDB] = None,
        cfg: Config = config,
        window_seconds: int = DAY_SECONDS,
    ):
        self.counter = counter or build_counter(cfg)
        self.store = store or db
        self._config = cfg
        self.window_seconds = window_seconds

    def is_premium(self, uid: str) -> bool:
        """Read the subscription record on every check."""
        try:
            record = self.store.get_subscription(uid)
        except Exception as e:
            logger.error(f"Subscription lookup failed for {uid}: {e}")
            return False
        return bool(record) and record.get("type") in PREMIUM_PLAN_TYPES

    def limit_for(self, provider: str, premium: bool) -> int:
        limits = PREMIUM_LIMITS if premium else FREE_LIMITS
        return limits.get(provider, limits["openai"])

    async def check(self, uid: str, provider: str) -> bool:
        count = await self.counter.increment(f"{uid}:{provider}", self.window_seconds)
        premium = self.is_premium(uid)
        limit = self.limit_for(provider, premium)

        if not self._config.quota_enforced_for(provider):
            logger.info(f"Quota for {uid}/{provider}: {count}/{limit} (not enforced)")
            return True

        if count > limit:
            logger.warning(f"Quota exceeded for {uid}/{provider}: {count}/{limit}")
            return False

        return True

    async def close(self) -> None:
        await self.counter.close()
