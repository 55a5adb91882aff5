from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.storage.models import RateLimitWindow
from authguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter:
    """Sliding-window limiter keyed by arbitrary strings.

    Only allowed attempts are recorded, so the ``limit + 1``-th call inside a
    window is rejected without extending the window. Uses Redis when a cache
    is configured and the principal store otherwise.
    """

    def __init__(
        self,
        store,
        clock: Optional[Clock] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.cache = cache

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        decision = await self.check(key, limit, window_seconds)
        return decision.allowed

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        return await self._evaluate(key, limit, window_seconds, record=True)

    async def peek(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Report what ``check`` would decide without recording an attempt."""
        return await self._evaluate(key, limit, window_seconds, record=False)

    async def _evaluate(
        self, key: str, limit: int, window_seconds: int, *, record: bool
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True, remaining=limit)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        now = self.clock.now()
        if self.cache:
            window = await self.cache.sliding_window(
                key, limit, window_seconds, now, record=record
            )
        else:
            window_start = now - timedelta(seconds=window_seconds)
            if record:
                window = self.store.record_rate_limit_attempt(
                    key, limit=limit, window_start=window_start, now=now
                )
            else:
                window = self.store.peek_rate_limit(
                    key, limit=limit, window_start=window_start
                )
        decision = self._decision(window, limit, window_seconds, now)
        if record and not decision.allowed:
            logger.info(
                "rate_limit_exceeded",
                key=key,
                limit=limit,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision

    @staticmethod
    def _decision(
        window: RateLimitWindow, limit: int, window_seconds: int, now
    ) -> RateLimitDecision:
        remaining = max(0, limit - window.count)
        if window.allowed:
            return RateLimitDecision(allowed=True, remaining=remaining)
        retry_after = window_seconds
        if window.oldest is not None:
            frees_at = window.oldest + timedelta(seconds=window_seconds)
            retry_after = max(1, math.ceil((frees_at - now).total_seconds()))
        return RateLimitDecision(
            allowed=False, remaining=0, retry_after_seconds=retry_after
        )
