from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authguard.logging import get_logger
from authguard.storage.errors import StoreError, StoreErrorCategory
from authguard.storage.models import RateLimitWindow

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for shared sliding-window rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding window over a sorted set: prune, count, conditionally insert.
    # ARGV: now_ms, window_ms, limit, member, record (1/0)
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local record = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  allowed = 1
  if record == 1 then
    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, window)
    count = count + 1
  end
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = -1
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {allowed, count, oldest_score}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before routing rate limits to it."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str, tenant_id: Optional[str] = None) -> str:
        """Hash rate keys so caller-supplied text cannot collide across subjects."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        tenant_prefix = f"{tenant_id}:" if tenant_id else ""
        return f"rate:{tenant_prefix}{digest}"

    async def sliding_window(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        now: datetime,
        *,
        record: bool = True,
        tenant_id: Optional[str] = None,
    ) -> RateLimitWindow:
        safe_key = self._normalize_rate_key(key, tenant_id)
        now_ms = int(now.timestamp() * 1000)
        try:
            allowed, count, oldest_ms = await self._sliding_window(
                keys=[safe_key],
                args=[
                    now_ms,
                    int(window_seconds * 1000),
                    limit,
                    f"{now_ms}:{uuid.uuid4().hex}",
                    1 if record else 0,
                ],
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("redis_rate_limit_unavailable", error=str(exc))
            raise StoreError(
                "rate limit backend unavailable", StoreErrorCategory.UNAVAILABLE
            ) from exc
        except RedisError as exc:
            logger.error("redis_rate_limit_failed", error=str(exc))
            raise StoreError("rate limit backend error", StoreErrorCategory.INTERNAL) from exc

        oldest_ms = int(oldest_ms)
        oldest = (
            datetime.fromtimestamp(oldest_ms / 1000, tz=timezone.utc)
            if oldest_ms >= 0
            else None
        )
        return RateLimitWindow(allowed=bool(int(allowed)), count=int(count), oldest=oldest)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
