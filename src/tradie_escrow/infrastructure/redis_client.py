"""Redis client and the Redis-backed notification outbox.

Transition records are pushed onto a list (LPUSH) and popped from the other
end (BRPOP), so notifications are delivered in commit order by whichever
dispatcher process is consuming.

Usage:
    from tradie_escrow.infrastructure.redis_client import init_redis, RedisOutbox

    redis = await init_redis(settings.redis_url)
    outbox = RedisOutbox(redis, key=settings.redis_outbox_key)
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis

from tradie_escrow.domain.models import TransitionRecord
from tradie_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis(redis_url: str) -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    _redis_client = aioredis.from_url(redis_url, decode_responses=True)
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


class RedisOutbox:
    """TransitionOutbox stored in a Redis list."""

    def __init__(self, client: aioredis.Redis, key: str = "escrow:notifications") -> None:
        self._client = client
        self._key = key

    async def publish(self, record: TransitionRecord) -> None:
        await self._client.lpush(self._key, json.dumps(record.to_dict()))

    async def consume(self, timeout: float = 1.0) -> TransitionRecord | None:
        # BRPOP takes whole seconds; 0 would block forever.
        result = await self._client.brpop([self._key], timeout=max(1, int(timeout)))
        if result is None:
            return None
        _, raw = result
        try:
            return TransitionRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError) as exc:
            logger.error("outbox.malformed_record", key=self._key, error=str(exc))
            return None

