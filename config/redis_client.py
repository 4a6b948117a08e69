"""
config/redis_client.py
Async Redis client for rate limiting and payout run locks.
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


def payout_run_lock_key(period_start: str, period_end: str) -> str:
    return f"payout_run:{period_start}:{period_end}"


class RedisCache:
    """Helper class for common Redis locking and throttling patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Payout Run Locking ───────────────────────────────────
    async def lock_payout_run(self, period_start: str, period_end: str, owner: str) -> bool:
        """
        Atomic run lock using SET NX (set if not exists).
        Returns True if lock acquired, False if a run for the period is in flight.
        """
        result = await self.client.set(
            payout_run_lock_key(period_start, period_end),
            owner,
            ex=settings.REDIS_PAYOUT_RUN_LOCK_TTL,
            nx=True,  # Only set if key doesn't exist
        )
        return result is True

    async def release_payout_run(self, period_start: str, period_end: str) -> None:
        await self.client.delete(payout_run_lock_key(period_start, period_end))

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
