"""
Redis client singleton for request throttling.

HTTP-triggered reconciliation sweeps hit the Stripe API once per pending
booking. A short-lived Redis key per subject (user or barbershop) keeps a
burst of page loads from turning into a burst of Stripe calls.

Redis Key Patterns:
    - reconciliation:throttle:user:{user_id}
    - reconciliation:throttle:barbershop:{barbershop_id}
"""

import logging
from functools import lru_cache

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.config import get_settings

logger = logging.getLogger(__name__)

THROTTLE_KEY_PREFIX = "reconciliation:throttle"


@lru_cache
def get_redis_client() -> "redis.Redis[str]":
    """
    Get cached Redis client instance.

    Uses a bounded connection pool with retry on timeout and periodic health
    checks. The client is created lazily; no connection is opened until the
    first command.
    """
    settings = get_settings()

    client = redis.from_url(
        settings.REDIS_URL,
        max_connections=20,
        decode_responses=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )

    logger.info(
        f"Redis client initialized: {settings.REDIS_URL} "
        f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
    )
    return client


async def acquire_throttle(subject: str, ttl_seconds: int) -> bool:
    """
    Try to take the throttle slot for a subject.

    Args:
        subject: Logical subject, e.g. "user:<uuid>"
        ttl_seconds: How long the slot stays taken

    Returns:
        True if the caller may proceed, False if a previous call is still
        inside the window. Returns True when Redis is unreachable so a cache
        outage never blocks reconciliation.
    """
    key = f"{THROTTLE_KEY_PREFIX}:{subject}"
    try:
        acquired = await get_redis_client().set(key, "1", nx=True, ex=ttl_seconds)
    except RedisError as e:
        logger.warning(f"Redis throttle unavailable for {subject}, proceeding: {e}")
        return True

    if not acquired:
        logger.debug(f"Throttled: {subject} (window={ttl_seconds}s)")
    return bool(acquired)


async def close_redis_client() -> None:
    """Close Redis connection gracefully during application shutdown."""
    try:
        client = get_redis_client()
        await client.aclose()
        logger.info("Redis client closed")
    except RedisError as e:
        logger.warning(f"Error closing Redis client: {e}")
