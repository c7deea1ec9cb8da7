# =============================================================================
# Rate Limiter — Redis Sliding Window per API Key
# =============================================================================
#
# Each request adds a member to a Redis sorted set scored by its timestamp.
# Members older than the window are pruned before counting, so the limit
# holds over any 60-second span.
#
# If Redis is unreachable the request is allowed and a warning is logged.
#
# Uses Redis db 2 (db 0/1 belong to Celery).
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid

import redis.asyncio as aioredis
from fastapi import HTTPException

from payrollpro.config import settings
from payrollpro.db.models import ApiKey

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

_redis_client: aioredis.Redis | None = None


def _get_rate_limit_redis() -> aioredis.Redis:
    """Lazily create and cache the async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.rate_limit_redis_url,
            decode_responses=True,
        )
    return _redis_client


async def record_request(redis_key: str, now: float | None = None) -> int:
    """
    Prune the window, count it, and record this request.

    Returns:
        The number of requests already in the window, excluding this one.
    """
    now = time.time() if now is None else now
    r = _get_rate_limit_redis()

    pipe = r.pipeline()
    pipe.zremrangebyscore(redis_key, 0, now - WINDOW_SECONDS)
    pipe.zcard(redis_key)
    # Unique member so two requests in the same microsecond both count
    pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
    pipe.expire(redis_key, WINDOW_SECONDS + 10)
    results = await pipe.execute()
    return results[1]


async def check_rate_limit(api_key: ApiKey | None) -> None:
    """
    Enforce the key's requests-per-minute limit.

    Limit = api_key.rate_limit_rpm, else settings.rate_limit_rpm.
    No-op when auth is disabled (api_key is None) or Redis is down.

    Raises:
        HTTPException 429: With a Retry-After header.
    """
    if api_key is None:
        return

    limit = api_key.rate_limit_rpm or settings.rate_limit_rpm

    try:
        current = await record_request(f"ratelimit:apikey:{api_key.id}")
    except Exception as e:
        logger.warning(
            "Rate limiter unavailable (Redis error): %s. Allowing request.", e,
        )
        return

    if current >= limit:
        logger.info(
            "Rate limit hit for key %s (%d/%d rpm)",
            api_key.key_prefix, current, limit,
        )
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Limit: {limit} requests/minute.",
            headers={"Retry-After": str(WINDOW_SECONDS)},
        )
