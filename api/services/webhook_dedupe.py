"""
Webhook de-duplication — process each gateway event id at most once.

  - Claimed with Redis SET NX, expiring after WEBHOOK_EVENT_TTL_SECONDS
  - A redelivered event finds the key and is skipped
  - Redis errors fail open: the event is processed
"""

import logging

import redis.asyncio as aioredis

from config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Singleton Redis connection."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def claim_event(event_id: str) -> bool:
    """
    Claim a webhook event for processing.

    Returns:
        True if this delivery should be processed, False for a duplicate.
    """
    if not event_id:
        return True

    try:
        r = await get_redis()
        claimed = await r.set(
            f"webhook:event:{event_id}",
            "1",
            nx=True,
            ex=settings.webhook_event_ttl_seconds,
        )
    except aioredis.RedisError as e:
        logger.warning("Webhook de-dupe unavailable, processing %s anyway: %s", event_id, e)
        return True

    if not claimed:
        logger.info("Duplicate webhook event %s ignored", event_id)
        return False
    return True


async def release_event(event_id: str) -> None:
    """Forget a claim so the gateway's redelivery is processed again."""
    if not event_id:
        return
    try:
        r = await get_redis()
        await r.delete(f"webhook:event:{event_id}")
    except aioredis.RedisError as e:
        logger.warning("Could not release webhook event %s: %s", event_id, e)
