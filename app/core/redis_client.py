"""
Shared async Redis client and a small JSON cache on top of it.

Redis only holds derived data here (the remote status catalog), so cache
helpers log and swallow Redis failures and callers fall back to the source.
"""
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_client: aioredis.Redis | None = None
_client_lock = asyncio.Lock()


def _redacted(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":****@")


async def get_redis() -> aioredis.Redis:
    """Lazily connected singleton with decoded responses"""
    global _client
    if _client is None:
        async with _client_lock:
            if _client is None:
                candidate = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
                await candidate.ping()
                _client = candidate
                logger.info("Redis connected", extra_data={"url": _redacted(settings.REDIS_URL)})
    return _client


async def close_redis() -> None:
    global _client
    if _client is None:
        return
    client, _client = _client, None
    await client.aclose()
    logger.info("Redis connection closed")


async def cache_get_json(key: str) -> Any | None:
    """Decoded value, or None when missing, unreadable or Redis is down"""
    try:
        redis = await get_redis()
        raw = await redis.get(key)
    except (RedisError, OSError) as exc:
        logger.warning("Cache read failed", extra_data={"key": key, "error": str(exc)})
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding corrupt cache entry", extra_data={"key": key})
        return None


async def cache_set_json(key: str, value: Any, ttl_seconds: int) -> bool:
    try:
        redis = await get_redis()
        await redis.setex(key, ttl_seconds, json.dumps(value, ensure_ascii=False))
    except (RedisError, OSError) as exc:
        logger.warning("Cache write failed", extra_data={"key": key, "error": str(exc)})
        return False
    return True
