"""
Redis cache layer — last-known-good snapshots of alert queries.

When the alert store is unreachable, ``GET /alerts`` may serve the most
recent snapshot stored here instead of failing. Every helper degrades to a
miss (``None`` / ``False``) when Redis is not configured or errors, so the
cache can never break the read path on its own.

Usage:
    from alerthub.app.core import cache

    key = cache.make_cache_key("alerts:query", filter.to_dict())
    await cache.cache_set(key, [a.to_dict() for a in alerts])
    cached = await cache.cache_get(key)
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from alerthub.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, created on first use
_redis_client: Optional[aioredis.Redis] = None


async def _get_redis() -> Optional[aioredis.Redis]:
    """Get or create async Redis client. ``None`` when caching is disabled."""
    global _redis_client
    if not settings.REDIS_URL:
        return None
    if _redis_client is None:
        try:
            _redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis configured: %s", settings.REDIS_URL.split("@")[-1])
        except Exception as e:
            logger.warning("Redis unavailable: %s — caching disabled", e)
            return None
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """Get a cached value by key. Returns None on miss or error."""
    client = await _get_redis()
    if not client:
        return None
    try:
        raw = await client.get(key)
        if raw is not None:
            return json.loads(raw)
    except Exception as e:
        logger.warning("Cache GET error for %s: %s", key, e)
    return None


async def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Set a cached value with optional TTL (seconds)."""
    client = await _get_redis()
    if not client:
        return False
    try:
        serialised = json.dumps(value, default=str)
        await client.set(key, serialised, ex=ttl or settings.REDIS_CACHE_TTL)
        return True
    except Exception as e:
        logger.warning("Cache SET error for %s: %s", key, e)
        return False


async def cache_ping() -> Optional[bool]:
    """True/False for reachable/unreachable; None when caching is disabled."""
    client = await _get_redis()
    if not client:
        return None
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Cache PING error: %s", e)
        return False


def make_cache_key(prefix: str, params: Any) -> str:
    """Deterministic cache key from query parameters."""
    raw = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.md5(raw.encode()).hexdigest()[:12]
    return f"{prefix}:{digest}"


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
