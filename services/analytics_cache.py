"""Redis read-through cache for analytics summaries.

Entries are keyed by scope: cache:analytics:{scope_key}. An entry carries
the watermark of the summary it was built from; if the store has moved past
that watermark the entry is treated as a miss, so a stale entry is never
served after its summary changed, even if an invalidation was lost.

Redis is optional. Without it (or when it errors) every read is a miss and
reads go to the store.
"""

import json
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from config import get_settings
from db.redis import get_redis
from models.schemas import AnalyticsSnapshot
from services.aggregation import AggregationEngine, scope_key_for
from utils.logging import get_logger
from utils.metrics import CACHE_HITS, CACHE_MISSES

logger = get_logger(__name__)

CACHE_PREFIX = "cache:analytics"
CACHE_TYPE = "analytics"

WatermarkLookup = Callable[[str], Awaitable[Optional[int]]]


def cache_key(scope_key: str) -> str:
    return f"{CACHE_PREFIX}:{scope_key}"


class AnalyticsCache:
    """Watermark-checked cache of AnalyticsSnapshot values.

    Args:
        latest_watermark: returns the store's current watermark for a scope
            (None if the scope has no summary)
        redis_getter: returns the Redis client, or None when Redis is off
        ttl: entry lifetime in seconds
    """

    def __init__(
        self,
        latest_watermark: WatermarkLookup,
        redis_getter: Callable[[], Optional[redis.Redis]] = get_redis,
        ttl: int | None = None,
    ):
        self._latest_watermark = latest_watermark
        self._redis_getter = redis_getter
        self.ttl = ttl if ttl is not None else get_settings().analytics_cache_ttl

    async def get(self, scope_key: str) -> AnalyticsSnapshot | None:
        redis_client = self._redis_getter()
        if redis_client is None:
            CACHE_MISSES.labels(cache_type=CACHE_TYPE, reason="disabled").inc()
            return None

        key = cache_key(scope_key)
        try:
            raw = await redis_client.get(key)
        except Exception as e:
            logger.warning(f"Cache read error for {key}: {e}")
            CACHE_MISSES.labels(cache_type=CACHE_TYPE, reason="error").inc()
            return None

        if not raw:
            CACHE_MISSES.labels(cache_type=CACHE_TYPE, reason="absent").inc()
            return None

        try:
            snapshot = AnalyticsSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            CACHE_MISSES.labels(cache_type=CACHE_TYPE, reason="corrupt").inc()
            await self.invalidate(scope_key)
            return None

        latest = await self._latest_watermark(scope_key)
        if latest is not None and snapshot.watermark < latest:
            logger.debug(
                f"Cache entry {key} at watermark {snapshot.watermark} is behind store ({latest})"
            )
            CACHE_MISSES.labels(cache_type=CACHE_TYPE, reason="stale").inc()
            await self.invalidate(scope_key)
            return None

        CACHE_HITS.labels(cache_type=CACHE_TYPE).inc()
        logger.debug(f"Cache hit: {key}")
        return snapshot

    async def set(self, snapshot: AnalyticsSnapshot) -> bool:
        redis_client = self._redis_getter()
        if redis_client is None:
            return False

        key = cache_key(snapshot.scope_key)
        try:
            await redis_client.setex(key, self.ttl, snapshot.model_dump_json())
            logger.debug(f"Cached {key} (watermark {snapshot.watermark}, ttl {self.ttl}s)")
            return True
        except Exception as e:
            logger.warning(f"Cache write error for {key}: {e}")
            return False

    async def invalidate(self, scope_key: str) -> None:
        """Drop an entry. Failures are logged, never raised."""
        redis_client = self._redis_getter()
        if redis_client is None:
            return

        key = cache_key(scope_key)
        try:
            await redis_client.delete(key)
            logger.debug(f"Invalidated {key}")
        except Exception as e:
            # The watermark check on read still keeps the stale entry from being served
            logger.warning(f"Cache invalidation error for {key}: {e}")


class AnalyticsReader:
    """Read path for request handlers: cache first, then the summary store."""

    def __init__(self, engine: AggregationEngine, cache: AnalyticsCache):
        self.engine = engine
        self.cache = cache

    async def get_analytics(
        self, owner_id: str, category: str | None = None
    ) -> AnalyticsSnapshot | None:
        scope_key = scope_key_for(owner_id, category)
        cached = await self.cache.get(scope_key)
        if cached is not None:
            return cached

        snapshot = await self.engine.get_summary(owner_id, category)
        if snapshot is not None:
            await self.cache.set(snapshot)
        return snapshot
