"""Tests for the watermark-checked analytics cache."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from models.schemas import AnalyticsSnapshot, SummaryMetrics
from services.aggregation import AggregationEngine
from services.analytics_cache import AnalyticsCache, AnalyticsReader, cache_key
from tests.factories import DecisionFactory, OutcomeFactory


def _snapshot(watermark: int, scope_key: str = "owner:u1", average: float = 3.0) -> AnalyticsSnapshot:
    return AnalyticsSnapshot(
        scope_key=scope_key,
        owner_id="u1",
        version=1,
        watermark=watermark,
        metrics=SummaryMetrics(outcome_count=1, satisfaction_sum=average, average_satisfaction=average),
        updated_at=datetime(2026, 3, 2, 9, 0, 0),
    )


def _cache(redis, store_watermark):
    lookup = AsyncMock(return_value=store_watermark)
    return AnalyticsCache(lookup, redis_getter=lambda: redis, ttl=60)


class TestAnalyticsCache:
    @pytest.mark.asyncio
    async def test_hit_when_watermark_current(self, mock_redis_with_data):
        data = {}
        cache = _cache(mock_redis_with_data(data), store_watermark=7)
        await cache.set(_snapshot(7))

        cached = await cache.get("owner:u1")

        assert cached == _snapshot(7)
        assert cache_key("owner:u1") in data

    @pytest.mark.asyncio
    async def test_stale_entry_is_a_miss_and_dropped(self, mock_redis_with_data):
        """Should never serve an entry older than the stored summary."""
        data = {}
        cache = _cache(mock_redis_with_data(data), store_watermark=9)
        await cache.set(_snapshot(7))

        assert await cache.get("owner:u1") is None
        assert cache_key("owner:u1") not in data

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, mock_redis_with_data):
        data = {cache_key("owner:u1"): "{not json"}
        cache = _cache(mock_redis_with_data(data), store_watermark=1)

        assert await cache.get("owner:u1") is None
        assert data == {}

    @pytest.mark.asyncio
    async def test_without_redis_every_read_misses(self):
        cache = _cache(None, store_watermark=1)

        assert await cache.set(_snapshot(1)) is False
        assert await cache.get("owner:u1") is None

    @pytest.mark.asyncio
    async def test_redis_errors_are_misses(self):
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.setex = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = _cache(redis, store_watermark=1)

        assert await cache.set(_snapshot(1)) is False
        assert await cache.get("owner:u1") is None

    @pytest.mark.asyncio
    async def test_invalidation_errors_are_swallowed(self):
        """Should log and continue when Redis rejects the delete."""
        redis = AsyncMock()
        redis.delete = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = _cache(redis, store_watermark=1)

        await cache.invalidate("owner:u1")

        redis.delete.assert_awaited_once_with(cache_key("owner:u1"))


class TestAnalyticsReader:
    @pytest.mark.asyncio
    async def test_reads_through_and_populates_cache(self, session_maker, clock, mock_redis_with_data):
        data = {}
        engine = AggregationEngine(session_maker, clock=clock)
        cache = AnalyticsCache(engine.get_watermark, redis_getter=lambda: mock_redis_with_data(data), ttl=60)
        engine.cache = cache
        reader = AnalyticsReader(engine, cache)
        decision = await DecisionFactory.create(session_maker, owner_id="u1")
        outcome = await OutcomeFactory.create(session_maker, decision, satisfaction=5.0)
        await engine.apply_outcome_event(outcome.id, outcome.sequence)

        first = await reader.get_analytics("u1")

        assert first.metrics.average_satisfaction == 5.0
        assert cache_key("owner:u1") in data

    @pytest.mark.asyncio
    async def test_summary_change_invalidates_cached_entry(self, session_maker, clock, mock_redis_with_data):
        """Should serve the new summary right after an outcome is applied."""
        data = {}
        engine = AggregationEngine(session_maker, clock=clock)
        cache = AnalyticsCache(engine.get_watermark, redis_getter=lambda: mock_redis_with_data(data), ttl=60)
        engine.cache = cache
        reader = AnalyticsReader(engine, cache)
        decision = await DecisionFactory.create(session_maker, owner_id="u1")
        first = await OutcomeFactory.create(session_maker, decision, satisfaction=5.0)
        await engine.apply_outcome_event(first.id, first.sequence)
        await reader.get_analytics("u1")

        second = await OutcomeFactory.create(session_maker, decision, satisfaction=1.0)
        await engine.apply_outcome_event(second.id, second.sequence)

        latest = await reader.get_analytics("u1")
        assert latest.metrics.outcome_count == 2
        assert latest.watermark == second.sequence

    @pytest.mark.asyncio
    async def test_unknown_scope_returns_none(self, session_maker, clock):
        engine = AggregationEngine(session_maker, clock=clock)
        reader = AnalyticsReader(engine, AnalyticsCache(engine.get_watermark, redis_getter=lambda: None, ttl=60))

        assert await reader.get_analytics("nobody") is None
