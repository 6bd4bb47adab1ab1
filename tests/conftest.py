"""Shared pytest fixtures for pipeline tests."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from db.postgres import build_session_maker, create_tables
from services.job_queue import JobQueue
from services.pipeline import Pipeline
from tests.mocks import FakeClock, MockEmbeddingService, MockExplanationService
from utils.circuit_breaker import reset_circuit_breakers
from utils.retry import RetryPolicy

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Session factory over a fresh file-backed SQLite database.

    A file (not :memory:) so that separate sessions see each other's
    commits, as they would against PostgreSQL.
    """
    engine, maker = build_session_maker(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await create_tables(engine)
    yield maker
    await engine.dispose()


# ============================================================================
# Time and Capability Fixtures
# ============================================================================


@pytest.fixture
def clock():
    """Fake wall clock shared by every component under test."""
    return FakeClock()


@pytest.fixture
def mock_embedding_service():
    """Deterministic 8-dimension embedding capability."""
    return MockEmbeddingService(dimensions=8)


@pytest.fixture
def mock_explanation_service():
    return MockExplanationService()


@pytest.fixture(autouse=True)
def _fresh_circuit_breakers():
    """Circuit breakers are process-wide singletons; start every test closed."""
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture
def mock_redis_with_data():
    """Factory for creating a mock Redis backed by a plain dict.

    Example:
        data = {}
        redis = mock_redis_with_data(data)
        await redis.setex("k", 60, "v")
        assert data["k"] == "v"
    """

    def _create_redis(data: dict):
        redis = AsyncMock()

        async def mock_get(key):
            return data.get(key)

        async def mock_set(key, value, **kwargs):
            data[key] = value
            return True

        async def mock_setex(key, ttl, value):
            data[key] = value
            return True

        async def mock_delete(*keys):
            count = sum(1 for k in keys if k in data)
            for k in keys:
                data.pop(k, None)
            return count

        redis.get = AsyncMock(side_effect=mock_get)
        redis.set = AsyncMock(side_effect=mock_set)
        redis.setex = AsyncMock(side_effect=mock_setex)
        redis.delete = AsyncMock(side_effect=mock_delete)
        redis.ping = AsyncMock(return_value=True)
        return redis

    return _create_redis


# ============================================================================
# Pipeline Fixtures
# ============================================================================


@pytest.fixture
def retry_policy():
    """Jitter-free policy so backoff delays are exact."""
    return RetryPolicy(max_attempts=5, backoff_base=2.0, backoff_max=300.0, jitter=0.0)


@pytest.fixture
def job_queue(session_maker, retry_policy, clock):
    return JobQueue(session_maker, policy=retry_policy, lease_timeout=60, clock=clock)


@pytest.fixture
def pipeline(session_maker, job_queue, mock_embedding_service, clock):
    """Pipeline with mock capabilities, the in-app channel and no Redis."""
    return Pipeline(
        session_maker,
        embedder=mock_embedding_service,
        explainer=None,
        redis_getter=lambda: None,
        queue=job_queue,
        clock=clock,
    )


@pytest.fixture
def run_jobs(clock):
    """Drain a worker until no job is due.

    Returns the executed jobs. With `advance_past_backoff`, the fake clock
    jumps past retry delays so retries run too.

    Example:
        jobs = await run_jobs(pipeline.worker())
    """

    async def _run(worker, max_jobs: int = 200, advance_past_backoff: bool = False):
        executed = []
        for _ in range(max_jobs):
            job = await worker.run_once()
            if job is None:
                if not advance_past_backoff:
                    break
                stats = await worker.queue.stats()
                if not stats["failed"]:
                    break
                clock.advance(seconds=worker.queue.policy.backoff_max + 1)
                continue
            executed.append(job)
        return executed

    return _run
