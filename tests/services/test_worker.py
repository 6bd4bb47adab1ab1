"""Tests for the worker loop and pool."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from models.errors import StaleEvent, TransientUpstreamError
from models.postgres import JobState
from models.schemas import EvaluateInsightsPayload, TaskType
from services.worker import Worker, WorkerPool


async def _enqueue_evaluate(job_queue, owner_id="u1"):
    return await job_queue.enqueue_payload(
        EvaluateInsightsPayload(owner_id=owner_id),
        idempotency_key=f"insights:{owner_id}",
        ordering_key=f"owner:{owner_id}",
    )


class TestWorker:
    """Test single-job execution."""

    @pytest.mark.asyncio
    async def test_runs_handler_with_typed_payload(self, job_queue):
        """Should decode the payload and complete the job."""
        handler = AsyncMock(return_value=None)
        worker = Worker(job_queue, {TaskType.EVALUATE_INSIGHTS.value: handler})
        job_id = await _enqueue_evaluate(job_queue)

        job = await worker.run_once()

        assert job.id == job_id
        payload = handler.call_args.args[0]
        assert isinstance(payload, EvaluateInsightsPayload)
        assert payload.owner_id == "u1"
        assert (await job_queue.get(job_id)).state == JobState.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_returns_none_when_idle(self, job_queue):
        """Should return None when nothing is due."""
        worker = Worker(job_queue, {})

        assert await worker.run_once() is None

    @pytest.mark.asyncio
    async def test_handler_error_marks_job_failed(self, job_queue):
        """Should hand handler errors to the queue's retry policy."""
        handler = AsyncMock(side_effect=TransientUpstreamError("timeout"))
        worker = Worker(job_queue, {TaskType.EVALUATE_INSIGHTS.value: handler})
        job_id = await _enqueue_evaluate(job_queue)

        await worker.run_once()

        assert (await job_queue.get(job_id)).state == JobState.FAILED.value

    @pytest.mark.asyncio
    async def test_stale_event_counts_as_success(self, job_queue):
        """Should complete a job whose event was already applied."""
        handler = AsyncMock(side_effect=StaleEvent("owner:u1", 3, 5))
        worker = Worker(job_queue, {TaskType.EVALUATE_INSIGHTS.value: handler})
        job_id = await _enqueue_evaluate(job_queue)

        await worker.run_once()

        assert (await job_queue.get(job_id)).state == JobState.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_unknown_task_type_dead_letters(self, job_queue):
        """Should dead-letter jobs nobody can handle."""
        worker = Worker(job_queue, {})
        job_id = await _enqueue_evaluate(job_queue)

        await worker.run_once()

        stored = await job_queue.get(job_id)
        assert stored.state == JobState.DEAD_LETTERED.value
        assert stored.last_error["type"] == "PermanentInputError"

    @pytest.mark.asyncio
    async def test_malformed_payload_dead_letters(self, job_queue):
        """Should dead-letter a payload that fails validation."""
        handler = AsyncMock()
        worker = Worker(job_queue, {TaskType.EVALUATE_INSIGHTS.value: handler})
        job_id = await job_queue.enqueue(TaskType.EVALUATE_INSIGHTS.value, {}, "bad", "owner:u1")

        await worker.run_once()

        handler.assert_not_called()
        assert (await job_queue.get(job_id)).state == JobState.DEAD_LETTERED.value


class TestWorkerPool:
    """Test the pool lifecycle."""

    @pytest.mark.asyncio
    async def test_pool_processes_jobs_and_stops(self, job_queue):
        """Should run queued jobs in the background and stop cleanly."""
        done = asyncio.Event()

        async def handler(payload):
            done.set()

        pool = WorkerPool(job_queue, {TaskType.EVALUATE_INSIGHTS.value: handler}, size=2, idle_sleep=0.01)
        await _enqueue_evaluate(job_queue)

        await pool.start()
        await asyncio.wait_for(done.wait(), timeout=5)
        await pool.stop(timeout=5)

        assert (await job_queue.stats())["succeeded"] == 1
