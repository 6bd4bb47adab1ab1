"""Tests for the durable job queue.

Tests:
- Idempotent enqueue (active keys only)
- Per-ordering-key FIFO and mutual exclusion
- Delayed visibility (not_before)
- Backoff, retry limit and dead-lettering
- Lease expiry recovery
- Supersession and operator actions
"""

from datetime import timedelta

import pytest

from models.errors import (
    ConsistencyViolation,
    PermanentInputError,
    TransientUpstreamError,
)
from models.postgres import JobState


class TestEnqueue:
    """Test idempotent enqueue."""

    @pytest.mark.asyncio
    async def test_duplicate_key_returns_existing_job(self, job_queue):
        """Should return the active job's id for a repeated idempotency key."""
        first = await job_queue.enqueue("embed_decision", {"decision_id": "d1"}, "embed:d1:1", "decision:d1")
        second = await job_queue.enqueue("embed_decision", {"decision_id": "d1"}, "embed:d1:1", "decision:d1")

        assert first == second
        stats = await job_queue.stats()
        assert stats["pending"] == 1

    @pytest.mark.asyncio
    async def test_key_reusable_after_completion(self, job_queue):
        """Should create a new job once the previous holder of the key finished."""
        first = await job_queue.enqueue("sweep_reminders", {}, "recurring:sweep", "recurring:sweep")
        job = await job_queue.poll("w1")
        await job_queue.complete(job)

        second = await job_queue.enqueue("sweep_reminders", {}, "recurring:sweep", "recurring:sweep")

        assert second != first

    @pytest.mark.asyncio
    async def test_ids_increase_in_enqueue_order(self, job_queue):
        """Should assign increasing ids, which define enqueue order."""
        ids = [
            await job_queue.enqueue("apply_outcome", {"n": i}, f"k{i}", "owner:u1")
            for i in range(3)
        ]

        assert ids == sorted(ids)


class TestOrdering:
    """Test per-key ordering and exclusion."""

    @pytest.mark.asyncio
    async def test_same_key_never_runs_concurrently(self, job_queue):
        """Should not hand out a second job for a key while the first runs."""
        await job_queue.enqueue("apply_outcome", {"n": 1}, "a", "owner:u1")
        await job_queue.enqueue("apply_outcome", {"n": 2}, "b", "owner:u1")

        first = await job_queue.poll("w1")
        second = await job_queue.poll("w2")

        assert first.payload == {"n": 1}
        assert second is None

    @pytest.mark.asyncio
    async def test_jobs_run_in_enqueue_order(self, job_queue):
        """Should run jobs sharing a key strictly in enqueue order."""
        for n in range(1, 4):
            await job_queue.enqueue("apply_outcome", {"n": n}, f"k{n}", "owner:u1")

        seen = []
        while (job := await job_queue.poll("w1")) is not None:
            seen.append(job.payload["n"])
            await job_queue.complete(job)

        assert seen == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self, job_queue):
        """Should let jobs with different ordering keys be claimed together."""
        await job_queue.enqueue("apply_outcome", {}, "a", "owner:u1")
        await job_queue.enqueue("apply_outcome", {}, "b", "owner:u2")

        first = await job_queue.poll("w1")
        second = await job_queue.poll("w2")

        assert first is not None and second is not None
        assert {first.ordering_key, second.ordering_key} == {"owner:u1", "owner:u2"}

    @pytest.mark.asyncio
    async def test_retrying_job_blocks_later_jobs(self, job_queue):
        """Should keep later jobs waiting while an earlier one awaits retry."""
        await job_queue.enqueue("apply_outcome", {"n": 1}, "a", "owner:u1")
        await job_queue.enqueue("apply_outcome", {"n": 2}, "b", "owner:u1")

        job = await job_queue.poll("w1")
        await job_queue.fail(job, TransientUpstreamError("timeout"))

        assert await job_queue.poll("w1") is None


class TestDelayedVisibility:
    """Test not_before scheduling."""

    @pytest.mark.asyncio
    async def test_job_invisible_until_due(self, job_queue, clock):
        """Should not return a job before its not_before time."""
        await job_queue.enqueue(
            "sweep_reminders", {}, "later", "recurring:x", not_before=clock() + timedelta(minutes=5)
        )

        assert await job_queue.poll("w1") is None
        clock.advance(minutes=5)
        assert await job_queue.poll("w1") is not None


class TestFailure:
    """Test retry, backoff and dead-lettering."""

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_backoff(self, job_queue, clock):
        """Should reschedule with base * 2^(attempts-1) delay."""
        job_id = await job_queue.enqueue("embed_decision", {}, "k", "decision:d1")

        job = await job_queue.poll("w1")
        state = await job_queue.fail(job, TransientUpstreamError("timeout"))
        stored = await job_queue.get(job_id)

        assert state == JobState.FAILED.value
        assert stored.scheduled_for == clock() + timedelta(seconds=2)
        assert stored.last_error["type"] == "TransientUpstreamError"
        assert stored.last_error["retryable"] is True

        clock.advance(seconds=1)
        assert await job_queue.poll("w1") is None
        clock.advance(seconds=1)
        job = await job_queue.poll("w1")
        await job_queue.fail(job, TransientUpstreamError("timeout"))
        stored = await job_queue.get(job_id)
        assert stored.scheduled_for == clock() + timedelta(seconds=4)

    @pytest.mark.asyncio
    async def test_dead_letters_after_max_attempts(self, job_queue, clock):
        """Should dead-letter once max_attempts is reached."""
        job_id = await job_queue.enqueue("embed_decision", {}, "k", "decision:d1", max_attempts=2)

        job = await job_queue.poll("w1")
        await job_queue.fail(job, TransientUpstreamError("down"))
        clock.advance(minutes=10)
        job = await job_queue.poll("w1")
        state = await job_queue.fail(job, TransientUpstreamError("down"))

        assert state == JobState.DEAD_LETTERED.value
        stored = await job_queue.get(job_id)
        assert stored.attempts == 2
        assert stored.finished_at is not None

    @pytest.mark.asyncio
    async def test_permanent_error_dead_letters_immediately(self, job_queue):
        """Should not retry PermanentInputError."""
        job_id = await job_queue.enqueue("embed_decision", {}, "k", "decision:d1")
        job = await job_queue.poll("w1")

        state = await job_queue.fail(job, PermanentInputError("empty text"))

        assert state == JobState.DEAD_LETTERED.value
        assert (await job_queue.get(job_id)).attempts == 1

    @pytest.mark.asyncio
    async def test_consistency_violation_dead_letters_and_alerts(self, job_queue, caplog):
        """Should dead-letter a ConsistencyViolation and log it as critical."""
        await job_queue.enqueue("apply_outcome", {}, "k", "owner:u1")
        job = await job_queue.poll("w1")

        with caplog.at_level("CRITICAL"):
            state = await job_queue.fail(job, ConsistencyViolation("cross-owner data"))

        assert state == JobState.DEAD_LETTERED.value
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_dead_letter_releases_ordering_key(self, job_queue):
        """Should let the next job for the key run after a dead-letter."""
        await job_queue.enqueue("apply_outcome", {"n": 1}, "a", "owner:u1")
        await job_queue.enqueue("apply_outcome", {"n": 2}, "b", "owner:u1")

        job = await job_queue.poll("w1")
        await job_queue.fail(job, PermanentInputError("bad"))

        nxt = await job_queue.poll("w1")
        assert nxt.payload == {"n": 2}


class TestLeases:
    """Test lease expiry and recovery."""

    @pytest.mark.asyncio
    async def test_expired_lease_returns_job_to_pending(self, job_queue, clock):
        """Should requeue a job whose worker vanished, keeping its id."""
        job_id = await job_queue.enqueue("apply_outcome", {}, "k", "owner:u1")
        await job_queue.poll("crashed-worker")

        clock.advance(seconds=61)
        recovered = await job_queue.recover_expired_leases()

        assert recovered == 1
        stored = await job_queue.get(job_id)
        assert stored.state == JobState.PENDING.value
        assert stored.last_error["code"] == "lease_expired"

        job = await job_queue.poll("w2")
        assert job.id == job_id
        assert job.attempts == 2

    @pytest.mark.asyncio
    async def test_live_lease_is_not_recovered(self, job_queue, clock):
        """Should leave jobs alone while their lease is valid."""
        await job_queue.enqueue("apply_outcome", {}, "k", "owner:u1")
        await job_queue.poll("w1")

        clock.advance(seconds=30)

        assert await job_queue.recover_expired_leases() == 0

    @pytest.mark.asyncio
    async def test_stale_worker_cannot_complete_recovered_job(self, job_queue, clock):
        """Should discard the result of a worker that lost its lease."""
        await job_queue.enqueue("apply_outcome", {}, "k", "owner:u1")
        stale = await job_queue.poll("w1")
        clock.advance(seconds=61)
        await job_queue.recover_expired_leases()
        fresh = await job_queue.poll("w2")

        assert await job_queue.complete(stale) is False
        assert await job_queue.complete(fresh) is True

    @pytest.mark.asyncio
    async def test_exhausted_job_dead_lettered_on_expiry(self, job_queue, clock):
        """Should dead-letter a job whose last allowed attempt lost its lease."""
        job_id = await job_queue.enqueue("apply_outcome", {}, "k", "owner:u1", max_attempts=1)
        await job_queue.poll("w1")
        clock.advance(seconds=61)

        assert await job_queue.recover_expired_leases() == 0
        assert (await job_queue.get(job_id)).state == JobState.DEAD_LETTERED.value


class TestSupersession:
    """Test supersede keys and operator actions."""

    @pytest.mark.asyncio
    async def test_newer_job_supersedes_waiting_one(self, job_queue):
        """Should mark a waiting job with the same supersede key superseded."""
        old = await job_queue.enqueue("embed_decision", {"seq": 1}, "embed:d1:1", "decision:d1", supersede_key="embed:d1")
        new = await job_queue.enqueue("embed_decision", {"seq": 2}, "embed:d1:2", "decision:d1", supersede_key="embed:d1")

        assert (await job_queue.get(old)).state == JobState.SUPERSEDED.value
        job = await job_queue.poll("w1")
        assert job.id == new

    @pytest.mark.asyncio
    async def test_running_job_is_not_superseded(self, job_queue):
        """Should leave a job that is already running alone."""
        old = await job_queue.enqueue("embed_decision", {}, "embed:d1:1", "decision:d1", supersede_key="embed:d1")
        await job_queue.poll("w1")
        await job_queue.enqueue("embed_decision", {}, "embed:d1:2", "decision:d1", supersede_key="embed:d1")

        assert (await job_queue.get(old)).state == JobState.RUNNING.value

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, job_queue):
        """Should cancel a waiting job so it never runs."""
        job_id = await job_queue.enqueue("sweep_reminders", {}, "k", "recurring:x")

        assert await job_queue.cancel(job_id) is True
        assert await job_queue.poll("w1") is None

    @pytest.mark.asyncio
    async def test_requeue_dead_letter(self, job_queue):
        """Should give a dead-lettered job a fresh set of attempts."""
        job_id = await job_queue.enqueue("embed_decision", {}, "k", "decision:d1")
        job = await job_queue.poll("w1")
        await job_queue.fail(job, PermanentInputError("bad"))

        assert await job_queue.requeue_dead_letter(job_id) is True
        job = await job_queue.poll("w1")
        assert job.id == job_id
        assert job.attempts == 1


class TestTransactionalEnqueue:
    """Test enqueue inside a caller's transaction."""

    @pytest.mark.asyncio
    async def test_rolled_back_caller_leaves_no_job(self, job_queue, session_maker):
        """Should discard the job when the caller's transaction rolls back."""
        async with session_maker() as session:
            await job_queue.enqueue("evaluate_insights", {"owner_id": "u1"}, "insights:u1", "owner:u1", session=session)
            await session.rollback()

        assert (await job_queue.stats())["pending"] == 0

    @pytest.mark.asyncio
    async def test_committed_caller_persists_job(self, job_queue, session_maker):
        """Should persist the job together with the caller's commit."""
        async with session_maker() as session:
            job_id = await job_queue.enqueue("evaluate_insights", {"owner_id": "u1"}, "insights:u1", "owner:u1", session=session)
            await session.commit()

        assert (await job_queue.get(job_id)).state == JobState.PENDING.value
