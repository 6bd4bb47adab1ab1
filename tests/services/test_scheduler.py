"""Tests for recurring triggers."""

import pytest

from models.schemas import SweepRemindersPayload
from services.scheduler import RecurringTrigger, Scheduler, default_triggers


class TestRecurringTrigger:
    def test_keys_default_from_name(self):
        """Should derive ordering and idempotency keys from the name."""
        trigger = RecurringTrigger(name="sweep_reminders", interval_seconds=300, payload=SweepRemindersPayload())

        assert trigger.ordering_key == "recurring:sweep_reminders"
        assert trigger.idempotency_key == "recurring:sweep_reminders"

    def test_default_triggers(self):
        """Should register lease recovery, reminder sweep and recalculation."""
        names = {t.name for t in default_triggers()}

        assert names == {"recover_leases", "sweep_reminders", "recalculate_analytics"}


class TestScheduler:
    @pytest.mark.asyncio
    async def test_fire_does_not_overlap_pending_run(self, job_queue):
        """Should not enqueue a second run while the previous one is pending."""
        scheduler = Scheduler(job_queue)

        first = await scheduler.fire("sweep_reminders")
        second = await scheduler.fire("sweep_reminders")

        assert first == second
        assert (await job_queue.stats())["pending"] == 1

    @pytest.mark.asyncio
    async def test_fire_after_previous_run_finished(self, job_queue):
        """Should enqueue a new run once the previous one completed."""
        scheduler = Scheduler(job_queue)
        first = await scheduler.fire("recover_leases")
        job = await job_queue.poll("w1")
        await job_queue.complete(job)

        second = await scheduler.fire("recover_leases")

        assert second != first

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, job_queue):
        """Should register one APScheduler job per trigger."""
        scheduler = Scheduler(job_queue)

        scheduler.start()
        try:
            assert {job.id for job in scheduler._scheduler.get_jobs()} == set(scheduler.triggers)
        finally:
            scheduler.shutdown()
        assert scheduler._scheduler is None
