"""Recurring triggers that feed the job queue.

APScheduler only decides *when* to fire; the work itself always goes through
the JobQueue. Each firing enqueues with the idempotency key
`recurring:<name>`, so a trigger whose previous job is still pending or
running is not enqueued again (no overlapping runs).
"""

from dataclasses import dataclass, field

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from config import get_settings
from models.schemas import (
    RecalculateAnalyticsPayload,
    RecoverLeasesPayload,
    SweepRemindersPayload,
)
from services.job_queue import JobQueue
from utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RecurringTrigger:
    """A payload enqueued every `interval_seconds`."""

    name: str
    interval_seconds: int
    payload: BaseModel
    ordering_key: str = field(default="")

    def __post_init__(self):
        if not self.ordering_key:
            self.ordering_key = f"recurring:{self.name}"

    @property
    def idempotency_key(self) -> str:
        return f"recurring:{self.name}"


def default_triggers() -> list[RecurringTrigger]:
    settings = get_settings()
    return [
        RecurringTrigger(
            name="recover_leases",
            interval_seconds=settings.lease_recovery_interval,
            payload=RecoverLeasesPayload(),
        ),
        RecurringTrigger(
            name="sweep_reminders",
            interval_seconds=settings.reminder_sweep_interval,
            payload=SweepRemindersPayload(),
        ),
        RecurringTrigger(
            name="recalculate_analytics",
            interval_seconds=settings.analytics_recalc_interval,
            payload=RecalculateAnalyticsPayload(),
        ),
    ]


class Scheduler:
    """Owns the APScheduler instance and the registered triggers."""

    def __init__(self, queue: JobQueue, triggers: list[RecurringTrigger] | None = None):
        self.queue = queue
        self.triggers = {t.name: t for t in (triggers if triggers is not None else default_triggers())}
        self._scheduler: AsyncIOScheduler | None = None

    async def fire(self, name: str) -> int:
        """Enqueue one run of a trigger; returns the (possibly existing) job id."""
        trigger = self.triggers[name]
        job_id = await self.queue.enqueue_payload(
            trigger.payload,
            idempotency_key=trigger.idempotency_key,
            ordering_key=trigger.ordering_key,
        )
        logger.debug(f"Recurring trigger '{name}' -> job {job_id}")
        return job_id

    async def _fire_safely(self, name: str) -> None:
        try:
            await self.fire(name)
        except Exception as e:
            # The next tick tries again; nothing is lost since the work is not queued yet
            logger.error(f"Recurring trigger '{name}' failed to enqueue: {type(e).__name__}: {e}")

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        for trigger in self.triggers.values():
            self._scheduler.add_job(
                self._fire_safely,
                IntervalTrigger(seconds=trigger.interval_seconds),
                args=[trigger.name],
                id=trigger.name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info(
                f"Recurring trigger '{trigger.name}' every {trigger.interval_seconds}s"
            )
        self._scheduler.start()
        logger.info("Scheduler started")

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")
