"""Recurring sweep that turns due reminders into notification jobs."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.postgres import Decision, DeliveryStatus, NotificationDelivery, Reminder
from models.schemas import NotificationPayload
from services.job_queue import JobQueue
from utils.logging import get_logger
from utils.time import Clock, utcnow

logger = get_logger(__name__)


class ReminderSweeper:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        batch_size: int = 500,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.queue = queue
        self.batch_size = batch_size
        self._clock = clock

    async def sweep(self) -> int:
        """Enqueue one dispatch job per due, undelivered reminder.

        Reminders stay undelivered until the dispatcher succeeds, so the
        idempotency key keeps a later sweep from queuing them twice.
        """
        now = self._clock()
        async with self._session_maker() as session:
            result = await session.execute(
                select(Reminder, Decision.title)
                .join(Decision, Decision.id == Reminder.decision_id)
                .where(Reminder.delivered_at.is_(None), Reminder.remind_at <= now)
                .order_by(Reminder.remind_at)
                .limit(self.batch_size)
            )
            due = result.all()

            # Permanently failed reminders are left for an operator, not retried each sweep
            keys = [f"reminder:{reminder.id}" for reminder, _ in due]
            failed = set()
            if keys:
                failed = set(
                    (
                        await session.execute(
                            select(NotificationDelivery.dedupe_key).where(
                                NotificationDelivery.dedupe_key.in_(keys),
                                NotificationDelivery.status == DeliveryStatus.FAILED.value,
                            )
                        )
                    ).scalars().all()
                )
            due = [(r, title) for r, title in due if f"reminder:{r.id}" not in failed]

        for reminder, decision_title in due:
            await self.queue.enqueue_payload(
                NotificationPayload(
                    owner_id=reminder.owner_id,
                    dedupe_key=f"reminder:{reminder.id}",
                    type="reminder",
                    title=f"Reminder: {decision_title}",
                    body=reminder.message or f"Time to check in on \"{decision_title}\".",
                    data={"reminder_id": reminder.id, "decision_id": reminder.decision_id},
                ),
                idempotency_key=f"notify:reminder:{reminder.id}",
                ordering_key=f"notify:{reminder.owner_id}",
            )

        if due:
            logger.info(f"Reminder sweep queued {len(due)} notification(s)")
        return len(due)
