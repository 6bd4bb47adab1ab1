"""Durable job queue with per-key ordering, idempotent enqueue and retries.

Jobs live in the `jobs` table, so queue state survives restarts. Guarantees:

- Idempotent enqueue: while a job holding an idempotency key is active
  (pending, running or failed-awaiting-retry) a second enqueue with that key
  returns the existing job id. A partial unique index backs this under races.
- Ordering: jobs sharing an ordering key run strictly in enqueue order and
  never concurrently. A job is claimable only when no earlier job with the
  same ordering key is still active.
- Delayed visibility: a job is invisible until `scheduled_for` is due.
- Retries: failures are rescheduled with exponential backoff plus jitter
  until max_attempts, then dead-lettered. Permanent errors and consistency
  violations are dead-lettered immediately.
- Leases: a claimed job carries a lease token and expiry. Jobs whose lease
  expired (worker crash) go back to pending keeping their id, and therefore
  their place among jobs with the same ordering key. Delivery is
  at-least-once, so handlers must be idempotent.
- Supersession: enqueueing with a supersede key marks waiting jobs with the
  same key superseded; they are never handed to a worker.

No lock is held across handler execution: claims and state transitions are
single conditional UPDATE statements.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from config import get_settings
from models.errors import (
    ConsistencyViolation,
    DuplicateJob,
    error_detail,
    is_retryable,
)
from models.postgres import (
    ACTIVE_JOB_STATES,
    CLAIMABLE_JOB_STATES,
    Job,
    JobState,
)
from utils.logging import get_logger
from utils.metrics import (
    JOBS_BY_STATE,
    JOBS_COMPLETED,
    JOBS_DEAD_LETTERED,
    JOBS_DEDUPLICATED,
    JOBS_ENQUEUED,
    JOBS_RECOVERED,
)
from utils.retry import RetryPolicy
from utils.time import Clock, utcnow

logger = get_logger(__name__)


class JobQueue:
    """Database-backed job queue.

    Usage:
        queue = JobQueue(session_maker)
        job_id = await queue.enqueue_payload(
            ApplyOutcomePayload(outcome_id=..., owner_id=..., sequence=7),
            idempotency_key="outcome:abc:7",
            ordering_key="owner:u1",
        )
        job = await queue.poll("worker-1")
        ...
        await queue.complete(job)   # or: await queue.fail(job, exc)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        policy: RetryPolicy | None = None,
        lease_timeout: int | None = None,
        poll_batch: int | None = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self._session_maker = session_maker
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.lease_timeout = timedelta(
            seconds=lease_timeout if lease_timeout is not None else settings.job_lease_timeout
        )
        self.poll_batch = poll_batch or settings.job_poll_batch
        self._clock = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
        ordering_key: str,
        not_before: datetime | None = None,
        supersede_key: str | None = None,
        max_attempts: int | None = None,
        session: AsyncSession | None = None,
    ) -> int:
        """Create a job, or return the id of the active job holding the key.

        With `session`, the job is written inside the caller's transaction
        (flushed, not committed) so it commits atomically with the caller's
        own writes.
        """
        task_type = str(getattr(task_type, "value", task_type))
        try:
            return await self._insert(
                task_type,
                payload,
                idempotency_key,
                ordering_key,
                not_before,
                supersede_key,
                max_attempts,
                session,
            )
        except DuplicateJob as dup:
            JOBS_DEDUPLICATED.labels(task_type=task_type).inc()
            logger.debug(
                f"Enqueue of {task_type} deduplicated onto job {dup.existing_job_id}",
                extra={"idempotency_key": idempotency_key},
            )
            return dup.existing_job_id

    async def enqueue_payload(
        self,
        payload: BaseModel,
        idempotency_key: str,
        ordering_key: str,
        **kwargs: Any,
    ) -> int:
        """Enqueue a typed payload; its task_type tag selects the handler."""
        data = payload.model_dump(mode="json", exclude={"task_type"})
        return await self.enqueue(
            payload.task_type, data, idempotency_key, ordering_key, **kwargs
        )

    async def _find_active(self, session: AsyncSession, idempotency_key: str) -> int | None:
        result = await session.execute(
            select(Job.id).where(
                Job.idempotency_key == idempotency_key,
                Job.state.in_(ACTIVE_JOB_STATES),
            )
        )
        return result.scalar_one_or_none()

    async def _insert(
        self,
        task_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
        ordering_key: str,
        not_before: datetime | None,
        supersede_key: str | None,
        max_attempts: int | None,
        session: AsyncSession | None = None,
    ) -> int:
        if session is not None:
            job = await self._stage(
                session, task_type, payload, idempotency_key, ordering_key,
                not_before, supersede_key, max_attempts,
            )
            await session.flush()
            self._record_enqueued(job)
            return job.id

        async with self._session_maker() as own_session:
            job = await self._stage(
                own_session, task_type, payload, idempotency_key, ordering_key,
                not_before, supersede_key, max_attempts,
            )
            try:
                await own_session.commit()
            except IntegrityError:
                # Lost a race with a concurrent enqueue of the same key
                await own_session.rollback()
                existing = await self._find_active(own_session, idempotency_key)
                if existing is None:
                    raise
                raise DuplicateJob(idempotency_key, existing)
            self._record_enqueued(job)
            return job.id

    async def _stage(
        self,
        session: AsyncSession,
        task_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
        ordering_key: str,
        not_before: datetime | None,
        supersede_key: str | None,
        max_attempts: int | None,
    ) -> Job:
        now = self._clock()
        existing = await self._find_active(session, idempotency_key)
        if existing is not None:
            raise DuplicateJob(idempotency_key, existing)

        if supersede_key is not None:
            superseded = await session.execute(
                update(Job)
                .where(
                    Job.supersede_key == supersede_key,
                    Job.state.in_(CLAIMABLE_JOB_STATES),
                )
                .values(state=JobState.SUPERSEDED.value, finished_at=now)
            )
            if superseded.rowcount:
                logger.info(
                    f"Superseded {superseded.rowcount} waiting job(s) for '{supersede_key}'"
                )

        job = Job(
            task_type=task_type,
            payload=payload,
            idempotency_key=idempotency_key,
            ordering_key=ordering_key,
            supersede_key=supersede_key,
            state=JobState.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self.policy.max_attempts,
            scheduled_for=not_before or now,
            created_at=now,
        )
        session.add(job)
        return job

    def _record_enqueued(self, job: Job) -> None:
        JOBS_ENQUEUED.labels(task_type=job.task_type).inc()
        logger.debug(
            f"Enqueued {job.task_type} job {job.id}",
            extra={"ordering_key": job.ordering_key, "idempotency_key": job.idempotency_key},
        )

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    async def poll(self, worker_id: str) -> Job | None:
        """Claim the next eligible job for this worker, or None if idle."""
        now = self._clock()
        earlier = aliased(Job)
        blocked = (
            select(earlier.id)
            .where(
                earlier.ordering_key == Job.ordering_key,
                earlier.id < Job.id,
                earlier.state.in_(ACTIVE_JOB_STATES),
            )
            .exists()
        )

        async with self._session_maker() as session:
            result = await session.execute(
                select(Job.id)
                .where(
                    Job.state.in_(CLAIMABLE_JOB_STATES),
                    Job.scheduled_for <= now,
                    ~blocked,
                )
                .order_by(Job.scheduled_for, Job.id)
                .limit(self.poll_batch)
            )
            candidates = list(result.scalars().all())

            for job_id in candidates:
                token = str(uuid4())
                claimed = await session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.state.in_(CLAIMABLE_JOB_STATES),
                        Job.scheduled_for <= now,
                    )
                    .values(
                        state=JobState.RUNNING.value,
                        attempts=Job.attempts + 1,
                        lease_token=token,
                        lease_expires_at=now + self.lease_timeout,
                        worker_id=worker_id,
                        started_at=now,
                    )
                )
                await session.commit()
                if claimed.rowcount == 1:
                    job = await session.get(Job, job_id, populate_existing=True)
                    logger.debug(
                        f"Worker {worker_id} claimed {job.task_type} job {job.id} "
                        f"(attempt {job.attempts}/{job.max_attempts})"
                    )
                    return job
        return None

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(self, job: Job) -> bool:
        """Mark a claimed job succeeded. False if the lease was lost."""
        now = self._clock()
        async with self._session_maker() as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job.id,
                    Job.lease_token == job.lease_token,
                    Job.state == JobState.RUNNING.value,
                )
                .values(
                    state=JobState.SUCCEEDED.value,
                    finished_at=now,
                    lease_token=None,
                    lease_expires_at=None,
                    last_error=None,
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(f"Job {job.id} finished after losing its lease; result discarded")
            return False
        JOBS_COMPLETED.labels(task_type=job.task_type, outcome="succeeded").inc()
        return True

    async def fail(self, job: Job, exc: BaseException) -> str | None:
        """Record a failed attempt; returns the job's new state (None if lease lost)."""
        now = self._clock()
        detail = error_detail(exc)

        if is_retryable(exc) and self.policy.should_retry(job.attempts, job.max_attempts):
            delay = self.policy.next_delay(job.attempts)
            values = {
                "state": JobState.FAILED.value,
                "scheduled_for": now + timedelta(seconds=delay),
            }
            outcome = "retry"
        else:
            delay = None
            values = {"state": JobState.DEAD_LETTERED.value, "finished_at": now}
            outcome = "dead_lettered"

        async with self._session_maker() as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job.id,
                    Job.lease_token == job.lease_token,
                    Job.state == JobState.RUNNING.value,
                )
                .values(lease_token=None, lease_expires_at=None, last_error=detail, **values)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(f"Job {job.id} failed after losing its lease; failure discarded")
            return None

        JOBS_COMPLETED.labels(task_type=job.task_type, outcome=outcome).inc()
        if outcome == "retry":
            logger.warning(
                f"Job {job.id} ({job.task_type}) attempt {job.attempts}/{job.max_attempts} "
                f"failed: {detail['type']}: {detail['message']}. Retrying in {delay:.2f}s"
            )
        else:
            self._report_dead_letter(job, exc, detail)
        return values["state"]

    def _report_dead_letter(self, job: Job, exc: BaseException | None, detail: dict) -> None:
        JOBS_DEAD_LETTERED.labels(task_type=job.task_type, error_type=detail["type"]).inc()
        log = logger.critical if isinstance(exc, ConsistencyViolation) else logger.error
        log(
            f"Job {job.id} ({job.task_type}) dead-lettered after {job.attempts} attempt(s): "
            f"{detail['type']}: {detail['message']}",
            extra={
                "ordering_key": job.ordering_key,
                "idempotency_key": job.idempotency_key,
            },
        )

    # ------------------------------------------------------------------
    # Recovery and operator actions
    # ------------------------------------------------------------------

    async def recover_expired_leases(self) -> int:
        """Requeue running jobs whose lease expired. Returns how many moved."""
        now = self._clock()
        recovered = 0
        async with self._session_maker() as session:
            result = await session.execute(
                select(Job).where(
                    Job.state == JobState.RUNNING.value,
                    Job.lease_expires_at < now,
                )
            )
            expired = list(result.scalars().all())

            for job in expired:
                detail = {
                    "type": "LeaseExpired",
                    "code": "lease_expired",
                    "message": f"lease held by {job.worker_id} expired",
                    "retryable": True,
                }
                exhausted = not self.policy.should_retry(job.attempts, job.max_attempts)
                values: dict[str, Any] = {
                    "lease_token": None,
                    "lease_expires_at": None,
                    "worker_id": None,
                    "last_error": detail,
                }
                if exhausted:
                    values.update(state=JobState.DEAD_LETTERED.value, finished_at=now)
                else:
                    values.update(state=JobState.PENDING.value)

                moved = await session.execute(
                    update(Job)
                    .where(
                        Job.id == job.id,
                        Job.lease_token == job.lease_token,
                        Job.state == JobState.RUNNING.value,
                    )
                    .values(**values)
                )
                if moved.rowcount != 1:
                    continue
                if exhausted:
                    self._report_dead_letter(job, None, detail)
                else:
                    recovered += 1
                    JOBS_RECOVERED.inc()
                    logger.warning(
                        f"Requeued job {job.id} ({job.task_type}) after lease expiry"
                    )
            await session.commit()
        return recovered

    async def cancel(self, job_id: int) -> bool:
        """Mark a waiting job superseded so no worker ever runs it."""
        async with self._session_maker() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_(CLAIMABLE_JOB_STATES))
                .values(state=JobState.SUPERSEDED.value, finished_at=self._clock())
            )
            await session.commit()
        return result.rowcount == 1

    async def requeue_dead_letter(self, job_id: int) -> bool:
        """Give a dead-lettered job a fresh set of attempts."""
        async with self._session_maker() as session:
            try:
                result = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.state == JobState.DEAD_LETTERED.value)
                    .values(
                        state=JobState.PENDING.value,
                        attempts=0,
                        scheduled_for=self._clock(),
                        finished_at=None,
                    )
                )
                await session.commit()
            except IntegrityError:
                # Another active job already holds the idempotency key
                await session.rollback()
                return False
        if result.rowcount == 1:
            logger.info(f"Dead-lettered job {job_id} requeued by operator")
            return True
        return False

    async def get(self, job_id: int) -> Job | None:
        async with self._session_maker() as session:
            return await session.get(Job, job_id)

    async def stats(self) -> dict[str, int]:
        """Job counts per state (also exported as a gauge)."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(Job.state, func.count(Job.id)).group_by(Job.state)
            )
            counts = {state.value: 0 for state in JobState}
            counts.update({state: count for state, count in result.all()})

        for state, count in counts.items():
            JOBS_BY_STATE.labels(state=state).set(count)
        return counts
