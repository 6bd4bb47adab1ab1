"""Worker loop and pool.

A worker claims one job at a time from the JobQueue, decodes its typed
payload, runs the registered handler and reports the result back. Workers
share no in-process state; everything goes through the durable queue.

    handlers = {TaskType.APPLY_OUTCOME.value: pipeline.handle_apply_outcome, ...}
    pool = WorkerPool(queue, handlers, size=4)
    await pool.start()
    ...
    await pool.stop()
"""

import asyncio
import time
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from config import get_settings
from models.errors import PermanentInputError, StaleEvent
from models.postgres import Job
from models.schemas import parse_payload
from services.job_queue import JobQueue
from utils.logging import JobLogContext, get_logger
from utils.metrics import JOB_DURATION

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[Any]]


class Worker:
    """Pulls and executes jobs until stopped."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, Handler],
        worker_id: str = "worker-0",
        idle_sleep: float | None = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.worker_id = worker_id
        self.idle_sleep = (
            idle_sleep if idle_sleep is not None else get_settings().worker_idle_sleep
        )

    async def run_once(self) -> Job | None:
        """Claim and execute at most one job. Returns the job, or None when idle."""
        job = await self.queue.poll(self.worker_id)
        if job is None:
            return None

        owner_id = (job.payload or {}).get("owner_id")
        with JobLogContext(job_id=str(job.id), owner_id=owner_id):
            await self._execute(job)
        return job

    async def _execute(self, job: Job) -> None:
        started = time.perf_counter()
        try:
            payload = self._decode(job)
            handler = self.handlers.get(job.task_type)
            if handler is None:
                raise PermanentInputError(f"No handler registered for task type '{job.task_type}'")
            await handler(payload)
        except StaleEvent as e:
            logger.debug(f"Job {job.id} was a stale event: {e}")
            await self.queue.complete(job)
        except asyncio.CancelledError:
            # Shutdown mid-job: the lease expires and the job is requeued
            raise
        except Exception as e:
            await self.queue.fail(job, e)
        else:
            await self.queue.complete(job)
        finally:
            JOB_DURATION.labels(task_type=job.task_type).observe(time.perf_counter() - started)

    @staticmethod
    def _decode(job: Job) -> BaseModel:
        try:
            return parse_payload(job.task_type, job.payload or {})
        except ValidationError as e:
            raise PermanentInputError(
                f"Malformed payload for {job.task_type}: {e.error_count()} error(s)"
            ) from e

    async def run(self, stop: asyncio.Event) -> None:
        """Loop until `stop` is set, sleeping when the queue is idle."""
        logger.info(f"Worker {self.worker_id} started")
        while not stop.is_set():
            try:
                job = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Queue/database unavailable; back off and poll again
                logger.error(f"Worker {self.worker_id} poll failed: {type(e).__name__}: {e}")
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.idle_sleep)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Worker {self.worker_id} stopped")


class WorkerPool:
    """A fixed number of workers running as asyncio tasks."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, Handler],
        size: int | None = None,
        idle_sleep: float | None = None,
    ):
        self.size = size or get_settings().worker_count
        self.workers = [
            Worker(queue, handlers, worker_id=f"worker-{i}", idle_sleep=idle_sleep)
            for i in range(self.size)
        ]
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        self._stop.clear()
        self._tasks = [asyncio.create_task(w.run(self._stop)) for w in self.workers]
        logger.info(f"Worker pool started with {self.size} workers")

    async def stop(self, timeout: float = 30.0) -> None:
        """Signal workers to finish their current job, then cancel stragglers."""
        self._stop.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")
