"""Wiring for the decision insights pipeline.

The CRUD layer calls `publish_event()` after committing a decision or
outcome; everything downstream happens in jobs:

    decision.created / updated  -> embed_decision (ordering key decision:<id>)
                                   apply_decision_change (ordering key owner:<owner>)
    decision.archived           -> apply_decision_change
    decision.deleted            -> remove_decision + recompute_owner
    outcome.created             -> apply_outcome (ordering key owner:<owner>)

Aggregation then enqueues evaluate_insights, insights enqueue
dispatch_notification, and the scheduler feeds the recurring tasks.

Request handlers read through `similar_decisions()`, `search()` and
`get_analytics()`.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.redis import get_redis
from models.errors import PermanentInputError
from models.postgres import DecisionEmbedding
from models.schemas import (
    AnalyticsSnapshot,
    ApplyDecisionChangePayload,
    ApplyOutcomePayload,
    DomainEvent,
    EmbedDecisionPayload,
    EvaluateInsightsPayload,
    EventKind,
    RecomputeOwnerPayload,
    RemoveDecisionPayload,
    SimilarityHit,
    TaskType,
)
from services.aggregation import AggregationEngine
from services.analytics_cache import AnalyticsCache, AnalyticsReader
from services.capabilities import EmbeddingCapability, ExplanationCapability
from services.embedding_producer import EmbeddingProducer
from services.insights import InsightGenerator
from services.job_queue import JobQueue
from services.notifications import DeliveryChannel, InAppChannel, NotificationDispatcher
from services.reminders import ReminderSweeper
from services.scheduler import RecurringTrigger, Scheduler
from services.similarity_index import SimilarityIndex
from services.worker import Handler, Worker, WorkerPool
from utils.logging import get_logger
from utils.time import Clock, utcnow

logger = get_logger(__name__)


def decision_key(decision_id: str) -> str:
    return f"decision:{decision_id}"


def owner_key(owner_id: str) -> str:
    return f"owner:{owner_id}"


class Pipeline:
    """Owns every pipeline component and the task-type -> handler table."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        embedder: EmbeddingCapability,
        explainer: ExplanationCapability | None = None,
        channel: DeliveryChannel | None = None,
        redis_getter=get_redis,
        queue: JobQueue | None = None,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.embedder = embedder
        self.queue = queue or JobQueue(session_maker, clock=clock)
        self.index = SimilarityIndex(session_maker, clock=clock)
        self.producer = EmbeddingProducer(session_maker, embedder, self.index, clock=clock)
        self.aggregation = AggregationEngine(session_maker, self.queue, clock=clock)
        self.cache = AnalyticsCache(self.aggregation.get_watermark, redis_getter=redis_getter)
        self.aggregation.cache = self.cache
        self.reader = AnalyticsReader(self.aggregation, self.cache)
        self.insights = InsightGenerator(session_maker, self.queue, explainer, clock=clock)
        self.dispatcher = NotificationDispatcher(
            session_maker, channel or InAppChannel(session_maker, clock=clock), clock=clock
        )
        self.reminders = ReminderSweeper(session_maker, self.queue, clock=clock)
        self.scheduler: Scheduler | None = None
        self.pool: WorkerPool | None = None

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    async def publish_event(self, event: DomainEvent) -> list[int]:
        """Translate a committed domain event into jobs. Returns the job ids.

        Safe to call more than once for the same event: every job is keyed
        by entity and sequence.
        """
        seq = event.sequence
        owner = event.owner_id
        entity = event.entity_id
        job_ids: list[int] = []

        if event.kind in (EventKind.DECISION_CREATED, EventKind.DECISION_UPDATED):
            if event.kind == EventKind.DECISION_CREATED or event.text_changed:
                job_ids.append(
                    await self.queue.enqueue_payload(
                        EmbedDecisionPayload(decision_id=entity, owner_id=owner, sequence=seq),
                        idempotency_key=f"embed:{entity}:{seq}",
                        ordering_key=decision_key(entity),
                        # A newer text makes any waiting embed of an older one pointless
                        supersede_key=f"embed:{entity}",
                    )
                )

        if event.kind in (
            EventKind.DECISION_CREATED,
            EventKind.DECISION_UPDATED,
            EventKind.DECISION_ARCHIVED,
        ):
            job_ids.append(
                await self.queue.enqueue_payload(
                    ApplyDecisionChangePayload(
                        decision_id=entity,
                        owner_id=owner,
                        sequence=seq,
                        previous_category=event.previous_category,
                    ),
                    idempotency_key=f"decision-change:{entity}:{seq}",
                    ordering_key=owner_key(owner),
                )
            )

        elif event.kind == EventKind.DECISION_DELETED:
            job_ids.append(
                await self.queue.enqueue_payload(
                    RemoveDecisionPayload(decision_id=entity, owner_id=owner),
                    idempotency_key=f"remove:{entity}:{seq}",
                    ordering_key=decision_key(entity),
                    supersede_key=f"embed:{entity}",
                )
            )
            job_ids.append(
                await self.queue.enqueue_payload(
                    RecomputeOwnerPayload(owner_id=owner),
                    # Per event: a recompute already running may have read the store before the delete
                    idempotency_key=f"recompute:{owner}:{seq}",
                    ordering_key=owner_key(owner),
                )
            )

        elif event.kind == EventKind.OUTCOME_CREATED:
            job_ids.append(
                await self.queue.enqueue_payload(
                    ApplyOutcomePayload(outcome_id=entity, owner_id=owner, sequence=seq),
                    idempotency_key=f"outcome:{entity}:{seq}",
                    ordering_key=owner_key(owner),
                )
            )

        logger.debug(f"Event {event.kind.value} seq={seq} for {entity} -> jobs {job_ids}")
        return job_ids

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _recalculate_all(self, payload) -> int:
        """Queue a full recompute and an insight evaluation for every owner.

        Evaluation is queued even when no summary changes, so time-based
        rules such as missing outcomes fire for idle owners.
        """
        owners = await self.aggregation.owners_with_decisions()
        for owner_id in owners:
            await self.queue.enqueue_payload(
                RecomputeOwnerPayload(owner_id=owner_id),
                idempotency_key=f"recompute:{owner_id}",
                ordering_key=owner_key(owner_id),
            )
            await self.queue.enqueue_payload(
                EvaluateInsightsPayload(owner_id=owner_id),
                idempotency_key=f"insights:{owner_id}",
                ordering_key=owner_key(owner_id),
            )
        logger.info(f"Queued analytics recalculation for {len(owners)} owner(s)")
        return len(owners)

    def handlers(self) -> dict[str, Handler]:
        return {
            TaskType.EMBED_DECISION.value: lambda p: self.producer.produce_embedding(p.decision_id),
            TaskType.REMOVE_DECISION.value: lambda p: self.producer.remove_embedding(p.decision_id),
            TaskType.APPLY_OUTCOME.value: lambda p: self.aggregation.apply_outcome_event(
                p.outcome_id, p.sequence
            ),
            TaskType.APPLY_DECISION_CHANGE.value: lambda p: self.aggregation.apply_decision_event(
                p.decision_id, p.sequence, p.previous_category
            ),
            TaskType.RECOMPUTE_OWNER.value: lambda p: self.aggregation.recompute_owner(p.owner_id),
            TaskType.EVALUATE_INSIGHTS.value: lambda p: self.insights.evaluate(p.owner_id),
            TaskType.DISPATCH_NOTIFICATION.value: self.dispatcher.dispatch,
            TaskType.SWEEP_REMINDERS.value: lambda p: self.reminders.sweep(),
            TaskType.RECALCULATE_ANALYTICS.value: self._recalculate_all,
            TaskType.RECOVER_LEASES.value: lambda p: self.queue.recover_expired_leases(),
        }

    def worker(self, worker_id: str = "worker-0", idle_sleep: float | None = None) -> Worker:
        return Worker(self.queue, self.handlers(), worker_id=worker_id, idle_sleep=idle_sleep)

    # ------------------------------------------------------------------
    # Read paths for request handlers
    # ------------------------------------------------------------------

    async def similar_decisions(
        self, owner_id: str, decision_id: str, k: int = 5
    ) -> list[SimilarityHit]:
        """Decisions of the same owner most similar to an indexed decision."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(DecisionEmbedding).where(DecisionEmbedding.decision_id == decision_id)
            )
            embedding = result.scalar_one_or_none()
        if embedding is None:
            return []
        if embedding.owner_id != owner_id:
            raise PermanentInputError(f"Decision {decision_id} does not belong to owner {owner_id}")
        return await self.index.query(
            owner_id, embedding.vector, k, exclude_decision_id=decision_id
        )

    async def search(self, owner_id: str, text: str, k: int = 5) -> list[SimilarityHit]:
        """Free-text search over an owner's decisions."""
        if not text or not text.strip():
            return []
        vector = await self.embedder.embed(text, input_type="query")
        return await self.index.query(owner_id, vector, k)

    async def get_analytics(
        self, owner_id: str, category: str | None = None
    ) -> AnalyticsSnapshot | None:
        return await self.reader.get_analytics(owner_id, category)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        worker_count: int | None = None,
        triggers: list[RecurringTrigger] | None = None,
    ) -> None:
        """Recover leases left by a previous run, then start workers and triggers."""
        recovered = await self.queue.recover_expired_leases()
        if recovered:
            logger.info(f"Recovered {recovered} job(s) from a previous run")
        self.pool = WorkerPool(self.queue, self.handlers(), size=worker_count)
        await self.pool.start()
        self.scheduler = Scheduler(self.queue, triggers)
        self.scheduler.start()

    async def stop(self, timeout: float = 30.0) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
            self.scheduler = None
        if self.pool is not None:
            await self.pool.stop(timeout=timeout)
            self.pool = None

