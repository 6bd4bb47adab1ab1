"""Per-owner and per-category analytics summaries.

Each AnalyticsSummary carries a watermark: the highest event sequence it
reflects. Writes are conditional on the watermark, so replays of old events
are no-ops and summaries never move backwards.

Outcome events are applied incrementally when the summary is exactly one
outcome behind the store; otherwise (first summary for a scope, an outcome
the summary missed) the scope is recomputed from scratch. Both paths fold
outcomes in sequence order, so they produce the same metrics. Decision
events (create, edit, archive, category change) always recompute.

After a summary changes, the matching cache entries are invalidated and an
evaluate_insights job is enqueued for the owner in the same transaction as
the summary write.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.errors import ConsistencyViolation, PermanentInputError, StaleEvent
from models.postgres import AnalyticsSummary, Decision, DecisionStatus, Outcome
from models.schemas import AnalyticsSnapshot, EvaluateInsightsPayload, SummaryMetrics
from utils.logging import get_logger
from utils.metrics import CONSISTENCY_VIOLATIONS
from utils.time import Clock, utcnow

if TYPE_CHECKING:
    from services.analytics_cache import AnalyticsCache
    from services.job_queue import JobQueue

logger = get_logger(__name__)


def owner_scope(owner_id: str) -> str:
    return f"owner:{owner_id}"


def category_scope(owner_id: str, category: str) -> str:
    return f"owner:{owner_id}:category:{category}"


def scope_key_for(owner_id: str, category: str | None = None) -> str:
    return category_scope(owner_id, category) if category else owner_scope(owner_id)


def to_snapshot(row: AnalyticsSummary) -> AnalyticsSnapshot:
    return AnalyticsSnapshot(
        scope_key=row.scope_key,
        owner_id=row.owner_id,
        category=row.category,
        version=row.version,
        watermark=row.watermark,
        metrics=SummaryMetrics.model_validate(row.metrics),
        updated_at=row.updated_at,
    )


async def load_snapshot(session: AsyncSession, scope_key: str) -> AnalyticsSnapshot | None:
    row = await session.get(AnalyticsSummary, scope_key)
    return to_snapshot(row) if row is not None else None


def _seconds_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds()


class AggregationEngine:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: "JobQueue | None" = None,
        cache: "AnalyticsCache | None" = None,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.queue = queue
        self.cache = cache
        self._clock = clock

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    async def apply_outcome_event(self, outcome_id: str, sequence: int) -> list[AnalyticsSnapshot]:
        """Fold a new outcome into the owner and category summaries.

        Returns the summaries that changed. Raises StaleEvent when every
        scope already reflects the event.
        """
        async with self._session_maker() as session:
            outcome = await session.get(Outcome, outcome_id)
            if outcome is None:
                raise PermanentInputError(f"Outcome {outcome_id} not found")
            decision = await session.get(Decision, outcome.decision_id)
            if decision is None:
                raise PermanentInputError(
                    f"Decision {outcome.decision_id} for outcome {outcome_id} not found"
                )
            if decision.owner_id != outcome.owner_id:
                CONSISTENCY_VIOLATIONS.labels(component="aggregation").inc()
                raise ConsistencyViolation(
                    f"Outcome {outcome_id} (owner {outcome.owner_id}) belongs to decision "
                    f"{decision.id} of owner {decision.owner_id}"
                )

            owner_id = decision.owner_id
            written: list[AnalyticsSnapshot] = []
            stale: list[tuple[str, int]] = []
            for category in (None, decision.category):
                scope_key = scope_key_for(owner_id, category)
                row = await session.get(AnalyticsSummary, scope_key)
                if row is not None and sequence <= row.watermark:
                    stale.append((scope_key, row.watermark))
                    continue
                snapshot = await self._apply_outcome_to_scope(
                    session, row, scope_key, owner_id, category, outcome, decision, sequence
                )
                if snapshot is not None:
                    written.append(snapshot)

            if len(stale) == 2:
                scope_key, watermark = stale[0]
                raise StaleEvent(scope_key, sequence, watermark)

            if written:
                await self._enqueue_insights(session, owner_id)
            await session.commit()

        await self._invalidate(written)
        return written

    async def _apply_outcome_to_scope(
        self,
        session: AsyncSession,
        row: AnalyticsSummary | None,
        scope_key: str,
        owner_id: str,
        category: str | None,
        outcome: Outcome,
        decision: Decision,
        sequence: int,
    ) -> AnalyticsSnapshot | None:
        if row is not None:
            metrics = SummaryMetrics.model_validate(row.metrics)
            in_store = await self._count_outcomes(session, owner_id, category, up_to=outcome.sequence)
            if in_store == metrics.outcome_count + 1:
                metrics.add_outcome(
                    outcome.satisfaction,
                    _seconds_between(decision.created_at, outcome.recorded_at),
                    outcome.recorded_at,
                )
                return await self._write(session, scope_key, owner_id, category, metrics, sequence)
            logger.info(
                f"Summary {scope_key} has {metrics.outcome_count} outcomes, store has "
                f"{in_store}; recomputing"
            )

        metrics, store_watermark = await self._compute(session, owner_id, category)
        return await self._write(
            session, scope_key, owner_id, category, metrics, max(store_watermark, sequence)
        )

    async def apply_decision_event(
        self,
        decision_id: str,
        sequence: int,
        previous_category: str | None = None,
    ) -> list[AnalyticsSnapshot]:
        """Rebuild the scopes a decision create/edit/archive touches.

        When the category changed, both the old and the new category scope
        are rebuilt.
        """
        async with self._session_maker() as session:
            decision = await session.get(Decision, decision_id)
            if decision is None:
                # Deleted after the event was published; the delete event rebuilds the owner
                logger.info(f"Decision {decision_id} no longer exists; skipping decision event")
                return []

            owner_id = decision.owner_id
            categories: list[str | None] = [None, decision.category]
            if previous_category and previous_category != decision.category:
                categories.append(previous_category)

            written: list[AnalyticsSnapshot] = []
            for category in categories:
                scope_key = scope_key_for(owner_id, category)
                row = await session.get(AnalyticsSummary, scope_key)
                if row is not None and sequence <= row.watermark:
                    continue
                metrics, store_watermark = await self._compute(session, owner_id, category)
                snapshot = await self._write(
                    session, scope_key, owner_id, category, metrics, max(store_watermark, sequence)
                )
                if snapshot is not None:
                    written.append(snapshot)

            if written:
                await self._enqueue_insights(session, owner_id)
            await session.commit()

        await self._invalidate(written)
        return written

    # ------------------------------------------------------------------
    # Full recomputation
    # ------------------------------------------------------------------

    async def recompute_scope(self, owner_id: str, category: str | None = None) -> AnalyticsSnapshot | None:
        """Rebuild one scope from the primary records.

        The stored watermark never decreases. Returns the new snapshot, or
        None when the stored summary already matched.
        """
        async with self._session_maker() as session:
            snapshot = await self._recompute_in(session, owner_id, category)
            if snapshot is not None:
                await self._enqueue_insights(session, owner_id)
            await session.commit()
        if snapshot is not None:
            await self._invalidate([snapshot])
        return snapshot

    async def recompute_owner(self, owner_id: str) -> list[AnalyticsSnapshot]:
        """Rebuild the owner scope and every category scope of the owner.

        Category scopes with a stored summary but no remaining decisions are
        rebuilt too, which resets them to empty metrics.
        """
        async with self._session_maker() as session:
            categories = set(
                (
                    await session.execute(
                        select(Decision.category).where(Decision.owner_id == owner_id).distinct()
                    )
                ).scalars().all()
            )
            categories.update(
                c
                for c in (
                    await session.execute(
                        select(AnalyticsSummary.category).where(
                            AnalyticsSummary.owner_id == owner_id,
                            AnalyticsSummary.category.is_not(None),
                        )
                    )
                ).scalars().all()
            )

            written: list[AnalyticsSnapshot] = []
            for category in [None, *sorted(categories)]:
                snapshot = await self._recompute_in(session, owner_id, category)
                if snapshot is not None:
                    written.append(snapshot)

            if written:
                await self._enqueue_insights(session, owner_id)
            await session.commit()

        await self._invalidate(written)
        if written:
            logger.info(f"Recomputed {len(written)} summaries for owner {owner_id}")
        return written

    async def _recompute_in(
        self, session: AsyncSession, owner_id: str, category: str | None
    ) -> AnalyticsSnapshot | None:
        scope_key = scope_key_for(owner_id, category)
        row = await session.get(AnalyticsSummary, scope_key)
        metrics, store_watermark = await self._compute(session, owner_id, category)
        watermark = max(store_watermark, row.watermark if row is not None else 0)
        if row is not None and SummaryMetrics.model_validate(row.metrics) == metrics:
            return None
        return await self._write(
            session, scope_key, owner_id, category, metrics, watermark, allow_equal=True
        )

    async def owners_with_decisions(self) -> list[str]:
        async with self._session_maker() as session:
            result = await session.execute(select(Decision.owner_id).distinct())
            return sorted(result.scalars().all())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_summary(self, owner_id: str, category: str | None = None) -> AnalyticsSnapshot | None:
        async with self._session_maker() as session:
            return await load_snapshot(session, scope_key_for(owner_id, category))

    async def get_watermark(self, scope_key: str) -> int | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AnalyticsSummary.watermark).where(AnalyticsSummary.scope_key == scope_key)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _count_outcomes(
        self, session: AsyncSession, owner_id: str, category: str | None, up_to: int
    ) -> int:
        query = (
            select(func.count(Outcome.id))
            .join(Decision, Decision.id == Outcome.decision_id)
            .where(Outcome.owner_id == owner_id, Outcome.sequence <= up_to)
        )
        if category is not None:
            query = query.where(Decision.category == category)
        return (await session.execute(query)).scalar_one()

    async def _compute(
        self, session: AsyncSession, owner_id: str, category: str | None
    ) -> tuple[SummaryMetrics, int]:
        """Metrics and highest event sequence for a scope, from primary records."""
        decision_query = select(Decision).where(Decision.owner_id == owner_id)
        if category is not None:
            decision_query = decision_query.where(Decision.category == category)
        decisions = list((await session.execute(decision_query)).scalars().all())

        outcome_query = (
            select(Outcome, Decision.created_at)
            .join(Decision, Decision.id == Outcome.decision_id)
            .where(Outcome.owner_id == owner_id)
            .order_by(Outcome.sequence, Outcome.id)
        )
        if category is not None:
            outcome_query = outcome_query.where(Decision.category == category)
        outcome_rows = (await session.execute(outcome_query)).all()

        metrics = SummaryMetrics(
            decision_count=len(decisions),
            active_decision_count=sum(
                1 for d in decisions if d.status == DecisionStatus.ACTIVE.value
            ),
        )
        watermark = max((d.last_event_seq or 0 for d in decisions), default=0)
        for outcome, decision_created_at in outcome_rows:
            metrics.add_outcome(
                outcome.satisfaction,
                _seconds_between(decision_created_at, outcome.recorded_at),
                outcome.recorded_at,
            )
            watermark = max(watermark, outcome.sequence)
        return metrics.finalize(), watermark

    async def _write(
        self,
        session: AsyncSession,
        scope_key: str,
        owner_id: str,
        category: str | None,
        metrics: SummaryMetrics,
        watermark: int,
        allow_equal: bool = False,
    ) -> AnalyticsSnapshot | None:
        """Write a summary if `watermark` is newer than the stored one."""
        now = self._clock()
        data = metrics.model_dump(mode="json")
        row = await session.get(AnalyticsSummary, scope_key)

        if row is None:
            row = AnalyticsSummary(
                scope_key=scope_key,
                owner_id=owner_id,
                category=category,
                version=1,
                watermark=watermark,
                metrics=data,
                updated_at=now,
            )
            session.add(row)
            await session.flush()
            return to_snapshot(row)

        if row.owner_id != owner_id:
            CONSISTENCY_VIOLATIONS.labels(component="aggregation").inc()
            raise ConsistencyViolation(
                f"Summary {scope_key} belongs to owner {row.owner_id}, not {owner_id}"
            )

        guard = (
            AnalyticsSummary.watermark <= watermark
            if allow_equal
            else AnalyticsSummary.watermark < watermark
        )
        result = await session.execute(
            update(AnalyticsSummary)
            .where(AnalyticsSummary.scope_key == scope_key, guard)
            .values(
                metrics=data,
                watermark=watermark,
                version=AnalyticsSummary.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Summary {scope_key} moved past watermark {watermark}; not written")
            return None

        await session.refresh(row)
        return to_snapshot(row)

    async def _enqueue_insights(self, session: AsyncSession, owner_id: str) -> None:
        if self.queue is None:
            return
        # One pending evaluation per owner is enough: it reads the latest summaries when it runs
        await self.queue.enqueue_payload(
            EvaluateInsightsPayload(owner_id=owner_id),
            idempotency_key=f"insights:{owner_id}",
            ordering_key=f"owner:{owner_id}",
            session=session,
        )

    async def _invalidate(self, snapshots: list[AnalyticsSnapshot]) -> None:
        if self.cache is None:
            return
        for snapshot in snapshots:
            await self.cache.invalidate(snapshot.scope_key)
