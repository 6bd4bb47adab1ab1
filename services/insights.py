"""Rule-based insight generation over an owner's analytics.

Rules run in a fixed order and each yields zero or more candidates. A
candidate is identified by `<owner_id>:<rule_id>:<scope>`; it is suppressed
while an insight with the same key exists inside the cooldown window
(dismissed or not). Surviving candidates get an explanation from the
optional explanation capability, falling back to a deterministic template,
and are persisted together with their dispatch_notification jobs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TYPE_CHECKING

from sqlalchemy import and_, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from models.postgres import (
    AnalyticsSummary,
    Decision,
    DecisionStatus,
    Insight,
    InsightKind,
    Outcome,
)
from models.schemas import AnalyticsSnapshot, NotificationPayload
from services.aggregation import to_snapshot
from services.capabilities import ExplanationCapability
from utils.logging import get_logger
from utils.metrics import INSIGHTS_GENERATED, INSIGHTS_SUPPRESSED
from utils.time import Clock, utcnow

if TYPE_CHECKING:
    from services.job_queue import JobQueue

logger = get_logger(__name__)


def least_squares_slope(values: list[float]) -> float:
    """Slope of values against their index; 0.0 with fewer than two points."""
    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    numerator = sum((i - mean_x) * (y - mean_y) for i, y in enumerate(values))
    denominator = sum((i - mean_x) ** 2 for i in range(n))
    return numerator / denominator


@dataclass
class InsightCandidate:
    rule_id: str
    kind: InsightKind
    scope: str
    title: str
    template: str
    evidence: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleContext:
    session: AsyncSession
    owner_id: str
    now: datetime
    settings: Settings
    category_summaries: list[AnalyticsSnapshot]


class InsightRule(ABC):
    rule_id: str
    kind: InsightKind

    @abstractmethod
    async def evaluate(self, ctx: RuleContext) -> list[InsightCandidate]:
        ...


async def _recent_scores(
    ctx: RuleContext, category: str, limit: int
) -> list[tuple[str, float]]:
    """Last `limit` (decision_id, satisfaction) of a category, oldest first."""
    result = await ctx.session.execute(
        select(Outcome.decision_id, Outcome.satisfaction)
        .join(Decision, Decision.id == Outcome.decision_id)
        .where(Outcome.owner_id == ctx.owner_id, Decision.category == category)
        .order_by(Outcome.sequence.desc(), Outcome.id.desc())
        .limit(limit)
    )
    return list(reversed(result.all()))


def _summary_evidence(summary: AnalyticsSnapshot) -> dict[str, Any]:
    return {
        "scope_key": summary.scope_key,
        "version": summary.version,
        "watermark": summary.watermark,
        "outcome_count": summary.metrics.outcome_count,
        "average_satisfaction": summary.metrics.average_satisfaction,
    }


class DecliningSatisfactionRule(InsightRule):
    rule_id = "declining_satisfaction"
    kind = InsightKind.WARNING

    async def evaluate(self, ctx: RuleContext) -> list[InsightCandidate]:
        window = ctx.settings.insight_trend_window
        candidates = []
        for summary in ctx.category_summaries:
            if summary.metrics.outcome_count < window:
                continue
            recent = await _recent_scores(ctx, summary.category, window)
            scores = [float(s) for _, s in recent]
            slope = least_squares_slope(scores)
            if not (slope < 0 and scores[-1] < scores[0]):
                continue

            category = summary.category
            candidates.append(
                InsightCandidate(
                    rule_id=self.rule_id,
                    kind=self.kind,
                    scope=f"category:{category}",
                    title=f"Satisfaction is declining in {category}",
                    template=(
                        f"Your last {window} outcomes in {category} went from "
                        f"{scores[0]:g} to {scores[-1]:g}. It may be worth looking at "
                        f"what changed in how you make {category} decisions."
                    ),
                    evidence={
                        "category": category,
                        "window": window,
                        "scores": scores,
                        "slope": round(slope, 4),
                        "decision_ids": list(dict.fromkeys(d for d, _ in recent)),
                        "summary": _summary_evidence(summary),
                    },
                )
            )
        return candidates


class LowSatisfactionRule(InsightRule):
    rule_id = "low_satisfaction"
    kind = InsightKind.WARNING

    async def evaluate(self, ctx: RuleContext) -> list[InsightCandidate]:
        threshold = ctx.settings.insight_low_satisfaction_threshold
        min_outcomes = ctx.settings.insight_low_satisfaction_min_outcomes
        candidates = []
        for summary in ctx.category_summaries:
            metrics = summary.metrics
            if metrics.outcome_count < min_outcomes or metrics.average_satisfaction is None:
                continue
            if metrics.average_satisfaction >= threshold:
                continue

            category = summary.category
            candidates.append(
                InsightCandidate(
                    rule_id=self.rule_id,
                    kind=self.kind,
                    scope=f"category:{category}",
                    title=f"Outcomes in {category} are consistently unsatisfying",
                    template=(
                        f"Across {metrics.outcome_count} outcomes in {category} your average "
                        f"satisfaction is {metrics.average_satisfaction:.1f}. Consider "
                        f"revisiting how you weigh options in this area."
                    ),
                    evidence={
                        "category": category,
                        "threshold": threshold,
                        "summary": _summary_evidence(summary),
                    },
                )
            )
        return candidates


class DecisionFrequencySpikeRule(InsightRule):
    rule_id = "decision_frequency_spike"
    kind = InsightKind.PATTERN

    async def _count_between(self, ctx: RuleContext, start: datetime, end: datetime) -> int:
        result = await ctx.session.execute(
            select(func.count(Decision.id)).where(
                Decision.owner_id == ctx.owner_id,
                Decision.created_at >= start,
                Decision.created_at < end,
            )
        )
        return result.scalar_one()

    async def evaluate(self, ctx: RuleContext) -> list[InsightCandidate]:
        settings = ctx.settings
        window = timedelta(days=settings.insight_spike_window_days)
        windows = settings.insight_spike_baseline_windows

        window_start = ctx.now - window
        recent = await self._count_between(ctx, window_start, ctx.now + timedelta(seconds=1))
        if recent < settings.insight_spike_min_decisions:
            return []

        baseline_total = await self._count_between(
            ctx, window_start - window * windows, window_start
        )
        baseline = baseline_total / windows
        # No history means no baseline to spike against
        if baseline <= 0 or recent <= settings.insight_spike_multiplier * baseline:
            return []

        days = settings.insight_spike_window_days
        return [
            InsightCandidate(
                rule_id=self.rule_id,
                kind=self.kind,
                scope="owner",
                title="You're making more decisions than usual",
                template=(
                    f"You logged {recent} decisions in the last {days} days, against a "
                    f"typical {baseline:.1f}. Busy periods are a good time to slow down "
                    f"on the ones that matter most."
                ),
                evidence={
                    "window_days": days,
                    "recent_count": recent,
                    "baseline_average": round(baseline, 2),
                    "baseline_windows": windows,
                },
            )
        ]


class MissingOutcomeRule(InsightRule):
    rule_id = "missing_outcome"
    kind = InsightKind.SUGGESTION

    async def evaluate(self, ctx: RuleContext) -> list[InsightCandidate]:
        days = ctx.settings.insight_missing_outcome_days
        cutoff = ctx.now - timedelta(days=days)
        has_outcome = exists().where(Outcome.decision_id == Decision.id)
        result = await ctx.session.execute(
            select(Decision.id, Decision.created_at)
            .where(
                Decision.owner_id == ctx.owner_id,
                Decision.status == DecisionStatus.ACTIVE.value,
                Decision.created_at <= cutoff,
                ~has_outcome,
            )
            .order_by(Decision.created_at)
            .limit(ctx.settings.insight_recent_decision_limit)
        )
        rows = result.all()
        if not rows:
            return []

        return [
            InsightCandidate(
                rule_id=self.rule_id,
                kind=self.kind,
                scope="owner",
                title="Some decisions are waiting for an outcome",
                template=(
                    f"{len(rows)} decision(s) older than {days} days have no recorded "
                    f"outcome. Recording how they turned out makes your trends more accurate."
                ),
                evidence={
                    "older_than_days": days,
                    "count": len(rows),
                    "decision_ids": [decision_id for decision_id, _ in rows[:10]],
                    "oldest_created_at": rows[0][1].isoformat(),
                },
            )
        ]


def default_rules() -> list[InsightRule]:
    return [
        DecliningSatisfactionRule(),
        LowSatisfactionRule(),
        DecisionFrequencySpikeRule(),
        MissingOutcomeRule(),
    ]


class InsightGenerator:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: "JobQueue | None" = None,
        explainer: ExplanationCapability | None = None,
        rules: list[InsightRule] | None = None,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.queue = queue
        self.explainer = explainer
        self.rules = rules if rules is not None else default_rules()
        self._clock = clock
        self.settings = get_settings()

    @staticmethod
    def dedupe_key(owner_id: str, candidate: InsightCandidate) -> str:
        return f"{owner_id}:{candidate.rule_id}:{candidate.scope}"

    async def _in_cooldown(
        self, session: AsyncSession, owner_id: str, dedupe_key: str, now: datetime
    ) -> bool:
        since = now - timedelta(hours=self.settings.insight_cooldown_hours)
        result = await session.execute(
            select(Insight.id)
            .where(
                and_(
                    Insight.owner_id == owner_id,
                    Insight.dedupe_key == dedupe_key,
                    Insight.created_at >= since,
                )
            )
            .limit(1)
        )
        return result.first() is not None

    async def _explain(self, candidate: InsightCandidate) -> tuple[str, str]:
        """(explanation, source); source is "ai" or "template"."""
        if self.explainer is None or not self.settings.llm_enabled:
            return candidate.template, "template"
        try:
            text = await self.explainer.summarize(
                {"rule": candidate.rule_id, "title": candidate.title, **candidate.evidence}
            )
        except Exception as e:
            logger.warning(
                f"Explanation for {candidate.rule_id} unavailable, using template: "
                f"{type(e).__name__}: {e}"
            )
            return candidate.template, "template"
        if not text or not text.strip():
            return candidate.template, "template"
        return text.strip(), "ai"

    async def evaluate(self, owner_id: str) -> list[Insight]:
        """Run every rule for an owner; returns the newly persisted insights."""
        now = self._clock()
        async with self._session_maker() as session:
            result = await session.execute(
                select(AnalyticsSummary)
                .where(
                    AnalyticsSummary.owner_id == owner_id,
                    AnalyticsSummary.category.is_not(None),
                )
                .order_by(AnalyticsSummary.scope_key)
            )
            ctx = RuleContext(
                session=session,
                owner_id=owner_id,
                now=now,
                settings=self.settings,
                category_summaries=[to_snapshot(row) for row in result.scalars().all()],
            )

            fresh: list[tuple[InsightCandidate, str]] = []
            for rule in self.rules:
                for candidate in await rule.evaluate(ctx):
                    key = self.dedupe_key(owner_id, candidate)
                    if await self._in_cooldown(session, owner_id, key, now):
                        INSIGHTS_SUPPRESSED.labels(rule_id=candidate.rule_id).inc()
                        logger.debug(f"Insight {key} suppressed by cooldown")
                        continue
                    fresh.append((candidate, key))

        if not fresh:
            return []

        # Explanations are fetched outside any transaction
        explained = [(c, key, *await self._explain(c)) for c, key in fresh]

        persisted: list[Insight] = []
        async with self._session_maker() as session:
            async with session.begin():
                for candidate, key, explanation, source in explained:
                    if await self._in_cooldown(session, owner_id, key, now):
                        continue
                    insight = Insight(
                        owner_id=owner_id,
                        kind=candidate.kind.value,
                        rule_id=candidate.rule_id,
                        scope=candidate.scope,
                        title=candidate.title,
                        explanation=explanation,
                        explanation_source=source,
                        evidence=candidate.evidence,
                        dedupe_key=key,
                        created_at=now,
                    )
                    session.add(insight)
                    await session.flush()
                    if self.queue is not None:
                        await self.queue.enqueue_payload(
                            NotificationPayload(
                                owner_id=owner_id,
                                dedupe_key=f"insight:{insight.id}",
                                type="insight",
                                title=candidate.title,
                                body=explanation,
                                data={"insight_id": insight.id, "kind": insight.kind},
                            ),
                            idempotency_key=f"notify:insight:{insight.id}",
                            ordering_key=f"notify:{owner_id}",
                            session=session,
                        )
                    persisted.append(insight)

        for insight in persisted:
            INSIGHTS_GENERATED.labels(
                rule_id=insight.rule_id, explanation_source=insight.explanation_source
            ).inc()
            logger.info(
                f"Generated {insight.rule_id} insight {insight.id} for owner {owner_id} "
                f"({insight.explanation_source} explanation)"
            )
        return persisted
