"""Owner-scoped nearest-neighbour search over decision embeddings.

Vectors are stored in the `similarity_index` table and scored with exact
cosine similarity in process. Every query is filtered by owner before any
scoring happens; a row from another owner reaching the scorer is a
ConsistencyViolation, never a result.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.errors import ConsistencyViolation, PermanentInputError
from models.postgres import SimilarityIndexEntry
from models.schemas import SimilarityHit
from utils.logging import get_logger
from utils.metrics import CONSISTENCY_VIOLATIONS
from utils.time import Clock, utcnow
from utils.vectors import cosine_similarity

logger = get_logger(__name__)


class SimilarityIndex:
    """Read/write access to the similarity index.

    Writes accept an optional session so the embedding producer can commit
    the embedding row and the index entry in one transaction.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = utcnow):
        self._session_maker = session_maker
        self._clock = clock

    @asynccontextmanager
    async def _session(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_maker() as own_session:
            yield own_session
            await own_session.commit()

    async def upsert(
        self,
        decision_id: str,
        owner_id: str,
        vector: list[float],
        decision_created_at: datetime,
        model_version: str,
        session: AsyncSession | None = None,
    ) -> None:
        """Insert or replace the entry for a decision."""
        if not vector:
            raise PermanentInputError(f"Refusing to index empty vector for decision {decision_id}")

        async with self._session(session) as s:
            entry = await s.get(SimilarityIndexEntry, decision_id)
            if entry is None:
                s.add(
                    SimilarityIndexEntry(
                        decision_id=decision_id,
                        owner_id=owner_id,
                        vector=list(vector),
                        model_version=model_version,
                        decision_created_at=decision_created_at,
                        indexed_at=self._clock(),
                    )
                )
            else:
                if entry.owner_id != owner_id:
                    CONSISTENCY_VIOLATIONS.labels(component="similarity_index").inc()
                    raise ConsistencyViolation(
                        f"Decision {decision_id} is indexed for owner {entry.owner_id}, "
                        f"refusing to re-index it for {owner_id}"
                    )
                entry.vector = list(vector)
                entry.model_version = model_version
                entry.decision_created_at = decision_created_at
                entry.indexed_at = self._clock()
            await s.flush()

    async def remove(self, decision_id: str, session: AsyncSession | None = None) -> bool:
        """Drop a decision's entry. Returns False if there was none."""
        async with self._session(session) as s:
            result = await s.execute(
                delete(SimilarityIndexEntry).where(SimilarityIndexEntry.decision_id == decision_id)
            )
        return result.rowcount > 0

    async def get_entry(self, decision_id: str) -> SimilarityIndexEntry | None:
        async with self._session_maker() as session:
            return await session.get(SimilarityIndexEntry, decision_id)

    async def query(
        self,
        owner_id: str,
        vector: list[float],
        k: int,
        exclude_decision_id: str | None = None,
    ) -> list[SimilarityHit]:
        """Top-k most similar decisions of one owner.

        Ordered by descending score; equal scores put the more recently
        created decision first. Returns fewer than k hits when the owner has
        fewer indexed decisions, and an empty list when there are none.
        """
        if k <= 0 or not vector:
            return []

        async with self._session_maker() as session:
            result = await session.execute(
                select(SimilarityIndexEntry).where(SimilarityIndexEntry.owner_id == owner_id)
            )
            entries = list(result.scalars().all())

        scored: list[tuple[float, datetime, str]] = []
        skipped = 0
        for entry in entries:
            if entry.owner_id != owner_id:
                CONSISTENCY_VIOLATIONS.labels(component="similarity_index").inc()
                raise ConsistencyViolation(
                    f"Similarity query for owner {owner_id} saw decision "
                    f"{entry.decision_id} of owner {entry.owner_id}"
                )
            if entry.decision_id == exclude_decision_id:
                continue
            if len(entry.vector) != len(vector):
                # Embedded by a model with another dimensionality; skipped until re-embedded
                skipped += 1
                continue
            scored.append((cosine_similarity(vector, entry.vector), entry.decision_created_at, entry.decision_id))

        if skipped:
            logger.warning(
                f"Skipped {skipped} index entries with mismatched dimensions for owner {owner_id}"
            )

        scored.sort(key=lambda item: (-item[0], -item[1].timestamp(), item[2]))
        return [SimilarityHit(decision_id=decision_id, score=score) for score, _, decision_id in scored[:k]]
