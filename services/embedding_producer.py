"""Turns decision text into stored embeddings and similarity index entries.

produce_embedding() is idempotent: when the stored embedding was built from
the same text by the same model version and the index already has the
entry, no upstream call is made. The upstream call happens outside any
database transaction; the embedding row and the index entry are then
written together in a single transaction.
"""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.errors import PermanentInputError
from models.postgres import Decision, DecisionEmbedding
from services.capabilities import EmbeddingCapability
from services.similarity_index import SimilarityIndex
from utils.logging import get_logger
from utils.time import Clock, utcnow
from utils.vectors import content_hash

logger = get_logger(__name__)


def build_embedding_input(decision: Decision) -> str:
    """Text sent to the embedding model for one decision."""
    title = (decision.title or "").strip()
    description = (decision.description or "").strip()
    if not title and not description:
        raise PermanentInputError(f"Decision {decision.id} has no text to embed")

    parts = []
    if title:
        parts.append(f"Title: {title}")
    if decision.category:
        parts.append(f"Category: {decision.category}")
    if description:
        parts.append(f"Description: {description}")
    return "\n".join(parts)


class EmbeddingProducer:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        embedder: EmbeddingCapability,
        index: SimilarityIndex,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.embedder = embedder
        self.index = index
        self._clock = clock

    async def _current_embedding(self, session: AsyncSession, decision_id: str) -> DecisionEmbedding | None:
        result = await session.execute(
            select(DecisionEmbedding).where(DecisionEmbedding.decision_id == decision_id)
        )
        return result.scalar_one_or_none()

    async def produce_embedding(self, decision_id: str) -> DecisionEmbedding:
        """Embed a decision and index it for its owner.

        Raises:
            PermanentInputError: decision missing, no text, bad vector
            TransientUpstreamError: embedding capability unavailable
        """
        async with self._session_maker() as session:
            decision = await session.get(Decision, decision_id)
            if decision is None:
                raise PermanentInputError(f"Decision {decision_id} not found")
            text = build_embedding_input(decision)
            digest = content_hash(text)
            owner_id = decision.owner_id
            created_at = decision.created_at

            existing = await self._current_embedding(session, decision_id)
            if (
                existing is not None
                and existing.content_hash == digest
                and existing.model_version == self.embedder.model_version
                and await self.index.get_entry(decision_id) is not None
            ):
                logger.debug(f"Embedding for decision {decision_id} is current; skipping")
                return existing

        vector = await self.embedder.embed(text)
        if len(vector) != self.embedder.dimensions:
            raise PermanentInputError(
                f"Embedding for decision {decision_id} has {len(vector)} dimensions, "
                f"expected {self.embedder.dimensions}"
            )

        now = self._clock()
        async with self._session_maker() as session:
            async with session.begin():
                if await session.get(Decision, decision_id) is None:
                    raise PermanentInputError(f"Decision {decision_id} was deleted while embedding")

                embedding = await self._current_embedding(session, decision_id)
                if embedding is None:
                    embedding = DecisionEmbedding(decision_id=decision_id, owner_id=owner_id)
                    session.add(embedding)
                embedding.owner_id = owner_id
                embedding.vector = vector
                embedding.dimensions = len(vector)
                embedding.model_version = self.embedder.model_version
                embedding.content_hash = digest
                embedding.generated_at = now

                await self.index.upsert(
                    decision_id,
                    owner_id,
                    vector,
                    decision_created_at=created_at,
                    model_version=self.embedder.model_version,
                    session=session,
                )

        logger.info(
            f"Embedded decision {decision_id} ({len(vector)} dims, {self.embedder.model_version})"
        )
        return embedding

    async def remove_embedding(self, decision_id: str) -> None:
        """Delete a decision's embedding and index entry. Safe to repeat."""
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    delete(DecisionEmbedding).where(DecisionEmbedding.decision_id == decision_id)
                )
                removed = await self.index.remove(decision_id, session=session)
        if removed:
            logger.info(f"Removed decision {decision_id} from the similarity index")
