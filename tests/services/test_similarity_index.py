"""Tests for owner-scoped similarity search."""

from datetime import datetime

import pytest

from models.errors import ConsistencyViolation, PermanentInputError
from services.similarity_index import SimilarityIndex


@pytest.fixture
def index(session_maker, clock):
    return SimilarityIndex(session_maker, clock=clock)


async def _add(index, decision_id, owner_id, vector, created_at=datetime(2026, 3, 1), model="m1"):
    await index.upsert(decision_id, owner_id, vector, created_at, model)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_replaces_existing_entry(self, index):
        await _add(index, "d1", "u1", [1.0, 0.0])
        await _add(index, "d1", "u1", [0.0, 1.0], model="m2")

        entry = await index.get_entry("d1")
        assert entry.vector == [0.0, 1.0]
        assert entry.model_version == "m2"

    @pytest.mark.asyncio
    async def test_rejects_empty_vector(self, index):
        with pytest.raises(PermanentInputError):
            await _add(index, "d1", "u1", [])

    @pytest.mark.asyncio
    async def test_owner_change_is_consistency_violation(self, index):
        """Should refuse to move a decision to another owner's index."""
        await _add(index, "d1", "u1", [1.0, 0.0])

        with pytest.raises(ConsistencyViolation):
            await _add(index, "d1", "u2", [1.0, 0.0])

        assert (await index.get_entry("d1")).owner_id == "u1"

    @pytest.mark.asyncio
    async def test_remove(self, index):
        await _add(index, "d1", "u1", [1.0, 0.0])

        assert await index.remove("d1") is True
        assert await index.remove("d1") is False
        assert await index.get_entry("d1") is None


class TestQuery:
    @pytest.mark.asyncio
    async def test_orders_by_descending_similarity(self, index):
        await _add(index, "far", "u1", [0.0, 1.0])
        await _add(index, "near", "u1", [1.0, 0.1])
        await _add(index, "same", "u1", [1.0, 0.0])

        hits = await index.query("u1", [1.0, 0.0], k=3)

        assert [h.decision_id for h in hits] == ["same", "near", "far"]
        assert hits[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_never_returns_other_owners(self, index):
        """Should only score the querying owner's decisions."""
        await _add(index, "mine", "u1", [0.0, 1.0])
        await _add(index, "theirs", "u2", [1.0, 0.0])

        hits = await index.query("u1", [1.0, 0.0], k=5)

        assert [h.decision_id for h in hits] == ["mine"]

    @pytest.mark.asyncio
    async def test_ties_prefer_newer_decisions(self, index):
        await _add(index, "old", "u1", [1.0, 0.0], created_at=datetime(2026, 1, 1))
        await _add(index, "new", "u1", [1.0, 0.0], created_at=datetime(2026, 2, 1))

        hits = await index.query("u1", [1.0, 0.0], k=2)

        assert [h.decision_id for h in hits] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_returns_fewer_than_k(self, index):
        await _add(index, "d1", "u1", [1.0, 0.0])

        assert len(await index.query("u1", [1.0, 0.0], k=10)) == 1

    @pytest.mark.asyncio
    async def test_empty_for_unknown_owner_or_nonpositive_k(self, index):
        await _add(index, "d1", "u1", [1.0, 0.0])

        assert await index.query("nobody", [1.0, 0.0], k=5) == []
        assert await index.query("u1", [1.0, 0.0], k=0) == []

    @pytest.mark.asyncio
    async def test_excludes_query_decision(self, index):
        await _add(index, "d1", "u1", [1.0, 0.0])
        await _add(index, "d2", "u1", [0.9, 0.1])

        hits = await index.query("u1", [1.0, 0.0], k=5, exclude_decision_id="d1")

        assert [h.decision_id for h in hits] == ["d2"]

    @pytest.mark.asyncio
    async def test_skips_mismatched_dimensions(self, index):
        """Should ignore entries embedded with another dimensionality."""
        await _add(index, "d1", "u1", [1.0, 0.0])
        await _add(index, "d2", "u1", [1.0, 0.0, 0.0])

        hits = await index.query("u1", [1.0, 0.0], k=5)

        assert [h.decision_id for h in hits] == ["d1"]
