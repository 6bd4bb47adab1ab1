"""Tests for vector helpers."""

import math

import pytest

from utils.vectors import content_hash, cosine_similarity, is_valid_vector


class TestCosineSimilarity:
    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_scale_invariant(self):
        assert cosine_similarity([1.0, 1.0], [3.0, 3.0]) == pytest.approx(1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 0.0])


class TestIsValidVector:
    def test_accepts_finite_vector_of_right_size(self):
        assert is_valid_vector([0.1, -0.2, 3], 3)

    @pytest.mark.parametrize(
        "vector",
        [[0.1, 0.2], [0.1, math.nan, 0.3], [0.1, math.inf, 0.3], [0.1, True, 0.3], [0.1, "x", 0.3]],
    )
    def test_rejects_invalid_vectors(self, vector):
        assert not is_valid_vector(vector, 3)


def test_content_hash_is_stable():
    assert content_hash("Title: Move abroad") == content_hash("Title: Move abroad")
    assert content_hash("Title: Move abroad") != content_hash("Title: Stay home")
