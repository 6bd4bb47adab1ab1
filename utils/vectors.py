"""Vector helpers shared by the embedding producer and similarity index."""

import hashlib
import math
from typing import Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero magnitude.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def is_valid_vector(vector: Sequence[float], dimensions: int) -> bool:
    """Check length and that every component is a finite number."""
    if len(vector) != dimensions:
        return False
    return all(
        isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)
        for x in vector
    )


def content_hash(text: str) -> str:
    """Stable hash of embedding input, used to skip redundant upstream calls."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
