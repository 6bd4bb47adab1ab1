"""Mock implementations for testing."""

from .clock import FakeClock
from .llm_mock import MockEmbeddingService, MockExplanationService

__all__ = [
    "FakeClock",
    "MockEmbeddingService",
    "MockExplanationService",
]
