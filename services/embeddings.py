"""Embedding capability client for an OpenAI-compatible endpoint (NVIDIA NIM by default).

Features:
- API key accessed via SecretStr.get_secret_value()
- Bounded timeout per call; client-side retries disabled (the job queue retries)
- Circuit breaker shared by every caller in the process
- Output validated against the configured dimensionality
"""

from openai import (
    APIConnectionError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from config import get_settings
from models.errors import PermanentInputError
from services.capabilities import EmbeddingCapability, call_upstream
from utils.circuit_breaker import CircuitBreaker, get_circuit_breaker
from utils.logging import get_logger
from utils.vectors import is_valid_vector

logger = get_logger(__name__)

# Exceptions that should trip the circuit breaker
EMBEDDING_CIRCUIT_BREAKER_EXCEPTIONS = {
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    ConnectionError,
    TimeoutError,
}


class EmbeddingService(EmbeddingCapability):
    """Generate decision embeddings through the configured embedding model."""

    def __init__(self, client: AsyncOpenAI | None = None):
        settings = get_settings()
        self.client = client or AsyncOpenAI(
            api_key=settings.get_embedding_api_key(),
            base_url=settings.embedding_base_url,
            max_retries=0,
        )
        self.model = settings.embedding_model
        self._dimensions = settings.embedding_dimensions
        self.timeout = settings.embedding_timeout
        self._circuit_breaker = get_circuit_breaker(
            name="embedding",
            failure_threshold=5,
            recovery_timeout=30.0,
            success_threshold=2,
            exceptions=EMBEDDING_CIRCUIT_BREAKER_EXCEPTIONS,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_version(self) -> str:
        return f"{self.model}@{self._dimensions}"

    async def embed(self, text: str, input_type: str = "passage") -> list[float]:
        """Embed one text.

        Args:
            text: The text to embed
            input_type: "query" for search queries, "passage" for documents

        Raises:
            TransientUpstreamError: timeout, rate limit, upstream outage, open circuit
            PermanentInputError: empty text, rejected input, or wrong-sized vector
        """
        if not text or not text.strip():
            raise PermanentInputError("Cannot embed empty text")

        async def _create():
            return await self.client.embeddings.create(
                input=[text],
                model=self.model,
                encoding_format="float",
                extra_body={"input_type": input_type, "truncate": "END"},
            )

        response = await call_upstream("embedding", self._circuit_breaker, _create, self.timeout)

        if not response.data:
            raise PermanentInputError("Embedding response contained no vectors")
        vector = [float(x) for x in response.data[0].embedding]
        if not is_valid_vector(vector, self._dimensions):
            raise PermanentInputError(
                f"Embedding has {len(vector)} dimensions, expected {self._dimensions}"
            )
        return vector


_embedding_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    """Get the embedding service singleton."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
