"""Explanation capability backed by an OpenAI-compatible chat model (NVIDIA NIM by default).

Used only to phrase insights. It is best-effort: callers fall back to a
template when it is disabled, times out, or fails.
"""

import json
import re
from typing import Any

from openai import (
    APIConnectionError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from config import get_settings
from models.errors import PermanentInputError
from services.capabilities import ExplanationCapability, call_upstream
from utils.circuit_breaker import CircuitBreaker, get_circuit_breaker
from utils.logging import get_logger

logger = get_logger(__name__)

LLM_CIRCUIT_BREAKER_EXCEPTIONS = {
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    ConnectionError,
    TimeoutError,
}

SYSTEM_PROMPT = (
    "You write short, supportive explanations of patterns found in a person's "
    "decision journal. Use only the evidence given. Two or three sentences, "
    "second person, no headings, no lists, no speculation about causes that "
    "the evidence does not show."
)


def strip_thinking_tags(text: str) -> str:
    """Remove <think>...</think> tags from model output.

    Handles various formats:
    - <think>...</think>  (Nemotron/DeepSeek style)
    - <think attr>...</think>  (any attributes)
    - <thinking>...</thinking>
    - Unclosed tags (removes from opening tag to true end-of-string)
    """
    if not text:
        return text

    patterns = [
        r"<think\b[^>]*>.*?</think>\s*",
        r"<thinking\b[^>]*>.*?</thinking>\s*",
    ]
    for pattern in patterns:
        text = re.sub(pattern, "", text, flags=re.DOTALL | re.IGNORECASE)

    # Unclosed tag: drop everything to the true end (\Z, not $, under DOTALL)
    unclosed_patterns = [
        r"<think\b[^>]*>.*\Z",
        r"<thinking\b[^>]*>.*\Z",
    ]
    for pattern in unclosed_patterns:
        text = re.sub(pattern, "", text, flags=re.DOTALL | re.IGNORECASE)

    return text.strip()


def build_messages(evidence: dict[str, Any]) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": "Explain this finding to the user.\n\nEvidence:\n"
            + json.dumps(evidence, indent=2, sort_keys=True, default=str),
        },
    ]


class LLMClient(ExplanationCapability):
    """Chat-completions client with a bounded timeout and circuit breaker.

    No client-side retries: a failed explanation falls back to the
    template rather than holding up the insight job.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self.settings = get_settings()
        self.client = client or AsyncOpenAI(
            api_key=self.settings.get_llm_api_key(),
            base_url=self.settings.llm_base_url,
            max_retries=0,
        )
        self.model = self.settings.llm_model
        self.timeout = self.settings.llm_timeout
        self.max_tokens = self.settings.llm_max_tokens
        self._circuit_breaker = get_circuit_breaker(
            name="explanation",
            failure_threshold=3,
            recovery_timeout=60.0,
            success_threshold=1,
            exceptions=LLM_CIRCUIT_BREAKER_EXCEPTIONS,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def _log_token_usage(self, usage) -> None:
        if usage is None:
            return
        logger.info(
            f"LLM usage: model={self.model}, prompt_tokens={usage.prompt_tokens}, "
            f"completion_tokens={usage.completion_tokens}, total_tokens={usage.total_tokens}",
            extra={
                "model": self.model,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            },
        )

    async def summarize(self, evidence: dict[str, Any]) -> str:
        """Phrase an insight's evidence as two or three sentences.

        Raises:
            TransientUpstreamError: timeout, rate limit, outage, open circuit
            PermanentInputError: request rejected or empty completion
        """

        async def _complete():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=build_messages(evidence),
                temperature=0.3,
                max_tokens=self.max_tokens,
            )

        response = await call_upstream("explanation", self._circuit_breaker, _complete, self.timeout)
        self._log_token_usage(getattr(response, "usage", None))

        if not response.choices:
            raise PermanentInputError("Explanation response contained no choices")
        text = strip_thinking_tags(response.choices[0].message.content or "")
        if not text:
            raise PermanentInputError("Explanation response was empty")
        return text


_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    """Get the explanation client singleton."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
