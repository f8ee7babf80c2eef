"""
CalmText - Response Generator Service

Produces the conversational reply for non-command messages.

Architecture:
    - Protocol defines the interface for generators
    - DummyResponseGenerator: canned supportive replies for development/testing
    - AnthropicResponseGenerator: Anthropic Messages API over httpx

Contract:
    generate() either returns a GenerationResult or raises GenerationError.
    It never substitutes a fallback itself; the orchestrator owns fallbacks
    so that crisis-aware fallback text is chosen in one place.
"""

from __future__ import annotations

import logging
import time
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

import httpx

from calmtext.core.exceptions import ConfigurationError, GenerationError
from calmtext.core.types import ContextSnapshot, GenerationResult, Sentiment
from calmtext.services.conversation import (
    analyze_sentiment,
    build_messages,
    build_system_prompt,
    ensure_sms_friendly,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class ResponseGenerator(Protocol):
    """
    Protocol for reply generation.

    Implementations receive the inbound text and a read-only context
    snapshot and return SMS-sized text.
    """

    @abstractmethod
    async def generate(self, message: str, context: ContextSnapshot) -> GenerationResult:
        """
        Generate a reply.

        Raises:
            GenerationError: If the backend call fails
        """
        ...

    @property
    @abstractmethod
    def generator_id(self) -> str:
        """Return backend identifier."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

class DummyResponseGenerator:
    """
    Canned replies keyed on message sentiment.

    Requires no API key. Useful for local development and tests; records
    the last context it was called with.
    """

    REPLIES = {
        Sentiment.POSITIVE: "That's really good to hear. What's been helping you feel this way?",
        Sentiment.NEGATIVE: "That sounds really hard, and it makes sense you'd feel that way. What part feels the heaviest right now?",
        Sentiment.NEUTRAL: "Thanks for sharing that with me. How are you feeling about it right now?",
    }

    def __init__(self):
        self._call_count = 0
        self.last_context: Optional[ContextSnapshot] = None

    @property
    def generator_id(self) -> str:
        return "dummy-generator-v0.1"

    @property
    def call_count(self) -> int:
        return self._call_count

    async def generate(self, message: str, context: ContextSnapshot) -> GenerationResult:
        self._call_count += 1
        self.last_context = context
        reply = self.REPLIES[analyze_sentiment(message)]
        return GenerationResult(success=True, text=reply)

    async def close(self) -> None:
        return None


# =============================================================================
# Anthropic Implementation (Production)
# =============================================================================

class AnthropicResponseGenerator:
    """
    Reply generation through the Anthropic Messages API.

    Uses a single pooled httpx.AsyncClient for the lifetime of the process.
    Timeouts come from settings; the orchestrator adds none of its own.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        max_tokens: int = 500,
        temperature: float = 0.7,
        timeout_seconds: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY must be set when generator_backend='anthropic'"
            )
        self._api_url = api_url
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )

    @property
    def generator_id(self) -> str:
        return f"anthropic:{self._model}"

    async def generate(self, message: str, context: ContextSnapshot) -> GenerationResult:
        payload = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "system": build_system_prompt(context),
            "messages": build_messages(message, context),
        }

        start = time.time()
        try:
            response = await self._client.post(self._api_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"Anthropic API returned {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"Anthropic API call failed: {type(e).__name__}") from e

        text = _extract_text(data)
        if not text:
            raise GenerationError("Anthropic API returned no text content")

        usage = data.get("usage") or {}
        logger.info(
            "Generation complete: model=%s, %.0fms, tokens_in=%s, tokens_out=%s",
            self._model,
            (time.time() - start) * 1000,
            usage.get("input_tokens"),
            usage.get("output_tokens"),
        )

        return GenerationResult(
            success=True,
            text=ensure_sms_friendly(text),
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )

    async def close(self) -> None:
        await self._client.aclose()


def _extract_text(data: dict) -> str:
    blocks = data.get("content") if isinstance(data, dict) else None
    if not isinstance(blocks, list):
        return ""
    parts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
    return "".join(parts).strip()
