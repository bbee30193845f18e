"""LLM provider interface used by the reflector."""

from abc import ABC, abstractmethod


class LLMError(Exception):
    """Base LLM error."""


class LLMRateLimitError(LLMError):
    """Rate limit hit. Retried by ``llm_retry``."""


class LLMAuthError(LLMError):
    """Authentication failure."""


class LLMResponseError(LLMError):
    """The model answered, but not with the JSON we asked for."""


class LLMProvider(ABC):
    """Text-in, text-out model call."""

    provider_name: str = "base"
    model: str = ""

    @abstractmethod
    def generate(
        self, messages: list[dict], system: str | None = None, max_tokens: int = 4000
    ) -> str:
        """Generate a response.

        Args:
            messages: List of {"role": ..., "content": ...} dicts
            system: Optional system prompt
            max_tokens: Max response tokens

        Returns:
            Generated text
        """
        ...
