"""LLM provider layer for the reflection step."""

from .base import LLMAuthError, LLMError, LLMProvider, LLMRateLimitError, LLMResponseError
from .factory import create_llm_provider, create_provider_from_config
from .retry import llm_retry

__all__ = [
    "LLMProvider",
    "create_llm_provider",
    "create_provider_from_config",
    "llm_retry",
    "LLMError",
    "LLMRateLimitError",
    "LLMAuthError",
    "LLMResponseError",
]
