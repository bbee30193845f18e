"""LLM provider construction from config."""

import os

from .base import LLMError, LLMProvider

ANTHROPIC_KEY_ENV = "ANTHROPIC_API_KEY"
DEFAULT_REFLECTION_MODEL = "claude-sonnet-4-20250514"


def create_llm_provider(
    provider: str | None = None,
    api_key: str | None = None,
    model: str | None = None,
    client=None,
) -> LLMProvider:
    """Create an LLM provider instance.

    Args:
        provider: "claude", "auto", or None (auto-detect)
        api_key: Explicit API key (overrides env var)
        model: Model name (None = provider default)
        client: Pre-built SDK client for testing/DI
    """
    resolved = provider or "auto"
    if resolved == "auto":
        resolved = _auto_detect_provider(api_key, client)

    if resolved != "claude":
        raise LLMError(f"Unknown provider: {resolved}. Use: claude")

    if not api_key and not client:
        api_key = os.getenv(ANTHROPIC_KEY_ENV)

    from .providers.claude import ClaudeProvider

    return ClaudeProvider(api_key=api_key, model=model or DEFAULT_REFLECTION_MODEL, client=client)


def create_provider_from_config(llm_config) -> LLMProvider:
    """Build the provider described by an ``LLMConfig`` section."""
    return create_llm_provider(
        provider=llm_config.provider,
        api_key=llm_config.api_key,
        model=llm_config.model,
    )


def _auto_detect_provider(api_key: str | None = None, client=None) -> str:
    if client is not None:
        return "claude"
    if api_key and api_key.startswith("sk-ant-"):
        return "claude"
    if os.getenv(ANTHROPIC_KEY_ENV):
        return "claude"
    raise LLMError(f"No LLM API key found. Set {ANTHROPIC_KEY_ENV} or llm.api_key in config")
