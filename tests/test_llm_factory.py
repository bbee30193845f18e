"""Tests for LLM factory and auto-detection."""

from unittest.mock import MagicMock, patch

import pytest

from cli.config_models import LLMConfig
from llm import LLMError, create_llm_provider, create_provider_from_config
from llm.factory import DEFAULT_REFLECTION_MODEL, _auto_detect_provider


class TestAutoDetection:
    def test_detects_anthropic_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert _auto_detect_provider() == "claude"

    def test_explicit_key_detected(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert _auto_detect_provider(api_key="sk-ant-abc") == "claude"

    def test_client_implies_claude(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert _auto_detect_provider(client=MagicMock()) == "claude"

    def test_no_keys_raises(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(LLMError, match="No LLM API key found"):
            _auto_detect_provider()


class TestCreateProvider:
    def test_explicit_claude_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="claude", client=mock_client)
        assert provider.provider_name == "claude"
        assert provider.client is mock_client

    def test_unknown_provider_raises(self):
        with pytest.raises(LLMError, match="Unknown provider"):
            create_llm_provider(provider="llama", client=MagicMock())

    def test_auto_with_anthropic_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        # Mock Anthropic client to avoid real init
        with patch("anthropic.Anthropic"):
            provider = create_llm_provider()
            assert provider.provider_name == "claude"

    def test_custom_model(self):
        provider = create_llm_provider(
            provider="claude", client=MagicMock(), model="claude-opus-4-20250514"
        )
        assert provider.model == "claude-opus-4-20250514"

    def test_default_model(self):
        assert create_llm_provider(provider="claude", client=MagicMock()).model == DEFAULT_REFLECTION_MODEL


class TestFromConfig:
    def test_uses_config_key_and_model(self):
        config = LLMConfig(provider="claude", api_key="sk-ant-from-config", model="claude-haiku")
        with patch("anthropic.Anthropic") as anthropic_cls:
            provider = create_provider_from_config(config)
        anthropic_cls.assert_called_once_with(api_key="sk-ant-from-config")
        assert provider.model == "claude-haiku"

    def test_auto_without_key_raises(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(LLMError):
            create_provider_from_config(LLMConfig())
