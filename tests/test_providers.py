"""
Tests for the provider connector registry.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from ouroboros.core.credentials import CredentialResolver
from ouroboros.core.providers import (
    ConnectorRegistry,
    ModelDescriptor,
    ProviderConnector,
    create_default_registry,
)
from ouroboros.errors import MissingCredential, ProviderNotFound


def _completion_response(text):
    message = SimpleNamespace(content=text)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class TestConnectorRegistry:
    """Tests for ConnectorRegistry."""

    def test_default_providers(self):
        """The default registry carries the three built-in providers."""
        registry = create_default_registry()

        assert [c.provider_id for c in registry.list()] == ["openai", "anthropic", "gemini"]
        assert "openai" in registry
        assert "mistral" not in registry

    def test_unknown_provider(self):
        """Looking up an unregistered provider names the available ones."""
        registry = create_default_registry()

        with pytest.raises(ProviderNotFound) as exc_info:
            registry.get("mistral")

        assert "openai" in str(exc_info.value)

    def test_register_replaces(self, registry):
        """Registering an id twice keeps the newer connector."""
        replacement = ProviderConnector(
            "openai", "Other", "openai", [ModelDescriptor(id="m", label="M", default=True)], "m"
        )
        registry.register("openai", replacement)

        assert registry.get("openai") is replacement

    def test_registries_are_independent(self):
        """Two registries never share connectors."""
        first = ConnectorRegistry()
        second = create_default_registry()

        assert first.list() == []
        assert len(second.list()) == 3


class TestProviderConnector:
    """Tests for connectors and model handles."""

    def test_default_and_secondary_models(self):
        """The default model is the flagged one; the rest are secondary."""
        openai = create_default_registry().get("openai")

        assert openai.default_model == "gpt-5-codex"
        assert openai.secondary_models() == ["gpt-5"]
        assert openai.selector_model == "gpt-5-nano"

    def test_create_model_resolves_key(self, credentials):
        """Handles carry the resolved key and the LiteLLM model name."""
        handle = create_default_registry().get("openai").create_model(None, credentials)

        assert handle.provider_id == "openai"
        assert handle.model_id == "gpt-5-codex"
        assert handle.litellm_model == "openai/gpt-5-codex"
        assert handle.client.api_key == "sk-test"

    def test_missing_key(self, monkeypatch):
        """No credential means MissingCredential before any request."""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(MissingCredential):
            create_default_registry().get("anthropic").create_model(None, CredentialResolver())

    def test_gemini_strips_models_prefix(self, monkeypatch):
        """Gemini model names work with or without 'models/'."""
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")
        gemini = create_default_registry().get("gemini")

        handle = gemini.create_model("models/gemini-2.5-pro", CredentialResolver())

        assert handle.model_id == "gemini-2.5-pro"
        assert handle.litellm_model == "gemini/gemini-2.5-pro"

    def test_long_context_marker(self, credentials):
        """The [1m] marker is stripped and turned into the beta header."""
        handle = create_default_registry().get("anthropic").create_model(None, credentials)

        assert handle.model_id.endswith("[1m]")
        assert handle.litellm_model == "anthropic/claude-sonnet-4-20250514"
        assert handle.extra_headers == {"anthropic-beta": "context-1m-2025-08-07"}

    def test_openai_drops_sampling_settings(self, credentials):
        """OpenAI reasoning models never receive temperature or max_tokens."""
        registry = create_default_registry()
        openai = registry.get("openai").create_model(None, credentials)
        anthropic = registry.get("anthropic").create_model("claude-opus-4-1-20250805", credentials)

        assert openai.model_settings(temperature=0.2, max_tokens=100) == {}
        assert anthropic.model_settings(temperature=0.2, max_tokens=100) == {
            "temperature": 0.2,
            "max_tokens": 100,
        }

    @patch("ouroboros.core.llm.completion")
    def test_complete_returns_text(self, mock_completion, credentials):
        """complete() sends a non-streaming request and returns the text."""
        mock_completion.return_value = _completion_response("hello")
        handle = create_default_registry().get("anthropic").create_model(
            "claude-opus-4-1-20250805", credentials
        )

        text = handle.complete(
            [{"role": "user", "content": "hi"}],
            temperature=0.1,
            response_format={"type": "json_object"},
        )

        assert text == "hello"
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["stream"] is False
        assert kwargs["temperature"] == 0.1
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["api_key"] == "sk-ant-test"

    @patch("ouroboros.core.llm.completion")
    def test_stream_requests_parallel_tool_calls(self, mock_completion, credentials):
        """OpenAI streams ask for parallel tool calls when tools are present."""
        mock_completion.return_value = iter([])
        handle = create_default_registry().get("openai").create_model(None, credentials)

        handle.stream([{"role": "user", "content": "hi"}], tools=[{"type": "function"}])

        kwargs = mock_completion.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["parallel_tool_calls"] is True
        assert kwargs["tool_choice"] == "auto"


class TestModelProvider:
    """Tests for the caching model resolver."""

    def test_handles_are_cached(self, credentials):
        """The same model name yields the same handle."""
        provider = create_default_registry().get("openai").get_model_provider(credentials)

        assert provider.get_model() is provider.get_model("gpt-5-codex")
        assert provider.get_model("gpt-5") is not provider.get_model()

    def test_refresh_picks_up_rotated_key(self, credentials, monkeypatch):
        """refresh=True re-resolves the key and replaces the cached handle."""
        provider = create_default_registry().get("openai").get_model_provider(credentials)
        first = provider.get_model()

        monkeypatch.setenv("OPENAI_API_KEY", "sk-rotated")
        refreshed = provider.get_model(refresh=True)

        assert refreshed is not first
        assert refreshed.client.api_key == "sk-rotated"
        assert provider.get_model() is refreshed

    def test_failed_refresh_keeps_cached_handle(self, credentials, monkeypatch):
        """A missing key on refresh raises and leaves the cached handle in place."""
        provider = create_default_registry().get("openai").get_model_provider(credentials)
        first = provider.get_model()

        monkeypatch.delenv("OPENAI_API_KEY")
        with pytest.raises(MissingCredential):
            provider.get_model(refresh=True)

        assert provider.get_model() is first
