"""
Tests for LLM retry logic.
"""

from unittest.mock import MagicMock, patch

import pytest

from ouroboros.core.llm import LLMClient, _friendly_llm_error
from ouroboros.errors import TransportError


class TestLLMRetry:
    """Tests for LLMClient retry logic."""

    @patch("ouroboros.core.llm.completion")
    def test_success_no_retry(self, mock_completion):
        """Successful call should not retry."""
        mock_response = MagicMock()
        mock_completion.return_value = mock_response

        client = LLMClient("openai/test-model", max_retries=3, retry_delay=0.01)
        result = client.chat([{"role": "user", "content": "test"}])

        assert result == mock_response
        assert mock_completion.call_count == 1

    @patch("ouroboros.core.llm.completion")
    def test_retry_on_rate_limit(self, mock_completion):
        """Should retry on RateLimitError."""
        from litellm.exceptions import RateLimitError

        mock_response = MagicMock()
        mock_completion.side_effect = [
            RateLimitError("Rate limited", "model", "provider"),
            RateLimitError("Rate limited", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("openai/test-model", max_retries=3, retry_delay=0.01)
        result = client.chat([{"role": "user", "content": "test"}])

        assert result == mock_response
        assert mock_completion.call_count == 3

    @patch("ouroboros.core.llm.completion")
    def test_retry_on_service_unavailable(self, mock_completion):
        """Should retry on ServiceUnavailableError."""
        from litellm.exceptions import ServiceUnavailableError

        mock_response = MagicMock()
        mock_completion.side_effect = [
            ServiceUnavailableError("Unavailable", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("openai/test-model", max_retries=3, retry_delay=0.01)
        result = client.chat([{"role": "user", "content": "test"}])

        assert result == mock_response
        assert mock_completion.call_count == 2

    @patch("ouroboros.core.llm.completion")
    def test_retry_on_connection_error(self, mock_completion):
        """Should retry on APIConnectionError."""
        from litellm.exceptions import APIConnectionError

        mock_response = MagicMock()
        mock_completion.side_effect = [
            APIConnectionError("Connection failed", "model", "provider"),
            mock_response,
        ]

        client = LLMClient("openai/test-model", max_retries=3, retry_delay=0.01)
        result = client.chat([{"role": "user", "content": "test"}])

        assert result == mock_response
        assert mock_completion.call_count == 2

    @patch("ouroboros.core.llm.completion")
    def test_raises_transport_error_after_max_retries(self, mock_completion):
        """Exhausted retries surface as a TransportError naming the attempted models."""
        from litellm.exceptions import RateLimitError

        mock_completion.side_effect = RateLimitError("Rate limited", "model", "provider")

        client = LLMClient("openai/test-model", max_retries=2, retry_delay=0.01)

        with pytest.raises(TransportError) as exc_info:
            client.chat([{"role": "user", "content": "test"}])

        # 1 initial + 2 retries = 3 attempts
        assert mock_completion.call_count == 3
        assert exc_info.value.attempted_models == ["openai/test-model"]
        assert isinstance(exc_info.value.original, RateLimitError)

    @patch("ouroboros.core.llm.completion")
    def test_no_retry_on_non_transient_error(self, mock_completion):
        """Should not retry on non-transient errors like bad request."""
        mock_completion.side_effect = ValueError("Invalid model")

        client = LLMClient("openai/test-model", max_retries=3, retry_delay=0.01)

        with pytest.raises(ValueError, match="Invalid model"):
            client.chat([{"role": "user", "content": "test"}])

        assert mock_completion.call_count == 1

    @patch("ouroboros.core.llm.completion")
    def test_auth_error_raises_immediately(self, mock_completion):
        """Authentication failures are not retried and name the env var to set."""
        from litellm.exceptions import AuthenticationError

        mock_completion.side_effect = AuthenticationError("bad key", "openai", "test-model")

        client = LLMClient("openai/test-model", max_retries=3, retry_delay=0.01)

        with pytest.raises(TransportError, match="OPENAI_API_KEY"):
            client.chat([{"role": "user", "content": "test"}])

        assert mock_completion.call_count == 1

    @patch("ouroboros.core.llm.completion")
    def test_zero_retries(self, mock_completion):
        """With max_retries=0, should only try once."""
        from litellm.exceptions import RateLimitError

        mock_completion.side_effect = RateLimitError("Rate limited", "model", "provider")

        client = LLMClient("openai/test-model", max_retries=0, retry_delay=0.01)

        with pytest.raises(TransportError):
            client.chat([{"role": "user", "content": "test"}])

        assert mock_completion.call_count == 1

    @patch("ouroboros.core.llm.completion")
    def test_passes_tools_and_stream(self, mock_completion):
        """Should pass tools and stream kwargs correctly."""
        mock_response = MagicMock()
        mock_completion.return_value = mock_response

        client = LLMClient("openai/test-model", api_key="sk-test")
        tools = [{"type": "function", "function": {"name": "test"}}]
        client.chat(
            [{"role": "user", "content": "test"}],
            tools=tools,
            stream=True,
        )

        call_kwargs = mock_completion.call_args[1]
        assert call_kwargs["tools"] == tools
        assert call_kwargs["tool_choice"] == "auto"
        assert call_kwargs["stream"] is True
        assert call_kwargs["api_key"] == "sk-test"

    @patch("ouroboros.core.llm.completion")
    def test_none_extras_are_omitted(self, mock_completion):
        """Extra kwargs set to None never reach LiteLLM."""
        client = LLMClient("openai/test-model")
        client.chat([{"role": "user", "content": "test"}], response_format=None, temperature=0.2)

        call_kwargs = mock_completion.call_args[1]
        assert "response_format" not in call_kwargs
        assert call_kwargs["temperature"] == 0.2


class TestFriendlyErrors:
    """Tests for _friendly_llm_error."""

    def test_unknown_error_keeps_type_name(self):
        """Unrecognized exceptions still produce a TransportError with the original attached."""
        original = RuntimeError("boom")
        error = _friendly_llm_error("anthropic/claude", original)

        assert isinstance(error, TransportError)
        assert error.provider_id == "anthropic"
        assert error.original is original
        assert "RuntimeError" in str(error)

    def test_auth_error_names_key_and_store(self):
        """Authentication failures point at the env var and the key store."""
        from litellm.exceptions import AuthenticationError

        original = AuthenticationError("bad key", "anthropic", "claude")
        error = _friendly_llm_error("anthropic/claude", original, attempted=["anthropic/claude"])

        assert "ANTHROPIC_API_KEY is set correctly" in str(error)
        assert "ConfigManager().set('ANTHROPIC_API_KEY', ...)" in str(error)
        assert error.attempted_models == ["anthropic/claude"]
