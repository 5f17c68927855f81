"""
LiteLLM transport shared by every provider connector.
"""

import logging
import re
import time
from typing import Any

import litellm
from litellm import completion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    BudgetExceededError,
    ContextWindowExceededError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
)

from ouroboros.errors import TransportError

# Suppress LiteLLM debug messages (e.g., "Provider List: ...")
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)


_PROVIDER_KEY_HINTS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "google": "GOOGLE_API_KEY",
}

_CREDIT_MARKERS = ("402", "credits", "insufficient", "budget")


def _extract_error_message(error: Exception) -> str:
    """Extract the most useful part of a LiteLLM error message."""
    msg = str(error)
    match = re.search(r'"message"\s*:\s*"([^"]+)"', msg)
    if match:
        return match.group(1)
    if len(msg) > 200:
        return msg[:200] + "..."
    return msg


def _provider_of(model: str) -> str:
    return model.split("/")[0].lower()


def _friendly_llm_error(model: str, error: Exception, attempted: list[str] | None = None) -> TransportError:
    """Convert a LiteLLM exception into a TransportError with actionable guidance."""
    provider = _provider_of(model)

    def _err(message: str) -> TransportError:
        return TransportError(
            message,
            original=error,
            provider_id=provider,
            model=model,
            attempted_models=attempted,
        )

    if isinstance(error, AuthenticationError):
        key_name = _PROVIDER_KEY_HINTS.get(provider, f"{provider.upper()}_API_KEY")
        return _err(
            f"Authentication failed for '{model}'. "
            f"Check that {key_name} is set correctly.\n"
            f"  Export it or store it with ConfigManager().set('{key_name}', ...)"
        )

    if isinstance(error, NotFoundError):
        return _err(
            f"Model '{model}' not found. Check the model name and provider.\n"
            f"  See: https://docs.litellm.ai/docs/providers"
        )

    if isinstance(error, RateLimitError):
        return _err(
            f"Rate limit exceeded for '{model}'. Wait a moment and try again.\n"
            f"  If this persists, check your API plan limits."
        )

    if isinstance(error, BudgetExceededError):
        return _err(f"API budget/credits exhausted for '{model}'. Add credits at your provider's dashboard.")

    if isinstance(error, ContextWindowExceededError):
        return _err(
            f"Context too large for '{model}'. "
            f"Enable compaction or use a model with a larger context window."
        )

    if isinstance(error, BadRequestError):
        return _err(
            f"Model '{model}' rejected the request. "
            f"This may indicate incompatible tool schemas or invalid parameters.\n"
            f"  Details: {_extract_error_message(error)}"
        )

    if isinstance(error, APIError):
        if any(kw in str(error).lower() for kw in _CREDIT_MARKERS):
            return _err(
                f"Credits exhausted for '{model}'. Add more at your provider's dashboard.\n"
                f"  {_extract_error_message(error)}"
            )
        return _err(f"API error from {provider}: {_extract_error_message(error)}")

    if isinstance(error, APIConnectionError):
        return _err(
            f"Cannot connect to {provider} API. Check your internet connection.\n"
            f"  If using a custom endpoint, verify the URL is correct."
        )

    if isinstance(error, ServiceUnavailableError):
        return _err(f"The {provider} API is temporarily unavailable. Try again in a moment.")

    return _err(f"LLM error ({type(error).__name__}): {error}")


class LLMClient:
    """
    Wrapper around LiteLLM completion with retry on transient errors.

    Model identifiers use LiteLLM's provider/model form, e.g.
    'openai/gpt-5-codex' or 'anthropic/claude-sonnet-4-20250514'.
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        retry_backoff: float = 2.0,
    ):
        """
        Args:
            model: LiteLLM model identifier
            api_key: Credential passed straight to LiteLLM (None: LiteLLM's own lookup)
            temperature: Sampling temperature, omitted from the request when None
            max_tokens: Maximum tokens in response, omitted when None
            max_retries: Maximum number of retries on transient errors
            retry_delay: Initial delay between retries (seconds)
            retry_backoff: Exponential backoff multiplier
        """
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        **extra: Any,
    ) -> Any:
        """
        Send a chat completion request.

        Transient errors are retried with exponential backoff.
        Non-transient errors (auth, model not found, bad request) raise immediately.

        Args:
            messages: OpenAI-format message dicts
            tools: Optional tool definitions (OpenAI format)
            stream: Return LiteLLM's chunk iterator instead of a full response
            **extra: Additional completion kwargs (temperature, response_format, ...)

        Raises:
            TransportError: on non-transient errors or once retries are exhausted
        """
        result, error = self._try_model(self.model, messages, tools, stream, extra)
        if result is not None:
            return result
        raise _friendly_llm_error(self.model, error, attempted=[self.model])

    def _build_kwargs(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        stream: bool,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": model, "messages": messages, "stream": stream}

        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        kwargs.update({k: v for k, v in extra.items() if v is not None})
        return kwargs

    def _try_model(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        stream: bool,
        extra: dict[str, Any],
    ) -> tuple[Any, Exception | None]:
        """
        Try a single model with retries.

        Returns:
            (response, None) on success, or (None, last_error) on transient failure.
        """
        kwargs = self._build_kwargs(model, messages, tools, stream, extra)

        last_error: Exception | None = None
        delay = self.retry_delay

        for attempt in range(self.max_retries + 1):
            try:
                return completion(**kwargs), None
            except (
                AuthenticationError,
                NotFoundError,
                BudgetExceededError,
                BadRequestError,
                ContextWindowExceededError,
            ) as e:
                raise _friendly_llm_error(model, e) from e
            except (RateLimitError, ServiceUnavailableError, APIConnectionError, APIError) as e:
                # Credit/budget errors sometimes masquerade as connection or API errors
                if not isinstance(e, (RateLimitError, ServiceUnavailableError)):
                    if any(kw in str(e).lower() for kw in _CREDIT_MARKERS):
                        raise _friendly_llm_error(model, e) from e
                last_error = e

            if attempt < self.max_retries:
                logger.warning(
                    "LLM call failed (attempt %d/%d, model %s): %s. Retrying in %.1fs...",
                    attempt + 1,
                    self.max_retries + 1,
                    model,
                    last_error,
                    delay,
                )
                time.sleep(delay)
                delay *= self.retry_backoff

        return None, last_error
