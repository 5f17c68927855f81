"""
Provider connector registry.

A connector knows how to turn a model name plus a credential source into a
ModelHandle (a LiteLLM client bound to one provider/model/key). The registry
is a plain lookup table owned by the composition root.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Iterator

from pydantic import BaseModel

from ouroboros.core.llm import LLMClient
from ouroboros.errors import ProviderNotFound

if TYPE_CHECKING:
    from ouroboros.core.credentials import CredentialResolver
    from ouroboros.models.settings import LLMSettings

logger = logging.getLogger(__name__)

# Marker some Anthropic model ids carry to request the 1M-token context beta
_LONG_CONTEXT_SUFFIX = "[1m]"
_LONG_CONTEXT_BETA = "context-1m-2025-08-07"


class ModelDescriptor(BaseModel):
    id: str
    label: str
    default: bool = False


class ModelHandle:
    """A provider model ready to be called."""

    def __init__(
        self,
        provider_id: str,
        model_id: str,
        litellm_model: str,
        api_key: str,
        sampling_params: bool = True,
        parallel_tool_calls: bool = False,
        extra_headers: dict[str, str] | None = None,
        llm_settings: LLMSettings | None = None,
    ):
        self.provider_id = provider_id
        self.model_id = model_id
        self.sampling_params = sampling_params
        self.parallel_tool_calls = parallel_tool_calls
        self.extra_headers = extra_headers
        retry: dict[str, Any] = {}
        if llm_settings is not None:
            retry = {
                "max_retries": llm_settings.max_retries,
                "retry_delay": llm_settings.retry_delay,
                "retry_backoff": llm_settings.retry_backoff,
            }
        self.client = LLMClient(litellm_model, api_key=api_key, **retry)

    @property
    def litellm_model(self) -> str:
        return self.client.model

    def model_settings(
        self,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Request settings this provider accepts. OpenAI reasoning models reject sampling knobs."""
        settings: dict[str, Any] = {}
        if self.sampling_params:
            if temperature is not None:
                settings["temperature"] = temperature
            if max_tokens is not None:
                settings["max_tokens"] = max_tokens
        if self.extra_headers:
            settings["extra_headers"] = self.extra_headers
        return settings

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Iterator[Any]:
        """Start a streaming request; returns LiteLLM's raw chunk iterator."""
        settings = self.model_settings(temperature, max_tokens)
        if tools and self.parallel_tool_calls:
            settings["parallel_tool_calls"] = True
        return self.client.chat(messages, tools=tools, stream=True, **settings)

    def complete(
        self,
        messages: list[dict[str, Any]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        """Non-streaming request returning the response text."""
        settings = self.model_settings(temperature, max_tokens)
        if response_format is not None:
            settings["response_format"] = response_format
        response = self.client.chat(messages, stream=False, **settings)
        return response.choices[0].message.content or ""

    def __repr__(self) -> str:
        return f"<ModelHandle {self.provider_id}:{self.model_id}>"


class ProviderConnector:
    """Builds model handles for one provider."""

    def __init__(
        self,
        provider_id: str,
        display_name: str,
        litellm_prefix: str,
        models: list[ModelDescriptor],
        selector_model: str,
        supports_tools: bool = True,
        sampling_params: bool = True,
        parallel_tool_calls: bool = False,
        llm_settings: LLMSettings | None = None,
    ):
        self.provider_id = provider_id
        self.display_name = display_name
        self.litellm_prefix = litellm_prefix
        self.models = models
        self.selector_model = selector_model
        self.supports_tools = supports_tools
        self.sampling_params = sampling_params
        self.parallel_tool_calls = parallel_tool_calls
        self.llm_settings = llm_settings

    @property
    def default_model(self) -> str:
        for descriptor in self.models:
            if descriptor.default:
                return descriptor.id
        return self.models[0].id

    def secondary_models(self) -> list[str]:
        return [m.id for m in self.models if not m.default]

    def normalize_model_id(self, model_name: str) -> str:
        return model_name.strip()

    def _wire_model(self, model_id: str) -> tuple[str, dict[str, str] | None]:
        if model_id.endswith(_LONG_CONTEXT_SUFFIX):
            base = model_id[: -len(_LONG_CONTEXT_SUFFIX)]
            return f"{self.litellm_prefix}/{base}", {"anthropic-beta": _LONG_CONTEXT_BETA}
        return f"{self.litellm_prefix}/{model_id}", None

    def create_model(
        self,
        model_name: str | None,
        credentials: CredentialResolver,
        api_key: str | None = None,
    ) -> ModelHandle:
        """
        Build a handle for model_name (None: the connector's default).

        Raises:
            MissingCredential: if no credential source yields a key
        """
        model_id = self.normalize_model_id(model_name or self.default_model)
        key = credentials.resolve(self.provider_id, override=api_key)
        wire_model, headers = self._wire_model(model_id)
        return ModelHandle(
            provider_id=self.provider_id,
            model_id=model_id,
            litellm_model=wire_model,
            api_key=key,
            sampling_params=self.sampling_params,
            parallel_tool_calls=self.parallel_tool_calls,
            extra_headers=headers,
            llm_settings=self.llm_settings,
        )

    def get_model_provider(self, credentials: CredentialResolver) -> ModelProvider:
        return ModelProvider(self, credentials)


class GeminiConnector(ProviderConnector):
    """Gemini accepts model names with or without the 'models/' prefix."""

    def normalize_model_id(self, model_name: str) -> str:
        name = model_name.strip()
        if name.startswith("models/"):
            name = name[len("models/"):]
        return name


class ModelProvider:
    """Lazy, caching model resolver for a connector, keyed by model name."""

    def __init__(self, connector: ProviderConnector, credentials: CredentialResolver):
        self.connector = connector
        self.credentials = credentials
        self._handles: dict[str, ModelHandle] = {}
        self._lock = threading.Lock()

    def get_model(self, model_name: str | None = None, refresh: bool = False) -> ModelHandle:
        """
        Handle for model_name (default model when None).

        refresh re-resolves the credential and replaces the cached handle;
        on MissingCredential the cached handle is kept.
        """
        model_id = self.connector.normalize_model_id(model_name or self.connector.default_model)
        with self._lock:
            handle = None if refresh else self._handles.get(model_id)
            if handle is None:
                handle = self.connector.create_model(model_id, self.credentials)
                self._handles[model_id] = handle
            return handle


class ConnectorRegistry:
    """Maps provider ids to connectors."""

    def __init__(self) -> None:
        self._connectors: dict[str, ProviderConnector] = {}

    def register(self, provider_id: str, connector: ProviderConnector) -> None:
        if provider_id in self._connectors:
            logger.debug("Replacing connector for provider %s", provider_id)
        self._connectors[provider_id] = connector

    def get(self, provider_id: str) -> ProviderConnector:
        connector = self._connectors.get(provider_id)
        if connector is None:
            raise ProviderNotFound(provider_id, list(self._connectors))
        return connector

    def list(self) -> list[ProviderConnector]:
        return list(self._connectors.values())

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._connectors


def default_connectors(llm_settings: LLMSettings | None = None) -> list[ProviderConnector]:
    """The three built-in providers."""
    return [
        ProviderConnector(
            provider_id="openai",
            display_name="OpenAI",
            litellm_prefix="openai",
            models=[
                ModelDescriptor(id="gpt-5-codex", label="GPT-5 Codex", default=True),
                ModelDescriptor(id="gpt-5", label="GPT-5"),
            ],
            selector_model="gpt-5-nano",
            sampling_params=False,
            parallel_tool_calls=True,
            llm_settings=llm_settings,
        ),
        ProviderConnector(
            provider_id="anthropic",
            display_name="Anthropic",
            litellm_prefix="anthropic",
            models=[
                ModelDescriptor(id="claude-sonnet-4-20250514[1m]", label="Claude Sonnet 4 (1M)", default=True),
                ModelDescriptor(id="claude-opus-4-1-20250805", label="Claude Opus 4.1"),
            ],
            selector_model="claude-3-5-haiku-20241022",
            llm_settings=llm_settings,
        ),
        GeminiConnector(
            provider_id="gemini",
            display_name="Google Gemini",
            litellm_prefix="gemini",
            models=[ModelDescriptor(id="gemini-2.5-pro", label="Gemini 2.5 Pro", default=True)],
            selector_model="gemini-2.0-flash-thinking-exp-1219",
            llm_settings=llm_settings,
        ),
    ]


def create_default_registry(llm_settings: LLMSettings | None = None) -> ConnectorRegistry:
    registry = ConnectorRegistry()
    for connector in default_connectors(llm_settings):
        registry.register(connector.provider_id, connector)
    return registry
