"""
Credential resolution for provider connectors.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from ouroboros.errors import MissingCredential

if TYPE_CHECKING:
    from ouroboros.core.config import ConfigManager

logger = logging.getLogger(__name__)

# Environment variables consulted per provider, in order
PROVIDER_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


class CredentialResolver:
    """
    Resolves the API key for a provider.

    Order:
        1. explicit per-call override
        2. key bound to the currently active provider (settings `api_key`)
        3. provider-specific environment variables
        4. encrypted key store (ConfigManager)

    Raises MissingCredential when nothing yields a value.
    """

    def __init__(
        self,
        config: ConfigManager | None = None,
        active_provider: str | None = None,
        active_api_key: str | None = None,
    ):
        self.config = config
        self.active_provider = active_provider
        self.active_api_key = active_api_key

    def bind(self, provider_id: str, api_key: str | None = None) -> None:
        """Make provider_id the active provider, optionally with its own key."""
        self.active_provider = provider_id
        self.active_api_key = api_key

    def env_keys_for(self, provider_id: str) -> tuple[str, ...]:
        return PROVIDER_ENV_KEYS.get(provider_id, (f"{provider_id.upper()}_API_KEY",))

    def resolve(self, provider_id: str, override: str | None = None) -> str:
        if override:
            return override

        if provider_id == self.active_provider and self.active_api_key:
            return self.active_api_key

        env_keys = self.env_keys_for(provider_id)
        for name in env_keys:
            value = os.environ.get(name)
            if value:
                return value

        if self.config is not None:
            for name in env_keys:
                value = self.config.get_stored(name)
                if value:
                    logger.debug("Using stored %s for provider %s", name, provider_id)
                    return value

        raise MissingCredential(provider_id, env_keys)

    def has_credential(self, provider_id: str) -> bool:
        try:
            self.resolve(provider_id)
        except MissingCredential:
            return False
        return True
