"""
Error taxonomy for the ouroboros runtime.

Recoverable conditions (malformed tool JSON, dispatcher failures, a first
empty response) are absorbed by the component that detects them. Only the
errors with no safe default reach the user, and they carry enough context
(provider, attempted models, env var names) to act on.
"""

from __future__ import annotations


class OuroborosError(Exception):
    """Base class. Keeps the underlying exception around for diagnostics."""

    def __init__(self, message: str, original: BaseException | None = None):
        self.original = original
        super().__init__(message)


class MissingCredential(OuroborosError):
    """No credential source yielded an API key. Fatal: never retried."""

    def __init__(self, provider_id: str, env_keys: tuple[str, ...] | list[str] = ()):
        self.provider_id = provider_id
        self.env_keys = tuple(env_keys)
        if self.env_keys:
            names = " or ".join(self.env_keys)
            hint = f" Set {names} in your environment, or store it in the key store"
        else:
            hint = ""
        super().__init__(f"{_display(provider_id)} API key is required.{hint}")


class ProviderNotFound(OuroborosError):
    def __init__(self, provider_id: str, available: list[str] | None = None):
        self.provider_id = provider_id
        hint = f" Available: {', '.join(available)}" if available else ""
        super().__init__(f"No connector registered for provider '{provider_id}'.{hint}")


class TransportError(OuroborosError):
    """The backend could not be reached or rejected the request."""

    def __init__(
        self,
        message: str,
        original: BaseException | None = None,
        provider_id: str | None = None,
        model: str | None = None,
        attempted_models: list[str] | None = None,
    ):
        self.provider_id = provider_id
        self.model = model
        self.attempted_models = attempted_models or ([model] if model else [])
        super().__init__(message, original)


class EmptyResponse(OuroborosError):
    """The backend produced neither text nor tool calls, even after recovery."""

    def __init__(self, provider_id: str, detail: str | None = None):
        self.provider_id = provider_id
        message = f"{_display(provider_id)} provider returned empty response"
        if detail:
            message += f" - {detail}"
        super().__init__(message)


class MalformedToolArguments(OuroborosError):
    """Tool-call argument text that no repair could turn into an object."""

    def __init__(self, raw: str, call_id: str | None = None):
        self.call_id = call_id
        self.raw = raw
        target = f" for tool call '{call_id}'" if call_id else ""
        super().__init__(f"Malformed arguments{target}: {raw[:80]!r}")


class ToolExecutionError(OuroborosError):
    """A tool executor failed. Captured per call, never raised past the manager."""

    def __init__(self, call_id: str, tool_name: str, original: BaseException | None = None):
        self.call_id = call_id
        self.tool_name = tool_name
        detail = f": {original}" if original is not None else ""
        super().__init__(f"Tool '{tool_name}' failed{detail}", original)


class ExecutionAborted(OuroborosError):
    """Expected outcome of cancellation. Callers treat it as "no result"."""

    def __init__(self, reason: str = "Execution aborted"):
        self.reason = reason
        super().__init__(reason)


class SelectionFailure(OuroborosError):
    """A structured agent-selection attempt failed. Recovered by heuristics."""

    def __init__(self, message: str, model: str | None = None, original: BaseException | None = None):
        self.model = model
        super().__init__(message, original)


class PersonaNotFound(OuroborosError):
    def __init__(self, persona_id: str):
        self.persona_id = persona_id
        super().__init__(f"Agent not found: {persona_id}")


class SettingsError(OuroborosError):
    """Settings file is invalid, with a user-friendly issue list."""

    def __init__(self, source: str, issues: list[str]):
        self.source = source
        self.issues = issues
        msg = f"Invalid settings in '{source}':\n" + "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(msg)


_DISPLAY_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "gemini": "Google Gemini",
}


def _display(provider_id: str) -> str:
    return _DISPLAY_NAMES.get(provider_id, provider_id)
