"""
Runtime settings models.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from ouroboros.errors import SettingsError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path.home() / ".ouroboros" / "settings.yaml"


class LLMSettings(BaseModel):
    """Transport retry policy."""

    max_retries: int = Field(default=3, ge=0, description="Max retries on transient LLM errors")
    retry_delay: float = Field(default=1.0, gt=0, description="Initial retry delay in seconds")
    retry_backoff: float = Field(default=2.0, gt=1, description="Exponential backoff multiplier")


class CompactionSettings(BaseModel):
    """Context compaction settings."""

    enabled: bool = Field(default=True)
    max_tokens_before_compaction: int = Field(
        default=128_000,
        gt=0,
        description="Summarize older history once the wire view exceeds this many tokens",
    )
    min_recent_messages: int = Field(
        default=6,
        ge=1,
        description="Most recent messages that are never summarized",
    )


class DispatcherSettings(BaseModel):
    """Agent dispatcher settings."""

    model: str | None = Field(None, description="Preferred selection model (default: provider's selector model)")
    temperature: float = Field(default=0.1, ge=0, le=2)
    max_tokens: int = Field(default=500, gt=0)
    auto_mode: bool = Field(default=False, description="Select specialists automatically for new prompts")


class ExecutorSettings(BaseModel):
    """Multi-agent executor settings."""

    max_passes: int = Field(default=6, ge=1, description="Maximum waves per execution")
    max_agents: int = Field(default=6, ge=1, description="Maximum personas per execution")
    parallel: bool = Field(default=True, description="Run the personas of a wave concurrently")
    max_workers: int = Field(default=5, ge=1)
    max_output_tokens: int = Field(default=4096, gt=0)
    synthesis_temperature: float = Field(default=0.4, ge=0, le=2)
    supersede_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for a superseded execution to unwind",
    )


class RuntimeSettings(BaseModel):
    """Top-level runtime settings, usually loaded from ~/.ouroboros/settings.yaml."""

    provider: str = Field(default="openai", description="Active provider id")
    model: str | None = Field(None, description="Active model id (default: the connector's default)")
    api_key: str | None = Field(None, description="API key bound to the active provider only")
    approval_mode: Literal["default", "yolo"] = Field(
        default="default",
        description="'yolo' auto-approves every tool call",
    )
    system_prompt: str = Field(default="", description="Base system instruction for new sessions")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_output_tokens: int = Field(default=8192, gt=0)
    max_session_turns: int = Field(default=100, gt=0)
    loop_detection_threshold: int = Field(default=4, ge=2)
    max_tool_workers: int = Field(default=5, ge=1)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    compaction: CompactionSettings = Field(default_factory=CompactionSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)


def _friendly_validation_errors(source: str, exc: ValidationError) -> SettingsError:
    """Convert a pydantic ValidationError to a SettingsError with readable issues."""
    issues: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error["loc"])
        err_type = error["type"]

        if err_type == "literal_error":
            allowed = error.get("ctx", {}).get("expected", "")
            issues.append(f"{loc}: must be one of {allowed}")
        elif err_type == "extra_forbidden":
            issues.append(f"{loc}: unknown setting")
        else:
            issues.append(f"{loc}: {error['msg']}")

    return SettingsError(source, issues)


def load_settings(path: Path | None = None) -> RuntimeSettings:
    """
    Load and validate runtime settings from YAML.

    A missing file yields defaults.

    Raises:
        SettingsError: If the YAML is malformed or fails validation
    """
    if path is None:
        path = DEFAULT_SETTINGS_PATH

    if not path.exists():
        logger.debug("No settings file at %s, using defaults", path)
        return RuntimeSettings()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(str(path), [f"YAML parse error: {e}"]) from e

    if data is None:
        return RuntimeSettings()
    if not isinstance(data, dict):
        raise SettingsError(str(path), ["top level must be a mapping"])

    try:
        return RuntimeSettings(**data)
    except ValidationError as e:
        raise _friendly_validation_errors(str(path), e) from e
