"""
Persona, selection and multi-agent execution models.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clamp_unit(value: Any) -> float:
    """Clamp a confidence-like value to [0, 1]. Non-numbers become 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, float(value)))


class AgentPersona(BaseModel):
    """A specialist role from the static catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    emoji: str = ""
    category: str
    description: str
    specialties: tuple[str, ...] = ()
    temperature: float | None = Field(default=None, ge=0, le=2)
    suggested_tools: tuple[str, ...] = ()
    system_prompt: str | None = None

    def summary_line(self) -> str:
        """One-line description used in the dispatcher's catalog listing."""
        return f"{self.id}: {self.category} - {self.description} ({', '.join(self.specialties[:3])})"

    def label(self) -> str:
        return f"{self.emoji} {self.name}".strip()


class SelectionResult(BaseModel):
    """Output of the agent dispatcher."""

    agent_ids: list[str]
    reasoning: str = ""
    confidence: float = 0.0
    task_category: str | None = None
    attempted_models: list[str] = Field(default_factory=list)
    used_fallback: bool = False
    processing_time_ms: int = 0

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)


class SelectionRecord(BaseModel):
    """Entry of the dispatcher's rolling selection history."""

    prompt: str
    selected_agents: list[str]
    reasoning: str
    confidence: float
    used_fallback: bool = False
    timestamp: float = Field(default_factory=time.time)


class AgentToolEvent(BaseModel):
    """A tool call made by a persona during multi-agent execution."""

    tool_name: str
    call_id: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    output_text: str = ""
    status: Literal["success", "error", "cancelled"] = "success"
    timestamp: float = Field(default_factory=time.time)


class AgentRunResult(BaseModel):
    """What one persona produced."""

    agent: AgentPersona
    analysis: str = ""
    solution: str = ""
    confidence: float = 0.0
    handoff_agent_ids: list[str] = Field(default_factory=list)
    raw_text: str = ""
    tool_events: list[AgentToolEvent] = Field(default_factory=list)
    status: Literal["success", "error"] = "success"
    error: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)

    @property
    def tool_call_count(self) -> int:
        return len(self.tool_events)


class WaveRecord(BaseModel):
    wave: int
    agent_ids: list[str]


class ExecutionResult(BaseModel):
    """Aggregate of one multi-agent execution."""

    agent_results: list[AgentRunResult] = Field(default_factory=list)
    final_response: str = ""
    aggregate_reasoning: str = ""
    timeline: list[WaveRecord] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def total_agents(self) -> int:
        return len(self.agent_results)

    @property
    def total_tool_calls(self) -> int:
        return sum(r.tool_call_count for r in self.agent_results)
