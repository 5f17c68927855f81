"""
Typed views of raw backend stream chunks.

Each backend family gets its own shape. Normalizers convert litellm's
streaming objects into these at the adapter boundary and work only with
them afterwards.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


# ── Backend A (OpenAI-family) ─────────────────────────────────────────


class ToolCallFragment(BaseModel):
    """One piece of a streamed tool call. Any field may be missing."""

    index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class OpenAIChunk(BaseModel):
    text: str = ""
    reasoning: str = ""
    fragments: list[ToolCallFragment] = Field(default_factory=list)
    finish_reason: str | None = None


# ── Backend B (Anthropic-family) and generic ──────────────────────────


class TextBlock(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    kind: Literal["thinking"] = "thinking"
    text: str = ""
    signature: str | None = None


class ToolUseBlock(BaseModel):
    kind: Literal["tool_use"] = "tool_use"
    id: str | None = None
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class StopBlock(BaseModel):
    kind: Literal["stop"] = "stop"
    stop_reason: str


AnthropicBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, StopBlock],
    Field(discriminator="kind"),
]
