"""
Canonical event protocol.

Every stream normalizer, whatever the backend, produces only these events.
Downstream code (lifecycle manager, driver, host UI) never sees a provider's
native chunk format.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class TextDelta(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    text: str


class Thought(BaseModel):
    """Reasoning content surfaced by models that expose it."""

    type: Literal["thought"] = "thought"
    text: str


class ToolCallRequestEvent(BaseModel):
    type: Literal["tool-call-request"] = "tool-call-request"
    call_id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    agent_id: str | None = None


class ToolCallResponseEvent(BaseModel):
    type: Literal["tool-call-response"] = "tool-call-response"
    call_id: str
    name: str | None = None
    status: Literal["success", "error", "cancelled"]
    result: str | None = None
    error: str | None = None


class ToolApprovalEvent(BaseModel):
    type: Literal["tool-approval"] = "tool-approval"
    call_id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Compaction(BaseModel):
    type: Literal["compaction"] = "compaction"
    from_tokens: int
    to_tokens: int


class TurnLimitReached(BaseModel):
    type: Literal["turn-limit-reached"] = "turn-limit-reached"
    limit: int


class LoopDetected(BaseModel):
    type: Literal["loop-detected"] = "loop-detected"
    tool_name: str | None = None


class Finish(BaseModel):
    type: Literal["finish"] = "finish"
    reason: str = "STOP"


class UserCancelled(BaseModel):
    type: Literal["user-cancelled"] = "user-cancelled"


class ErrorEvent(BaseModel):
    """A failure surfaced to the caller. The original exception rides along."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["error"] = "error"
    message: str
    error_type: str = "Error"
    cause: BaseException | None = Field(default=None, exclude=True)

    @classmethod
    def from_exception(cls, error: BaseException) -> ErrorEvent:
        return cls(message=str(error), error_type=type(error).__name__, cause=error)


Event = Annotated[
    Union[
        TextDelta,
        Thought,
        ToolCallRequestEvent,
        ToolCallResponseEvent,
        ToolApprovalEvent,
        Compaction,
        TurnLimitReached,
        LoopDetected,
        Finish,
        UserCancelled,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"finish", "user-cancelled", "error"})
