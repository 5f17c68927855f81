"""
Conversation history models.

A Message is one entry of a session's append-only history. Tool traffic is
carried as typed ToolCallRequest / ToolCallResponse objects rather than raw
provider dicts, so history can be re-serialized for any backend.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

Role = Literal["user", "assistant", "system", "tool"]


def _utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model (or by the client)."""

    call_id: str = Field(..., description="Unique within a session")
    name: str = Field(..., description="Tool name as declared to the model")
    args: dict[str, Any] = Field(default_factory=dict, description="Parsed argument object")
    origin: Literal["model", "client"] = Field(default="model")
    agent_id: str | None = Field(None, description="Owning persona under multi-agent execution")
    raw_arguments: str | None = Field(None, description="Argument text as streamed, before repair")

    def arguments_json(self) -> str:
        return json.dumps(self.args)


class ToolCallResponse(BaseModel):
    """Result of one tool call, correlated by call id."""

    call_id: str
    name: str | None = None
    output: str = Field(default="", description="Text result fragment sent back to the model")
    payload: Any = Field(None, description="Opaque structured result for the host application")
    error: str | None = None
    error_type: str | None = None
    cancelled: bool = False
    duration_ms: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    def to_llm_content(self) -> str:
        """Serialize for passing back to the model as tool message content."""
        if self.cancelled:
            return json.dumps({"error": self.error or "Tool call cancelled by user.", "error_type": "cancelled"})
        if self.error is not None:
            return json.dumps({"error": self.error, "error_type": self.error_type})
        if self.output:
            return self.output
        if self.payload is None:
            return ""
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, default=str)

    @classmethod
    def success(cls, call_id: str, output: str = "", **kwargs: Any) -> ToolCallResponse:
        """Create a success response."""
        return cls(call_id=call_id, output=output, **kwargs)

    @classmethod
    def fail(
        cls,
        call_id: str,
        error: str,
        error_type: str | None = None,
        **kwargs: Any,
    ) -> ToolCallResponse:
        """Create a failure response."""
        return cls(call_id=call_id, error=error, error_type=error_type, **kwargs)

    @classmethod
    def cancelled_for(cls, request: ToolCallRequest, reason: str | None = None) -> ToolCallResponse:
        """Placeholder response for a call that never ran to completion."""
        return cls(
            call_id=request.call_id,
            name=request.name,
            error=reason or "Tool call cancelled by user.",
            error_type="cancelled",
            cancelled=True,
        )


class Message(BaseModel):
    """A single entry in the conversation history."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_response: ToolCallResponse | None = None
    kind: Literal["text", "cancellation_notice"] = "text"
    cancelled_call_ids: list[str] = Field(default_factory=list)
    # Provider-private fields (e.g. reasoning signatures), keyed by provider id
    provider_metadata: dict[str, dict[str, Any]] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_shape(self) -> Message:
        if self.role == "tool" and self.tool_response is None:
            raise ValueError("tool messages must carry exactly one tool_response")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages may carry tool_calls")
        return self

    @property
    def call_id(self) -> str | None:
        return self.tool_response.call_id if self.tool_response else None

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", content=text)

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", content=text)

    @classmethod
    def assistant(
        cls,
        text: str | None = None,
        tool_calls: list[ToolCallRequest] | None = None,
        provider_metadata: dict[str, dict[str, Any]] | None = None,
    ) -> Message:
        return cls(
            role="assistant",
            content=text or None,
            tool_calls=tool_calls or None,
            provider_metadata=provider_metadata or {},
        )

    @classmethod
    def tool(cls, response: ToolCallResponse) -> Message:
        return cls(role="tool", tool_response=response)

    @classmethod
    def cancellation_notice(cls, call_ids: list[str], names: list[str] | None = None) -> Message:
        """One message standing in for a batch of calls that were all cancelled."""
        label = ", ".join(names or call_ids)
        return cls(
            role="user",
            kind="cancellation_notice",
            content=f"[The user cancelled the following tool calls: {label}]",
            cancelled_call_ids=list(call_ids),
        )
