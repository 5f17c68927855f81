"""Data models for ouroboros."""

from ouroboros.models.events import (
    Compaction,
    ErrorEvent,
    Event,
    Finish,
    LoopDetected,
    TextDelta,
    Thought,
    ToolApprovalEvent,
    ToolCallRequestEvent,
    ToolCallResponseEvent,
    TurnLimitReached,
    UserCancelled,
)
from ouroboros.models.messages import Message, ToolCallRequest, ToolCallResponse
from ouroboros.models.persona import (
    AgentPersona,
    AgentRunResult,
    ExecutionResult,
    SelectionResult,
)
from ouroboros.models.session import SessionMeta, SessionState
from ouroboros.models.settings import RuntimeSettings, load_settings

__all__ = [
    "AgentPersona",
    "AgentRunResult",
    "Compaction",
    "ErrorEvent",
    "Event",
    "ExecutionResult",
    "Finish",
    "LoopDetected",
    "Message",
    "RuntimeSettings",
    "SelectionResult",
    "SessionMeta",
    "SessionState",
    "TextDelta",
    "Thought",
    "ToolApprovalEvent",
    "ToolCallRequest",
    "ToolCallRequestEvent",
    "ToolCallResponse",
    "ToolCallResponseEvent",
    "TurnLimitReached",
    "UserCancelled",
    "load_settings",
]
