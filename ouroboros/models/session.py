"""
Session metadata model.
"""

import secrets
import time
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


def new_session_id() -> str:
    """session-<epoch ms>-<random suffix>"""
    return f"session-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class SessionState(str, Enum):
    """Turn state of a conversation session."""

    IDLE = "idle"
    RESPONDING = "responding"
    WAITING_FOR_APPROVAL = "waiting_for_approval"


class SessionMeta(BaseModel):
    """Metadata for a session."""

    session_id: str = Field(default_factory=new_session_id)
    provider: str
    model: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    title: str | None = None  # First user prompt, truncated
    agent_id: str | None = None
    agent_name: str | None = None
    agent_emoji: str | None = None
