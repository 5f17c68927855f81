"""
Conversation sessions.

A ConversationSession owns one conversation's history and its active model.
History is append-only and is the single piece of state shared between the
stream normalizer, the tool lifecycle manager and the driver; they mutate it
only through the methods here, which serialize writes under one lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from ouroboros.core.history import strip_provider_metadata, to_wire_messages
from ouroboros.models.messages import Message
from ouroboros.models.session import SessionMeta, SessionState, _utcnow

if TYPE_CHECKING:
    from ouroboros.core.credentials import CredentialResolver
    from ouroboros.core.providers import ConnectorRegistry, ModelHandle, ModelProvider

logger = logging.getLogger(__name__)

_TITLE_LENGTH = 60


class ConversationSession:
    """
    One logical conversation.

    State machine:
        IDLE -> RESPONDING            begin_turn()
        RESPONDING <-> WAITING_FOR_APPROVAL   set_waiting_for_approval()
        any -> IDLE                   end_turn()

    A new turn can only start from IDLE; a continuation (tool results fed
    back to the model) may start while the session is still busy.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        credentials: CredentialResolver,
        provider_id: str,
        model_id: str | None = None,
        system_instruction: str = "",
        approval_mode: str = "default",
        session_id: str | None = None,
    ):
        self.registry = registry
        self.credentials = credentials
        self.approval_mode = approval_mode
        self._system_instruction = system_instruction
        self._base_instruction = system_instruction
        self._history: list[Message] = []
        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._switch_generation = 0
        self._model_providers: dict[str, ModelProvider] = {}

        self.handle = self._resolve_handle(provider_id, model_id)
        kwargs: dict[str, Any] = {"provider": provider_id, "model": self.handle.model_id}
        if session_id:
            kwargs["session_id"] = session_id
        self.meta = SessionMeta(**kwargs)

    # ── Identity ──────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self.meta.session_id

    @property
    def provider_id(self) -> str:
        return self.meta.provider

    @property
    def model_id(self) -> str:
        return self.meta.model

    def set_agent(self, agent_id: str | None, name: str | None = None, emoji: str | None = None) -> None:
        """Record which persona the session currently speaks as."""
        self.meta.agent_id = agent_id
        self.meta.agent_name = name
        self.meta.agent_emoji = emoji

    # ── History ───────────────────────────────────────────────────────

    def add_history(self, message: Message) -> None:
        with self._lock:
            self._history.append(message)
            self._touch(message)

    def append_turn(self, messages: list[Message]) -> None:
        """Append several messages as one step; nothing interleaves with them."""
        with self._lock:
            for message in messages:
                self._history.append(message)
                self._touch(message)

    def get_history(self) -> list[Message]:
        """Snapshot of the history, oldest first."""
        with self._lock:
            return list(self._history)

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)

    def _touch(self, message: Message) -> None:
        self.meta.updated_at = _utcnow()
        if self.meta.title is None and message.role == "user" and message.kind == "text":
            text = (message.content or "").strip()
            if text:
                self.meta.title = text.splitlines()[0][:_TITLE_LENGTH]

    def wire_messages(self) -> list[dict[str, Any]]:
        """History as provider wire messages for the active provider."""
        with self._lock:
            history = list(self._history)
            instruction = self._system_instruction
            provider_id = self.provider_id
        return to_wire_messages(history, provider_id, instruction)

    def reset(self) -> None:
        """Drop history and restore the base system instruction."""
        with self._lock:
            self._history = []
            self._system_instruction = self._base_instruction
            self._state = SessionState.IDLE
            self.meta.title = None
            self.meta.updated_at = _utcnow()

    # ── System instruction ────────────────────────────────────────────

    @property
    def system_instruction(self) -> str:
        with self._lock:
            return self._system_instruction

    @property
    def base_instruction(self) -> str:
        return self._base_instruction

    def set_system_instruction(self, text: str) -> None:
        """Replace the instruction used by future turns. History is kept."""
        with self._lock:
            self._system_instruction = text

    def clear_system_instruction(self) -> None:
        with self._lock:
            self._system_instruction = ""

    # ── Provider / model ──────────────────────────────────────────────

    def _resolve_handle(self, provider_id: str, model_id: str | None, refresh: bool = False) -> ModelHandle:
        provider = self._model_providers.get(provider_id)
        if provider is None:
            provider = self.registry.get(provider_id).get_model_provider(self.credentials)
            self._model_providers[provider_id] = provider
        return provider.get_model(model_id, refresh=refresh)

    def model_handle(self, model_id: str | None = None) -> ModelHandle:
        """Handle for model_id on the active provider, without switching to it."""
        return self._resolve_handle(self.provider_id, model_id)

    def switch_provider(
        self,
        provider_id: str,
        model_id: str | None = None,
        strip_metadata: bool = True,
    ) -> ModelHandle:
        """
        Make provider_id (and model_id) active for future turns.

        Re-resolves the credential and model handle first, so a rotated key
        is picked up and a missing credential leaves the session untouched. Completed turns are never rerun. Provider-
        private metadata of other providers is dropped when strip_metadata
        is set; message order and content are preserved.

        Raises:
            ProviderNotFound: provider_id isn't registered
            MissingCredential: no API key for the new provider
        """
        handle = self._resolve_handle(provider_id, model_id, refresh=True)
        with self._lock:
            previous = f"{self.provider_id}:{self.model_id}"
            if strip_metadata:
                self._history = strip_provider_metadata(self._history, keep_provider=provider_id)
            self.handle = handle
            self.meta.provider = provider_id
            self.meta.model = handle.model_id
            self._switch_generation += 1
            in_flight = self._state is not SessionState.IDLE

        logger.info(
            "Session %s switched from %s to %s:%s%s",
            self.id,
            previous,
            provider_id,
            handle.model_id,
            " during a turn" if in_flight else "",
        )
        return handle

    @property
    def switch_generation(self) -> int:
        """Incremented on every provider/model switch."""
        with self._lock:
            return self._switch_generation

    def model_switched_since(self, generation: int) -> bool:
        return self.switch_generation != generation

    # ── Turn state ────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def begin_turn(self, is_continuation: bool = False) -> bool:
        """Enter RESPONDING. Returns False (no-op) if busy and not a continuation."""
        with self._lock:
            if self._state is not SessionState.IDLE and not is_continuation:
                logger.debug("Session %s busy (%s); ignoring new turn", self.id, self._state.value)
                return False
            self._state = SessionState.RESPONDING
            return True

    def set_waiting_for_approval(self, waiting: bool) -> None:
        with self._lock:
            if self._state is SessionState.IDLE:
                return
            self._state = SessionState.WAITING_FOR_APPROVAL if waiting else SessionState.RESPONDING

    def end_turn(self) -> None:
        with self._lock:
            self._state = SessionState.IDLE

    def __repr__(self) -> str:
        return f"<ConversationSession {self.id} {self.provider_id}:{self.model_id} {self.state.value}>"


class SessionManager:
    """
    In-memory registry of live sessions, keyed by session id.

    Sessions are built by the factory handed in by the composition root.
    """

    def __init__(self, factory: Callable[..., ConversationSession]):
        self._factory = factory
        self._sessions: dict[str, ConversationSession] = {}
        self._lock = threading.Lock()

    def create(self, **kwargs: Any) -> ConversationSession:
        session = self._factory(**kwargs)
        with self._lock:
            self._sessions[session.id] = session
        logger.debug("Created session %s", session.id)
        return session

    def get_or_create(self, session_id: str | None = None, **kwargs: Any) -> ConversationSession:
        if session_id is not None:
            with self._lock:
                existing = self._sessions.get(session_id)
            if existing is not None:
                return existing
        return self.create(session_id=session_id, **kwargs)

    def get(self, session_id: str) -> ConversationSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def list_sessions(self) -> list[SessionMeta]:
        """Metadata of all sessions, most recently active first."""
        with self._lock:
            sessions = list(self._sessions.values())
        return sorted((s.meta for s in sessions), key=lambda m: m.updated_at, reverse=True)

    def cleanup_old_sessions(self, max_age: timedelta | float) -> int:
        """
        Remove idle sessions inactive for longer than max_age (seconds or timedelta).

        Returns:
            Number of sessions removed
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff: datetime = _utcnow() - max_age
        removed = 0
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.state is SessionState.IDLE and session.meta.updated_at < cutoff:
                    del self._sessions[session_id]
                    removed += 1
        if removed:
            logger.info("Cleaned up %d inactive session(s)", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
