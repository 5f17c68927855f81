"""
Turn driver: the conversation loop for one session.

    submit(query)
      begin turn (no-op when the session is busy)
      loop:
        compaction check
        stream one model response (normalizer)
        no tool calls -> finish
        schedule tool calls, relay approval / response events until the batch is done
        continuation requested -> loop, otherwise finish
      session back to Idle

The driver is a generator, so the caller consumes events as they happen and
can stop early; the session is returned to Idle either way.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import TYPE_CHECKING, Callable, Iterator

from ouroboros.core.abort import AbortSignal
from ouroboros.core.compaction import ContextCompactor
from ouroboros.core.normalizers import StreamNormalizer, get_normalizer
from ouroboros.core.tool_schemas import ToolDeclaration, to_openai_tools
from ouroboros.models.events import (
    ErrorEvent,
    Event,
    Finish,
    LoopDetected,
    ToolCallRequestEvent,
    TurnLimitReached,
    UserCancelled,
)
from ouroboros.models.messages import Message, ToolCallRequest

if TYPE_CHECKING:
    from ouroboros.core.session import ConversationSession
    from ouroboros.core.tool_manager import ToolCallManager

logger = logging.getLogger(__name__)


class LoopDetector:
    """Counts identical tool calls (same name, same arguments) within one submission."""

    def __init__(self, threshold: int = 4):
        self.threshold = threshold
        self._seen: dict[str, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def signature(name: str, args: dict) -> str:
        payload = json.dumps(args, sort_keys=True, default=str)
        return f"{name}:{hashlib.md5(payload.encode()).hexdigest()}"

    def record(self, name: str, args: dict) -> bool:
        """Count one call. Returns True once it has been seen threshold times."""
        sig = self.signature(name, args)
        with self._lock:
            self._seen[sig] = self._seen.get(sig, 0) + 1
            return self._seen[sig] >= self.threshold

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()


class TurnDriver:
    """Drives a session's request / tool / continuation loop."""

    def __init__(
        self,
        session: ConversationSession,
        tool_manager: ToolCallManager,
        tools: list[ToolDeclaration] | None = None,
        compactor: ContextCompactor | None = None,
        max_session_turns: int = 100,
        loop_detection_threshold: int = 4,
        temperature: float | None = None,
        max_tokens: int | None = None,
        agent_id: str | None = None,
        normalizer_factory: Callable[[str], StreamNormalizer] = get_normalizer,
    ):
        self.session = session
        self.tool_manager = tool_manager
        self.tools = tools or []
        self.compactor = compactor
        self.max_session_turns = max_session_turns
        self.loop_detection_threshold = loop_detection_threshold
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.agent_id = agent_id
        self.normalizer_factory = normalizer_factory

    def submit(
        self,
        query: str | None,
        is_continuation: bool = False,
        signal: AbortSignal | None = None,
    ) -> Iterator[Event]:
        """
        Send query (None: just continue from history) and run until a terminal event.

        Yields nothing if the session is busy and this isn't a continuation.
        """
        signal = signal or AbortSignal()
        if not self.session.begin_turn(is_continuation):
            return

        try:
            if query is not None:
                self.session.add_history(Message.user(query))
            yield from self._loop(signal)
        finally:
            self.session.end_turn()

    def _loop(self, signal: AbortSignal) -> Iterator[Event]:
        loops = LoopDetector(self.loop_detection_threshold)
        wire_tools = to_openai_tools(self.tools) if self.tools else None
        requests_issued = 0

        while True:
            if signal.aborted:
                yield UserCancelled()
                return
            if requests_issued >= self.max_session_turns:
                logger.warning("Session %s reached the turn limit (%d)", self.session.id, self.max_session_turns)
                yield TurnLimitReached(limit=self.max_session_turns)
                return
            requests_issued += 1

            messages = self.session.wire_messages()
            if self.compactor is not None:
                messages, compaction = self.compactor.compact(messages, self.session.handle, wire_tools)
                if compaction is not None:
                    yield compaction

            normalizer = self.normalizer_factory(self.session.provider_id)
            requests: list[ToolCallRequest] = []
            finish = Finish()
            for event in normalizer.stream(
                self.session,
                self.tools,
                signal,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                agent_id=self.agent_id,
            ):
                if isinstance(event, Finish):
                    finish = event
                    continue
                yield event
                if isinstance(event, (ErrorEvent, UserCancelled)):
                    return
                if isinstance(event, ToolCallRequestEvent):
                    requests.append(
                        ToolCallRequest(
                            call_id=event.call_id,
                            name=event.name,
                            args=event.args,
                            agent_id=event.agent_id,
                        )
                    )

            if not requests:
                yield finish
                return

            looping = [r.name for r in requests if loops.record(r.name, r.args)]

            batch = self.tool_manager.schedule(requests, signal)
            yield from batch.events()
            batch.wait()

            if signal.aborted:
                yield UserCancelled()
                return
            if looping:
                logger.warning("Repeated identical tool call detected: %s", looping[0])
                yield LoopDetected(tool_name=looping[0])
                return
            if not batch.continuation_requested:
                yield finish
                return
            logger.debug("Continuing session %s with %d tool result(s)", self.session.id, len(batch.calls))
