"""
Shared stream-normalization loop.

A normalizer issues one streaming request for a session, feeds every raw
LiteLLM chunk to a backend-specific assembler (which converts it into that
backend's typed chunk shape and accumulates text and tool calls) and turns
the result into canonical events. The assistant turn is appended to the
session exactly once, immediately before the first tool-call event, or at
the end of the stream when the model called no tools.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterator

from ouroboros.core.abort import AbortSignal
from ouroboros.core.llm import _friendly_llm_error
from ouroboros.core.tool_schemas import ToolDeclaration, to_openai_tools
from ouroboros.errors import EmptyResponse, OuroborosError
from ouroboros.models.events import (
    ErrorEvent,
    Event,
    Finish,
    ToolCallRequestEvent,
    UserCancelled,
)
from ouroboros.models.messages import Message, ToolCallRequest, ToolCallResponse

if TYPE_CHECKING:
    from ouroboros.core.session import ConversationSession

logger = logging.getLogger(__name__)


def field(obj: Any, name: str, default: Any = None) -> Any:
    """Read name from an attribute-style or dict-style chunk object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def first_choice(raw: Any) -> tuple[Any, str | None]:
    """(delta, finish_reason) of a streamed chunk's first choice."""
    choices = field(raw, "choices") or []
    if not choices:
        return None, None
    choice = choices[0]
    return field(choice, "delta"), field(choice, "finish_reason")


class TurnAssembler(ABC):
    """Accumulates one streamed response."""

    def __init__(self, agent_id: str | None = None):
        self.agent_id = agent_id
        self.text_parts: list[str] = []
        self.finish_reason: str | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @abstractmethod
    def feed(self, raw: Any) -> Iterator[Event]:
        """Consume one raw chunk; yield text and thought events."""

    def finish(self) -> None:
        """Called once when the stream ends normally."""

    @abstractmethod
    def calls(self) -> list[ToolCallRequest]:
        """Every tool call of the finished stream, arguments repaired."""

    @abstractmethod
    def complete_calls(self) -> list[ToolCallRequest]:
        """Tool calls already complete when the stream was cut short."""

    def provider_metadata(self) -> dict[str, dict[str, Any]]:
        return {}

    def finish_event(self) -> Finish:
        return Finish(reason=(self.finish_reason or "stop").upper())


class StreamNormalizer(ABC):
    """
    Turns a backend's streaming response into canonical events.

    Subclasses provide the assembler for their backend family and the number
    of extra requests made when a response comes back empty.
    """

    provider_id: str = "generic"
    empty_retries: int = 0
    empty_detail: str | None = None

    def __init__(self, provider_id: str | None = None):
        if provider_id is not None:
            self.provider_id = provider_id

    @abstractmethod
    def new_assembler(self, agent_id: str | None = None) -> TurnAssembler:
        ...

    def empty_error(self) -> EmptyResponse:
        return EmptyResponse(self.provider_id, self.empty_detail)

    def stream(
        self,
        session: ConversationSession,
        tools: list[ToolDeclaration] | None = None,
        signal: AbortSignal | None = None,
        messages: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        agent_id: str | None = None,
    ) -> Iterator[Event]:
        """
        Stream one model response for session.

        Args:
            session: Source of history and the active model handle; receives
                the assistant turn
            tools: Tool declarations offered to the model
            signal: Abort signal; when it fires, a single UserCancelled is
                yielded and the stream stops
            messages: Pre-built wire messages (e.g. compacted); defaults to
                the session's own wire view
            agent_id: Persona owning the tool calls of this turn

        Yields:
            TextDelta / Thought while streaming, then ToolCallRequestEvent per
            call and Finish; or a single ErrorEvent / UserCancelled
        """
        signal = signal or AbortSignal()
        wire_tools = to_openai_tools(tools) if tools else None
        attempts = self.empty_retries + 1

        for attempt in range(1, attempts + 1):
            if signal.aborted:
                yield UserCancelled()
                return

            handle = session.handle
            wire = messages if messages is not None else session.wire_messages()
            assembler = self.new_assembler(agent_id)

            try:
                for raw in handle.stream(wire, tools=wire_tools, temperature=temperature, max_tokens=max_tokens):
                    if signal.aborted:
                        break
                    yield from assembler.feed(raw)
                else:
                    assembler.finish()
            except OuroborosError as e:
                logger.warning("Stream from %s failed: %s", handle.model_id, e)
                yield ErrorEvent.from_exception(e)
                return
            except Exception as e:
                error = _friendly_llm_error(handle.litellm_model, e)
                logger.warning("Stream from %s failed: %s", handle.model_id, error)
                yield ErrorEvent.from_exception(error)
                return

            if signal.aborted:
                self._flush_on_abort(session, assembler)
                yield UserCancelled()
                return

            calls = assembler.calls()
            if not assembler.text and not calls:
                if attempt < attempts:
                    logger.warning(
                        "%s returned an empty response, retrying (%d/%d)",
                        handle.model_id,
                        attempt,
                        attempts - 1,
                    )
                    continue
                yield ErrorEvent.from_exception(self.empty_error())
                return

            session.add_history(Message.assistant(assembler.text, calls, assembler.provider_metadata()))
            for call in calls:
                yield ToolCallRequestEvent(call_id=call.call_id, name=call.name, args=call.args, agent_id=call.agent_id)
            yield assembler.finish_event()
            return

    def _flush_on_abort(self, session: ConversationSession, assembler: TurnAssembler) -> None:
        """
        Leave history consistent after an abort: either no trace of the turn,
        or the turn with its complete calls each answered as cancelled.
        """
        calls = assembler.complete_calls()
        if not calls:
            return
        turn = [Message.assistant(assembler.text, calls, assembler.provider_metadata())]
        turn.extend(Message.tool(ToolCallResponse.cancelled_for(call)) for call in calls)
        session.append_turn(turn)
        logger.debug("Flushed %d buffered tool call(s) as cancelled", len(calls))
