"""
Backend A: OpenAI-family streams.

Tool calls arrive as argument fragments spread over many chunks, and not
every fragment says which call it belongs to. Fragments are attributed, in
order of preference, by call id, by index, to the single call in flight, by
function name, and otherwise start a new call with a synthetic id. Argument
text is repaired when the stream finishes; a call is never dropped.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from typing import Any, Iterator

from ouroboros.core.json_repair import repair_tool_arguments
from ouroboros.core.normalizers.base import StreamNormalizer, TurnAssembler, field, first_choice
from ouroboros.models.chunks import OpenAIChunk, ToolCallFragment
from ouroboros.models.events import Event, TextDelta, Thought
from ouroboros.models.messages import ToolCallRequest

logger = logging.getLogger(__name__)

_synthetic_ids = itertools.count(1)


def synthetic_call_id(name: str | None) -> str:
    return f"{name or 'call'}-{int(time.time() * 1000)}-{next(_synthetic_ids)}"


def to_openai_chunk(raw: Any) -> OpenAIChunk | None:
    """Convert one LiteLLM stream chunk; None for chunks without a choice."""
    delta, finish_reason = first_choice(raw)
    if delta is None and finish_reason is None:
        return None

    fragments = []
    for tc in field(delta, "tool_calls") or []:
        function = field(tc, "function")
        fragments.append(
            ToolCallFragment(
                index=field(tc, "index"),
                id=field(tc, "id") or None,
                name=field(function, "name") or None,
                arguments=field(function, "arguments") or "",
            )
        )

    return OpenAIChunk(
        text=field(delta, "content") or "",
        reasoning=field(delta, "reasoning_content") or "",
        fragments=fragments,
        finish_reason=finish_reason,
    )


class _BufferedCall:
    def __init__(self, call_id: str | None, name: str | None, index: int | None):
        self.call_id = call_id
        self.synthetic = call_id is None
        if call_id is None:
            self.call_id = synthetic_call_id(name)
        self.name = name
        self.index = index
        self.parts: list[str] = []

    @property
    def arguments(self) -> str:
        return "".join(self.parts)

    def parses(self) -> bool:
        text = self.arguments.strip()
        if not text:
            return True
        try:
            return isinstance(json.loads(text), dict)
        except ValueError:
            return False


class FragmentAssembler:
    """Reassembles fragmented tool calls, keeping first-seen order."""

    def __init__(self) -> None:
        self.buffered: list[_BufferedCall] = []
        self._by_id: dict[str, _BufferedCall] = {}
        self._by_index: dict[int, _BufferedCall] = {}

    def _locate(self, fragment: ToolCallFragment) -> _BufferedCall | None:
        if fragment.id and fragment.id in self._by_id:
            return self._by_id[fragment.id]

        if fragment.index is not None and fragment.index in self._by_index:
            candidate = self._by_index[fragment.index]
            # Some backends reuse index 0 for consecutive calls with new ids
            if not fragment.id or candidate.synthetic or candidate.call_id == fragment.id:
                return candidate
            return None

        if fragment.id:
            return None
        # An index we haven't seen marks a new call, unless nothing is indexed
        candidates = [c for c in self.buffered if fragment.index is None or c.index is None]
        if len(self.buffered) == 1 and candidates:
            return candidates[0]
        if fragment.name:
            for call in reversed(candidates):
                if call.name == fragment.name:
                    return call
        return None

    def add(self, fragment: ToolCallFragment) -> None:
        call = self._locate(fragment)
        if call is None:
            call = _BufferedCall(fragment.id, fragment.name, fragment.index)
            self.buffered.append(call)
        elif fragment.id and call.synthetic:
            self._by_id.pop(call.call_id, None)
            call.call_id = fragment.id
            call.synthetic = False

        if fragment.name and not call.name:
            call.name = fragment.name
        if fragment.index is not None and call.index is None:
            call.index = fragment.index
        if fragment.arguments:
            call.parts.append(fragment.arguments)

        self._by_id[call.call_id] = call
        if fragment.index is not None:
            self._by_index[fragment.index] = call

    def _merge_orphans(self) -> list[_BufferedCall]:
        """Fold nameless fragments into the single named call, if there is one."""
        named = [c for c in self.buffered if c.name]
        orphans = [c for c in self.buffered if not c.name]
        if not orphans:
            return named
        if len(named) == 1:
            target = named[0]
            for orphan in orphans:
                target.parts.extend(orphan.parts)
            logger.warning("Merged %d orphaned argument fragment(s) into '%s'", len(orphans), target.name)
            return named
        for orphan in orphans:
            logger.warning("Tool call %s arrived without a name", orphan.call_id)
            orphan.name = "unknown_tool"
        return self.buffered

    def finalize(self, agent_id: str | None = None) -> list[ToolCallRequest]:
        requests = []
        for call in self._merge_orphans():
            raw = call.arguments
            requests.append(
                ToolCallRequest(
                    call_id=call.call_id,
                    name=call.name,
                    args=repair_tool_arguments(raw),
                    agent_id=agent_id,
                    raw_arguments=raw,
                )
            )
        return requests

    def complete(self, agent_id: str | None = None) -> list[ToolCallRequest]:
        """Calls whose name is known and whose arguments already parse."""
        return [
            ToolCallRequest(
                call_id=call.call_id,
                name=call.name,
                args=repair_tool_arguments(call.arguments),
                agent_id=agent_id,
                raw_arguments=call.arguments,
            )
            for call in self.buffered
            if call.name and call.arguments.strip() and call.parses()
        ]


class OpenAITurnAssembler(TurnAssembler):
    def __init__(self, agent_id: str | None = None):
        super().__init__(agent_id)
        self.fragments = FragmentAssembler()
        self._calls: list[ToolCallRequest] | None = None

    def feed(self, raw: Any) -> Iterator[Event]:
        chunk = to_openai_chunk(raw)
        if chunk is None:
            return
        if chunk.reasoning:
            yield Thought(text=chunk.reasoning)
        if chunk.text:
            self.text_parts.append(chunk.text)
            yield TextDelta(text=chunk.text)
        for fragment in chunk.fragments:
            self.fragments.add(fragment)
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason

    def calls(self) -> list[ToolCallRequest]:
        if self._calls is None:
            self._calls = self.fragments.finalize(self.agent_id)
        return self._calls

    def complete_calls(self) -> list[ToolCallRequest]:
        return self.fragments.complete(self.agent_id)


class OpenAINormalizer(StreamNormalizer):
    provider_id = "openai"
    empty_retries = 1
    empty_detail = "possibly due to malformed tool calls"

    def new_assembler(self, agent_id: str | None = None) -> OpenAITurnAssembler:
        return OpenAITurnAssembler(agent_id)
