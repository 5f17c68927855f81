"""
Backend B: Anthropic-family streams.

Anthropic delivers content as a sequence of blocks, each tool invocation a
single tool_use block. LiteLLM re-streams those blocks as OpenAI-style
deltas, so the adapter here regroups the deltas into complete typed blocks
(TextBlock, ThinkingBlock, ToolUseBlock, StopBlock) before anything else
looks at them. Thinking signatures are kept as Anthropic-private metadata
on the assistant message so they can be replayed to Anthropic later.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from ouroboros.core.json_repair import repair_tool_arguments
from ouroboros.core.normalizers.base import StreamNormalizer, TurnAssembler, field, first_choice
from ouroboros.core.normalizers.openai import synthetic_call_id
from ouroboros.models.chunks import AnthropicBlock, StopBlock, TextBlock, ThinkingBlock, ToolUseBlock
from ouroboros.models.events import Event, TextDelta, Thought
from ouroboros.models.messages import ToolCallRequest

logger = logging.getLogger(__name__)


class _OpenToolBlock:
    def __init__(self, call_id: str | None, name: str | None, index: int | None):
        self.call_id = call_id
        self.name = name
        self.index = index
        self.parts: list[str] = []

    def starts_new(self, call_id: str | None, index: int | None) -> bool:
        if call_id and self.call_id and call_id != self.call_id:
            return True
        return index is not None and self.index is not None and index != self.index

    def close(self) -> ToolUseBlock:
        if not self.name:
            logger.warning("tool_use block %s arrived without a name", self.call_id)
        return ToolUseBlock(
            id=self.call_id,
            name=self.name or "unknown_tool",
            input=repair_tool_arguments("".join(self.parts)),
        )


class BlockAdapter:
    """Regroups LiteLLM stream deltas into complete content blocks."""

    def __init__(self) -> None:
        self._open: _OpenToolBlock | None = None

    def feed(self, raw: Any) -> list[AnthropicBlock]:
        delta, finish_reason = first_choice(raw)
        blocks: list[AnthropicBlock] = []

        reasoning = field(delta, "reasoning_content")
        if reasoning:
            blocks.append(ThinkingBlock(text=reasoning))
        for thinking in field(delta, "thinking_blocks") or []:
            signature = field(thinking, "signature")
            if signature:
                blocks.append(ThinkingBlock(signature=signature))

        text = field(delta, "content")
        if text:
            blocks.append(TextBlock(text=text))

        for tc in field(delta, "tool_calls") or []:
            call_id = field(tc, "id") or None
            index = field(tc, "index")
            function = field(tc, "function")
            name = field(function, "name") or None

            if self._open is None or self._open.starts_new(call_id, index):
                if self._open is not None:
                    blocks.append(self._open.close())
                self._open = _OpenToolBlock(call_id, name, index)
            else:
                self._open.call_id = self._open.call_id or call_id
                self._open.name = self._open.name or name

            arguments = field(function, "arguments")
            if arguments:
                self._open.parts.append(arguments)

        if finish_reason:
            blocks.extend(self.close())
            blocks.append(StopBlock(stop_reason=finish_reason))
        return blocks

    def close(self) -> list[AnthropicBlock]:
        """Complete whatever block is still open."""
        if self._open is None:
            return []
        block, self._open = self._open.close(), None
        return [block]


class BlockTurnAssembler(TurnAssembler):
    """Assembles a turn from complete content blocks."""

    def __init__(self, agent_id: str | None = None, metadata_key: str | None = None):
        super().__init__(agent_id)
        self.adapter = BlockAdapter()
        self.metadata_key = metadata_key
        self.thinking_parts: list[str] = []
        self.signature: str | None = None
        self._calls: list[ToolCallRequest] = []

    def feed(self, raw: Any) -> Iterator[Event]:
        for block in self.adapter.feed(raw):
            yield from self._apply(block)

    def finish(self) -> None:
        for block in self.adapter.close():
            for _ in self._apply(block):
                pass

    def _apply(self, block: AnthropicBlock) -> Iterator[Event]:
        if isinstance(block, TextBlock):
            self.text_parts.append(block.text)
            yield TextDelta(text=block.text)
        elif isinstance(block, ThinkingBlock):
            if block.signature:
                self.signature = block.signature
            if block.text:
                self.thinking_parts.append(block.text)
                yield Thought(text=block.text)
        elif isinstance(block, ToolUseBlock):
            self._calls.append(
                ToolCallRequest(
                    call_id=block.id or synthetic_call_id(block.name),
                    name=block.name,
                    args=block.input,
                    agent_id=self.agent_id,
                )
            )
        elif isinstance(block, StopBlock):
            self.finish_reason = block.stop_reason

    def calls(self) -> list[ToolCallRequest]:
        return list(self._calls)

    def complete_calls(self) -> list[ToolCallRequest]:
        # Only blocks already closed; a half-streamed tool_use is discarded
        return list(self._calls)

    def provider_metadata(self) -> dict[str, dict[str, Any]]:
        if not self.metadata_key or not (self.thinking_parts or self.signature):
            return {}
        block = {"type": "thinking", "thinking": "".join(self.thinking_parts), "signature": self.signature}
        return {self.metadata_key: {"thinking_blocks": [block]}}


class AnthropicNormalizer(StreamNormalizer):
    provider_id = "anthropic"

    def new_assembler(self, agent_id: str | None = None) -> BlockTurnAssembler:
        return BlockTurnAssembler(agent_id, metadata_key="anthropic")
