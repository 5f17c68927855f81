"""
Context compaction for long conversations.

Session history is never rewritten. When the wire view of a request grows
past the configured token threshold, the older part of it is summarized by
the session's model and replaced, in that request only, by a single summary
message. The latest summary is cached so later requests only summarize the
messages added since.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ouroboros.core.tokens import count_messages_tokens, count_tools_tokens
from ouroboros.errors import OuroborosError
from ouroboros.models.events import Compaction
from ouroboros.models.settings import CompactionSettings

if TYPE_CHECKING:
    from ouroboros.core.providers import ModelHandle

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """Summarize this conversation concisely. Focus on:
1. Key topics discussed
2. Important decisions or conclusions
3. Any tasks completed or pending
4. Relevant context for continuing the conversation

Keep the summary under 500 words.

{previous}Conversation:
{conversation}

Summary:"""

# Room left for the summary request itself when its input is huge
_MAX_SUMMARY_INPUT_CHARS = 200_000


@dataclass
class _CachedSummary:
    covered: int  # number of body messages the summary stands for
    text: str


def format_for_summary(messages: list[dict[str, Any]]) -> str:
    """Readable transcript of wire messages, tool output truncated."""
    lines = []
    for msg in messages:
        role = msg.get("role", "unknown")
        content = msg.get("content") or ""
        if role == "tool":
            if len(content) > 500:
                content = content[:500] + "..."
            lines.append(f"[Tool Result]: {content}")
        elif role == "assistant" and msg.get("tool_calls"):
            names = [tc.get("function", {}).get("name", "?") for tc in msg["tool_calls"]]
            lines.append(f"ASSISTANT: [Called tools: {', '.join(names)}]")
            if content:
                lines.append(f"ASSISTANT: {content}")
        elif role == "system":
            continue
        else:
            lines.append(f"{role.upper()}: {content}")
    return "\n\n".join(lines)


class ContextCompactor:
    """Summarizes older wire messages once a request exceeds the threshold."""

    def __init__(self, settings: CompactionSettings | None = None):
        self.settings = settings or CompactionSettings()
        self._summary: _CachedSummary | None = None

    def reset(self) -> None:
        self._summary = None

    def _split(self, messages: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], list[dict[str, Any]], int]:
        """(leading system messages, body, boundary index into body)."""
        lead = 0
        while lead < len(messages) and messages[lead].get("role") == "system":
            lead += 1
        head, body = messages[:lead], messages[lead:]

        boundary = len(body) - self.settings.min_recent_messages
        # Never separate tool responses from the call that issued them
        while boundary > 0 and body[boundary].get("role") == "tool":
            boundary -= 1
        return head, body, boundary

    def compact(
        self,
        messages: list[dict[str, Any]],
        handle: ModelHandle,
        tools: list[dict[str, Any]] | None = None,
    ) -> tuple[list[dict[str, Any]], Compaction | None]:
        """
        Return the messages to send and a Compaction event if anything was summarized.

        Summarization failures are logged and the uncompacted messages returned.
        """
        if not self.settings.enabled:
            return messages, None

        model = handle.model_id
        before = count_messages_tokens(messages, model) + count_tools_tokens(tools, model)
        if before <= self.settings.max_tokens_before_compaction:
            return messages, None

        head, body, boundary = self._split(messages)
        if boundary <= 0:
            return messages, None

        cached = self._summary
        if cached is not None and cached.covered > boundary:
            cached = None

        if cached is not None and cached.covered == boundary:
            summary = cached.text
        else:
            start = cached.covered if cached is not None else 0
            try:
                summary = self._summarize(body[start:boundary], cached.text if cached else None, handle)
            except OuroborosError as e:
                logger.warning("Context compaction failed, sending full history: %s", e)
                return messages, None
            self._summary = _CachedSummary(covered=boundary, text=summary)

        summary_message = {
            "role": "system",
            "content": f"[Context Summary - {boundary} previous messages]\n\n{summary}",
        }
        compacted = head + [summary_message] + body[boundary:]
        after = count_messages_tokens(compacted, model) + count_tools_tokens(tools, model)
        logger.info("Compacted context from %d to %d tokens", before, after)
        return compacted, Compaction(from_tokens=before, to_tokens=after)

    def _summarize(
        self,
        messages: list[dict[str, Any]],
        previous: str | None,
        handle: ModelHandle,
    ) -> str:
        conversation = format_for_summary(messages)
        if len(conversation) > _MAX_SUMMARY_INPUT_CHARS:
            conversation = conversation[-_MAX_SUMMARY_INPUT_CHARS:]
        prior = f"Summary of the conversation before this part:\n{previous}\n\n" if previous else ""
        prompt = SUMMARY_PROMPT.format(previous=prior, conversation=conversation)
        return handle.complete([{"role": "user", "content": prompt}], max_tokens=1024)
