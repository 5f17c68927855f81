"""
Conversion of session history into the OpenAI-style message list LiteLLM sends.

Backends require strict call/response pairing: every tool message must follow
the assistant message that issued its call, and every issued call must be
answered before the conversation moves on. History can violate both (aborted
batches, cancellation notices, responses recorded after a provider switch),
so the converter repairs the wire view without touching history itself.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from ouroboros.models.messages import Message, ToolCallRequest, ToolCallResponse

logger = logging.getLogger(__name__)

OrphanPolicy = Literal["synthesize", "drop"]


def _wire_tool_call(request: ToolCallRequest) -> dict[str, Any]:
    return {
        "id": request.call_id,
        "type": "function",
        "function": {"name": request.name, "arguments": request.arguments_json()},
    }


def _wire_tool_response(response: ToolCallResponse, name: str | None = None) -> dict[str, Any]:
    wire: dict[str, Any] = {
        "role": "tool",
        "tool_call_id": response.call_id,
        "content": response.to_llm_content(),
    }
    if name or response.name:
        wire["name"] = name or response.name
    return wire


def _wire_assistant(message: Message, provider_id: str) -> dict[str, Any]:
    wire: dict[str, Any] = {"role": "assistant", "content": message.content or ""}
    if message.tool_calls:
        wire["tool_calls"] = [_wire_tool_call(tc) for tc in message.tool_calls]
        if not message.content:
            wire["content"] = None

    # Reasoning blocks only make sense to the provider that signed them
    private = message.provider_metadata.get(provider_id) or {}
    if provider_id == "anthropic" and private.get("thinking_blocks"):
        wire["thinking_blocks"] = private["thinking_blocks"]
    return wire


class _Pairing:
    """Tracks which calls of the latest assistant turn still need a response."""

    def __init__(self) -> None:
        self.pending: dict[str, ToolCallRequest] = {}
        self.answered: set[str] = set()

    def open(self, calls: list[ToolCallRequest]) -> None:
        self.pending = {tc.call_id: tc for tc in calls}

    def answer(self, call_id: str) -> ToolCallRequest | None:
        request = self.pending.pop(call_id, None)
        if request is not None:
            self.answered.add(call_id)
        return request

    def close(self, out: list[dict[str, Any]]) -> None:
        """Answer outstanding calls with cancelled responses."""
        for call_id in list(self.pending):
            request = self.pending.pop(call_id)
            self.answered.add(call_id)
            out.append(_wire_tool_response(ToolCallResponse.cancelled_for(request), request.name))


def to_wire_messages(
    history: list[Message],
    provider_id: str,
    system_instruction: str | None = None,
    orphan_policy: OrphanPolicy = "synthesize",
) -> list[dict[str, Any]]:
    """
    Build the message list for one request.

    Args:
        history: Session history, oldest first
        provider_id: Target provider; selects which private metadata is sent
        system_instruction: Prepended as a system message when set
        orphan_policy: What to do with a tool response whose call was never
            issued: "synthesize" a placeholder assistant call, or "drop" it

    Returns:
        OpenAI-format message dicts
    """
    out: list[dict[str, Any]] = []
    if system_instruction:
        out.append({"role": "system", "content": system_instruction})

    pairing = _Pairing()

    for message in history:
        if message.role == "tool":
            response = message.tool_response
            request = pairing.answer(response.call_id)
            if request is not None:
                out.append(_wire_tool_response(response, request.name))
                continue
            if response.call_id in pairing.answered:
                logger.debug("Dropping duplicate response for call %s", response.call_id)
                continue
            pairing.close(out)
            if orphan_policy == "drop":
                logger.debug("Dropping orphaned tool response %s", response.call_id)
                continue
            placeholder = ToolCallRequest(call_id=response.call_id, name=response.name or "unknown_tool")
            out.append({"role": "assistant", "content": None, "tool_calls": [_wire_tool_call(placeholder)]})
            out.append(_wire_tool_response(response, placeholder.name))
            pairing.answered.add(response.call_id)
            continue

        # Anything else ends the tool exchange, including a batched
        # cancellation notice whose calls expand to per-call responses here
        pairing.close(out)

        if message.role == "assistant":
            out.append(_wire_assistant(message, provider_id))
            if message.tool_calls:
                pairing.open(message.tool_calls)
        else:
            out.append({"role": message.role, "content": message.content or ""})

    pairing.close(out)
    return out


def strip_provider_metadata(history: list[Message], keep_provider: str | None = None) -> list[Message]:
    """
    Copies of history with provider-private metadata removed.

    Metadata keyed by keep_provider survives; order and visible content are
    unchanged.
    """
    stripped: list[Message] = []
    for message in history:
        if not message.provider_metadata or set(message.provider_metadata) <= {keep_provider}:
            stripped.append(message)
            continue
        kept = {k: v for k, v in message.provider_metadata.items() if k == keep_provider}
        stripped.append(message.model_copy(update={"provider_metadata": kept}))
    return stripped
