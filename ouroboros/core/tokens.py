"""
Token estimates for wire messages.

tiktoken's cl100k_base is used for every provider. It is exact for older
OpenAI models and a close enough approximation for the rest to decide when
history needs compacting.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

import tiktoken

logger = logging.getLogger(__name__)

# Substring of the model id -> encoding name
MODEL_ENCODINGS = {
    "gpt-5": "o200k_base",
    "gpt-4o": "o200k_base",
    "default": "cl100k_base",
}

# Fixed per-message and per-request framing overhead
MESSAGE_OVERHEAD = 4
REQUEST_OVERHEAD = 3


@lru_cache(maxsize=8)
def _encoding_named(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def get_encoding(model: str) -> tiktoken.Encoding:
    model_lower = model.lower()
    for marker, encoding in MODEL_ENCODINGS.items():
        if marker != "default" and marker in model_lower:
            return _encoding_named(encoding)
    return _encoding_named(MODEL_ENCODINGS["default"])


def count_tokens(text: str, model: str = "default") -> int:
    if not text:
        return 0
    return len(get_encoding(model).encode(text, disallowed_special=()))


def count_message_tokens(message: dict[str, Any], model: str = "default") -> int:
    """Tokens for one wire message, including tool calls and framing."""
    tokens = MESSAGE_OVERHEAD
    content = message.get("content")
    if isinstance(content, str):
        tokens += count_tokens(content, model)
    elif isinstance(content, list):
        for part in content:
            text = part.get("text", "") if isinstance(part, dict) else str(part)
            tokens += count_tokens(text, model)

    for call in message.get("tool_calls") or []:
        function = call.get("function", {})
        tokens += count_tokens(function.get("name", ""), model)
        tokens += count_tokens(function.get("arguments", ""), model)

    if message.get("tool_call_id"):
        tokens += 2
    return tokens


def count_messages_tokens(messages: list[dict[str, Any]], model: str = "default") -> int:
    return REQUEST_OVERHEAD + sum(count_message_tokens(m, model) for m in messages)


def count_tools_tokens(tools: list[dict[str, Any]] | None, model: str = "default") -> int:
    """Approximate cost of tool declarations, which share the context window."""
    if not tools:
        return 0
    return count_tokens(json.dumps(tools), model)
