"""
Tolerant JSON handling for model output.

Two jobs: turning streamed tool-call argument text into an argument dict
(never raising, worst case {}), and fishing a JSON object out of a model's
free-form reply (fenced, bare, or embedded in prose).
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator

from ouroboros.errors import MalformedToolArguments

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_CLOSERS = {"{": "}", "[": "]"}


def _loads(text: str) -> tuple[bool, Any]:
    """json.loads returning (ok, value) instead of raising."""
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def iter_balanced_objects(text: str) -> Iterator[str]:
    """
    Yield every balanced {...} block in text, left to right.

    Quote tracking only starts inside a block, so apostrophes in surrounding
    prose don't throw off the count; braces inside string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end != -1:
            yield text[start : end + 1]
        start = text.find("{", start + 1)


def find_balanced_object(text: str) -> str | None:
    """First balanced {...} block in text, or None."""
    return next(iter_balanced_objects(text), None)


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """
    Find a JSON object in a model reply.

    Tries, in order: the whole text, a ``` fenced block, then each balanced
    {...} block in the text. Returns None when nothing parses to an object.
    """
    if not text:
        return None
    stripped = text.strip()

    ok, value = _loads(stripped)
    if ok and isinstance(value, dict):
        return value

    fence = _FENCE_RE.search(stripped)
    if fence:
        ok, value = _loads(fence.group(1))
        if ok and isinstance(value, dict):
            return value
        stripped = fence.group(1)

    for block in iter_balanced_objects(stripped):
        ok, value = _loads(block)
        if ok and isinstance(value, dict):
            return value
    return None


def _close_open_structures(text: str) -> str:
    """Terminate an open string and close any unbalanced brackets."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(":"):
        repaired += " null"
    repaired = repaired.rstrip(",")
    return repaired + "".join(reversed(stack))


def _repair_candidates(text: str) -> Iterator[str]:
    candidate = text
    if not candidate.startswith(("{", "[")):
        candidate = "{" + candidate
    yield candidate
    closed = _close_open_structures(candidate)
    yield closed
    yield _TRAILING_COMMA_RE.sub(r"\1", closed)
    if not candidate.endswith("}"):
        yield candidate + "}"


def repair_tool_arguments(raw: str | None) -> dict[str, Any]:
    """
    Parse streamed tool-call arguments. Never raises.

    Valid objects pass through, valid non-objects are wrapped as
    {"value": ...}, truncated or unwrapped JSON is patched, and anything
    still unusable becomes {}.
    """
    if raw is None:
        return {}
    text = raw.strip()
    if not text:
        return {}

    ok, value = _loads(text)
    if ok:
        return value if isinstance(value, dict) else {"value": value}

    for candidate in _repair_candidates(text):
        ok, value = _loads(candidate)
        if ok and isinstance(value, dict):
            logger.warning("Repaired malformed tool arguments: %r", text[:80])
            return value

    embedded = extract_json_object(text)
    if embedded is not None:
        logger.warning("Recovered tool arguments embedded in text: %r", text[:80])
        return embedded

    logger.warning("%s; using empty object", MalformedToolArguments(text))
    return {}


def parse_tool_arguments(value: Any) -> dict[str, Any]:
    """Coerce any argument payload (dict, JSON text, scalar) to an argument dict."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        return repair_tool_arguments(value)
    return {"value": value}
