"""Fallback parser for JSON tool calls written as plain text.

Older prompts asked models for ``{"tool": "...", "args": {...}}`` or
``{"done": true, "summary": "..."}``; some models still answer that way
even when asked for tags.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterator

from taskloom.logging import get_logger
from taskloom.protocol.base import InvocationOrigin, ParsedTurn, ToolInvocation

log = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
_TOOL_CALL_MARKER_RE = re.compile(r"\[TOOL_CALL\]", re.IGNORECASE)


def extract_json_objects(text: str) -> Iterator[str]:
    """Yield every balanced ``{...}`` candidate in document order.

    Braces inside JSON strings are ignored.  An unbalanced ``{`` is skipped
    so that stray braces in prose (CSS snippets, templates) do not hide a
    later real object.
    """
    search_from = 0
    while search_from < len(text):
        start = text.find("{", search_from)
        if start == -1:
            return
        depth = 0
        in_string = False
        escape = False
        end = -1
        for i in range(start, len(text)):
            ch = text[i]
            if escape:
                escape = False
                continue
            if ch == "\\" and in_string:
                escape = True
                continue
            if ch == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end == -1:
            search_from = start + 1
            continue
        yield text[start:end + 1]
        search_from = end + 1


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except (ValueError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def looks_like_tool_call(text: str) -> bool:
    parsed = _loads_object((text or "").strip())
    return bool(parsed and isinstance(parsed.get("tool"), str) and parsed["tool"])


def _interpret(obj: dict[str, Any]) -> ToolInvocation | str | None:
    """Map one decoded object to an invocation, a completion summary or nothing."""
    tool = obj.get("tool")
    if isinstance(tool, str) and tool:
        args = obj.get("args")
        return ToolInvocation(
            tool=tool,
            arguments=dict(args) if isinstance(args, dict) else {},
            origin=InvocationOrigin.LEGACY_JSON,
        )
    if obj.get("done") is True and isinstance(obj.get("summary"), str):
        summary = obj["summary"]
        nested = _loads_object(summary.strip())
        if nested is not None and isinstance(nested.get("tool"), str) and nested["tool"]:
            log.debug("Tool call wrapped in a done summary", tool=nested["tool"])
            return _interpret(nested)
        return summary
    return None


def _candidates(content: str) -> Iterator[str]:
    yield content.strip()
    fence = _FENCE_RE.search(content)
    if fence:
        yield fence.group(1)
    for chunk in _TOOL_CALL_MARKER_RE.split(content):
        yield from extract_json_objects(chunk)


class LegacyJsonProtocol:
    """Finds the first JSON tool call or done signal in a turn."""

    def parse(self, content: str) -> ParsedTurn:
        text = content or ""
        if "{" not in text:
            return ParsedTurn(text=text.strip())

        for candidate in _candidates(text):
            obj = _loads_object(candidate)
            if obj is None:
                continue
            interpreted = _interpret(obj)
            if isinstance(interpreted, ToolInvocation):
                return ParsedTurn(invocations=[interpreted], text=text.strip())
            if isinstance(interpreted, str):
                return ParsedTurn(
                    completion=interpreted,
                    text=text.strip(),
                    completion_origin=InvocationOrigin.LEGACY_JSON,
                )
        return ParsedTurn(text=text.strip())
