"""Tag-embedded tool protocol.

Models write tool intents as tool-named blocks interleaved with prose::

    I'll look at the config first.
    <read_file>
    <path>src/config.py</path>
    </read_file>

Only known tool names open a block, and a block only counts once its
closing tag is present; anything else (HTML in prose, an unterminated tag
cut off by a length limit) stays plain text.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from taskloom.logging import get_logger
from taskloom.permissions import base_tool_name, is_read_only
from taskloom.protocol.base import COMPLETION_TOOL, InvocationOrigin, ParsedTurn, ToolInvocation

log = get_logger(__name__)

DEFAULT_TOOL_NAMES = frozenset({
    "read_file", "write_to_file", "replace_in_file", "apply_patch",
    "list_files", "create_directory", "file_delete", "file_move",
    "search_files", "list_code_definition_names",
    "execute_command",
    "http_request", "web_search", "webpage_fetch",
    "ask_followup_question",
    "condense",
})

_OPEN_TAG_RE = re.compile(r"<([a-z][a-z0-9_]*(?:::[a-z0-9_.-]+)*)(?:[ \t]*>|[ \t]*\n)")
_PARAM_OPEN_RE = re.compile(r"<([a-z_][a-z0-9_]*)>")
_SEARCH_REPLACE_RE = re.compile(
    r"<<<<<<< SEARCH\n(.*?)\n=======\n(.*?)\n>>>>>>> REPLACE",
    re.DOTALL,
)
_INT_PARAMS = frozenset({"start_line", "end_line", "line", "limit", "offset", "max_results"})
_EDIT_TOOLS = frozenset({"replace_in_file", "file_edit"})


def parse_params(inner: str) -> dict[str, str]:
    """Parse ``<param>value</param>`` pairs from a block's inner text.

    One leading and one trailing newline are stripped from each value;
    inner newlines are kept.
    """
    params: dict[str, str] = {}
    cursor = 0
    while cursor < len(inner):
        match = _PARAM_OPEN_RE.search(inner, cursor)
        if match is None:
            break
        name = match.group(1)
        value_start = match.end()
        close_tag = f"</{name}>"
        close_idx = inner.find(close_tag, value_start)
        if close_idx == -1:
            cursor = value_start
            continue
        value = inner[value_start:close_idx]
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        params[name] = value
        cursor = close_idx + len(close_tag)
    return params


def parse_search_replace(diff: str) -> list[dict[str, str]]:
    """Extract SEARCH/REPLACE edit blocks from a diff parameter."""
    return [
        {"old_string": search, "new_string": replace}
        for search, replace in _SEARCH_REPLACE_RE.findall(diff or "")
    ]


def coerce_arguments(tool: str, params: dict[str, str]) -> dict[str, Any]:
    """Turn raw string params into tool arguments."""
    args: dict[str, Any] = {}
    for key, value in params.items():
        if key in _INT_PARAMS and value.strip().lstrip("-").isdigit():
            args[key] = int(value.strip())
        else:
            args[key] = value

    if base_tool_name(tool) in _EDIT_TOOLS and "diff" in params:
        blocks = parse_search_replace(params["diff"])
        if len(blocks) == 1:
            args.update(blocks[0])
            args.pop("diff", None)
        elif blocks:
            args["diff_blocks"] = blocks
            args.pop("diff", None)
    return args


def completion_text(inner: str, params: dict[str, str]) -> str:
    if "result" in params:
        return params["result"]
    return inner.strip()


class TagProtocol:
    """Batch parser for the tag-embedded protocol."""

    def __init__(
        self,
        tool_names: Iterable[str] | None = None,
        read_only: Callable[[str], bool] = is_read_only,
    ):
        names = set(DEFAULT_TOOL_NAMES if tool_names is None else tool_names)
        names.add(COMPLETION_TOOL)
        self._names = frozenset(names)
        self._read_only = read_only

    @property
    def tool_names(self) -> frozenset[str]:
        return self._names

    def with_tools(self, tool_names: Iterable[str]) -> "TagProtocol":
        """Copy of this protocol that also recognizes tool_names."""
        return TagProtocol(set(self._names) | set(tool_names), self._read_only)

    def is_known(self, tag: str) -> bool:
        return tag in self._names or base_tool_name(tag) in self._names

    def parse(self, text: str, enforce_single: bool = True) -> ParsedTurn:
        """Extract invocations and the completion signal from one turn.

        With ``enforce_single`` a turn holding several tool blocks keeps only
        the first unless every block is read-only.
        """
        content = text or ""
        invocations: list[ToolInvocation] = []
        text_parts: list[str] = []
        completion: str | None = None
        cursor = 0

        while cursor < len(content):
            tag_start = content.find("<", cursor)
            if tag_start == -1:
                text_parts.append(content[cursor:])
                break
            if tag_start > cursor:
                text_parts.append(content[cursor:tag_start])

            match = _OPEN_TAG_RE.match(content, tag_start)
            if match is None:
                text_parts.append("<")
                cursor = tag_start + 1
                continue

            tag = match.group(1)
            if not self.is_known(tag):
                text_parts.append(match.group(0))
                cursor = match.end()
                continue

            close_tag = f"</{tag}>"
            close_idx = content.find(close_tag, match.end())
            if close_idx == -1:
                # Unterminated: leave it as prose.
                text_parts.append(match.group(0))
                cursor = match.end()
                continue

            inner = content[match.end():close_idx]
            params = parse_params(inner)
            if base_tool_name(tag) == COMPLETION_TOOL:
                if completion is None:
                    completion = completion_text(inner, params)
            else:
                invocations.append(
                    ToolInvocation(
                        tool=tag,
                        arguments=coerce_arguments(tag, params),
                        origin=InvocationOrigin.PROTOCOL,
                    )
                )
            cursor = close_idx + len(close_tag)

        dropped = 0
        if enforce_single and len(invocations) > 1:
            if not all(self._read_only(inv.tool) for inv in invocations):
                dropped = len(invocations) - 1
                log.debug(
                    "Multiple tool blocks with a non-read-only call; keeping the first",
                    kept=invocations[0].tool,
                    dropped=dropped,
                )
                invocations = invocations[:1]

        return ParsedTurn(
            invocations=invocations,
            completion=completion,
            text="".join(text_parts).strip(),
            dropped=dropped,
            completion_origin=InvocationOrigin.PROTOCOL if completion is not None else None,
        )
