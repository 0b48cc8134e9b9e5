"""Incremental tag detection over a streamed model response.

The streaming parser only drives the live view (what to show, whether a
tool block is open).  The batch ``TagProtocol.parse`` over the finished
turn stays authoritative for what actually gets executed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from taskloom.permissions import base_tool_name
from taskloom.protocol.base import COMPLETION_TOOL, InvocationOrigin, ToolInvocation
from taskloom.protocol.tags import TagProtocol, coerce_arguments, completion_text, parse_params

MAX_TAG_LENGTH = 60

_STREAM_OPEN_RE = re.compile(r"^<([a-z][a-z0-9_:.-]*)(?:\s*>|\s*\n)$")


class _State(str, Enum):
    TEXT = "text"
    POTENTIAL_TAG = "potential_tag"
    INSIDE_TOOL = "inside_tool"


@dataclass
class FeedResult:
    display_text: str = ""
    completed_invocations: list[ToolInvocation] = field(default_factory=list)
    completion: str | None = None
    inside_tool_block: bool = False


@dataclass
class FinalResult:
    display_text: str
    raw_text: str
    invocations: list[ToolInvocation]
    completion: str | None


@dataclass(frozen=True)
class PartialToolView:
    """The tool block currently being streamed, for live display only."""

    tool: str
    content: str


class StreamingTagParser:
    """Stateful chunk-by-chunk detector for tool blocks."""

    def __init__(self, protocol: TagProtocol | None = None):
        self._protocol = protocol or TagProtocol()
        self.reset()

    def reset(self) -> None:
        self._state = _State.TEXT
        self._buffer = ""
        self._raw: list[str] = []
        self._display: list[str] = []
        self._tool = ""
        self._tool_content = ""
        self._invocations: list[ToolInvocation] = []
        self._completion: str | None = None

    @property
    def partial_view(self) -> PartialToolView | None:
        if self._state != _State.INSIDE_TOOL:
            return None
        return PartialToolView(tool=self._tool, content=self._tool_content)

    def feed(self, chunk: str) -> FeedResult:
        result = FeedResult()
        display: list[str] = []

        for char in chunk or "":
            self._raw.append(char)

            if self._state == _State.TEXT:
                if char == "<":
                    self._state = _State.POTENTIAL_TAG
                    self._buffer = "<"
                else:
                    display.append(char)

            elif self._state == _State.POTENTIAL_TAG:
                self._buffer += char
                if char in (">", "\n"):
                    match = _STREAM_OPEN_RE.match(self._buffer)
                    if match and self._protocol.is_known(match.group(1)):
                        self._state = _State.INSIDE_TOOL
                        self._tool = match.group(1)
                        self._tool_content = ""
                    else:
                        display.append(self._buffer)
                        self._state = _State.TEXT
                    self._buffer = ""
                elif len(self._buffer) > MAX_TAG_LENGTH:
                    display.append(self._buffer)
                    self._buffer = ""
                    self._state = _State.TEXT

            else:
                self._tool_content += char
                result.inside_tool_block = True
                close_tag = f"</{self._tool}>"
                if self._tool_content.endswith(close_tag):
                    self._close_block(self._tool_content[: -len(close_tag)], result)
                    result.inside_tool_block = False

        result.display_text = "".join(display)
        self._display.append(result.display_text)
        return result

    def _close_block(self, inner: str, result: FeedResult) -> None:
        params = parse_params(inner)
        if base_tool_name(self._tool) == COMPLETION_TOOL:
            self._completion = completion_text(inner, params)
            result.completion = self._completion
        else:
            invocation = ToolInvocation(
                tool=self._tool,
                arguments=coerce_arguments(self._tool, params),
                origin=InvocationOrigin.PROTOCOL,
            )
            self._invocations.append(invocation)
            result.completed_invocations.append(invocation)
        self._tool = ""
        self._tool_content = ""
        self._state = _State.TEXT

    def finalize(self) -> FinalResult:
        """Flush pending buffers once the stream has ended.

        An unterminated tool block (the model was cut off) is shown as text.
        """
        if self._state == _State.POTENTIAL_TAG and self._buffer:
            self._display.append(self._buffer)
            self._buffer = ""
        if self._state == _State.INSIDE_TOOL and self._tool_content:
            self._display.append(f"<{self._tool}>{self._tool_content}")
        self._state = _State.TEXT
        return FinalResult(
            display_text="".join(self._display).strip(),
            raw_text="".join(self._raw),
            invocations=list(self._invocations),
            completion=self._completion,
        )
