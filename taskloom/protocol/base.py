"""Shared types for model-output parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from taskloom.permissions import base_tool_name

COMPLETION_TOOL = "attempt_completion"


class InvocationOrigin(str, Enum):
    PROTOCOL = "protocol"
    STRUCTURED = "structured"
    LEGACY_JSON = "legacy_json"
    PROSE = "prose"


@dataclass(frozen=True)
class ToolInvocation:
    """One tool intent extracted from a model turn."""

    tool: str
    arguments: dict[str, Any] = field(default_factory=dict)
    origin: InvocationOrigin = InvocationOrigin.PROTOCOL
    confidence: float = 1.0
    call_id: str = ""

    @property
    def base_name(self) -> str:
        return base_tool_name(self.tool)


@dataclass
class ParsedTurn:
    """Everything actionable found in one turn of model output."""

    invocations: list[ToolInvocation] = field(default_factory=list)
    completion: str | None = None
    text: str = ""
    dropped: int = 0
    completion_origin: InvocationOrigin | None = None

    @property
    def is_empty(self) -> bool:
        return not self.invocations and self.completion is None

    @property
    def origin(self) -> InvocationOrigin | None:
        if self.invocations:
            return self.invocations[0].origin
        return None
