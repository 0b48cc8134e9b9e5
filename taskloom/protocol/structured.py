"""Native tool-call blocks returned by the transport."""

from __future__ import annotations

from taskloom.llm import LLMResponse, ToolCall, ToolDefinition
from taskloom.permissions import base_tool_name
from taskloom.protocol.base import COMPLETION_TOOL, InvocationOrigin, ParsedTurn, ToolInvocation

COMPLETION_TOOL_DEFINITION = ToolDefinition(
    name=COMPLETION_TOOL,
    description="Signal that the task is finished and report the final result.",
    parameters={
        "type": "object",
        "properties": {
            "result": {"type": "string", "description": "Final answer for the task."},
        },
        "required": ["result"],
    },
)


def invocations_from_calls(tool_calls: list[ToolCall]) -> tuple[list[ToolInvocation], str | None]:
    invocations: list[ToolInvocation] = []
    completion: str | None = None
    for call in tool_calls:
        if base_tool_name(call.name) == COMPLETION_TOOL:
            if completion is None:
                completion = str((call.arguments or {}).get("result", "") or "")
            continue
        invocations.append(
            ToolInvocation(
                tool=call.name,
                arguments=dict(call.arguments or {}),
                origin=InvocationOrigin.STRUCTURED,
                call_id=call.id,
            )
        )
    return invocations, completion


class StructuredProtocol:
    """Reads tool intents from a response's native tool calls.

    Every call is kept in order; there is no single-call rule in this mode.
    """

    def parse(self, response: LLMResponse) -> ParsedTurn:
        invocations, completion = invocations_from_calls(response.tool_calls)
        return ParsedTurn(
            invocations=invocations,
            completion=completion,
            text=response.content or "",
            completion_origin=InvocationOrigin.STRUCTURED if completion is not None else None,
        )

    @staticmethod
    def tool_definitions(definitions: list[ToolDefinition]) -> list[ToolDefinition]:
        """Tool definitions to send, with the completion tool appended."""
        names = {d.name for d in definitions}
        if COMPLETION_TOOL in names:
            return list(definitions)
        return [*definitions, COMPLETION_TOOL_DEFINITION]
