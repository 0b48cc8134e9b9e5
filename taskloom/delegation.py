"""Workers handing sub-tasks to other workers from inside the tool loop.

A worker whose kind has delegation targets sees two virtual tools:
``delegate_to_agent`` runs one sub-worker and waits for it, while
``use_subagents`` runs several independent sub-workers concurrently.  The
sub-worker's answer comes back as the tool result.  Depth is capped so
chains such as coder -> reviewer -> coder cannot recurse forever.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from taskloom.config import get_config
from taskloom.exceptions import TaskCancelledError
from taskloom.logging import get_logger
from taskloom.permissions import (
    SafetyClass,
    WorkerKind,
    base_tool_name,
    can_delegate,
    delegation_targets,
)
from taskloom.protocol import ToolInvocation
from taskloom.tools.registry import ToolOutcome, ToolSpec

if TYPE_CHECKING:
    from taskloom.worker import WorkerResult

log = get_logger(__name__)

DELEGATE_TOOL = "delegate_to_agent"
SUBAGENTS_TOOL = "use_subagents"
DELEGATION_TOOLS = frozenset({DELEGATE_TOOL, SUBAGENTS_TOOL})

TARGET_DESCRIPTIONS = {
    WorkerKind.RESEARCHER: "web search, fact-finding, data gathering",
    WorkerKind.CODER: "code reading, writing, analysis",
    WorkerKind.REVIEWER: "code review, quality checks",
    WorkerKind.WRITER: "drafting text, documentation",
    WorkerKind.ANALYST: "data analysis, pattern recognition",
    WorkerKind.CRITIC: "critical evaluation, argument analysis",
    WorkerKind.EXECUTOR: "full system access, shell commands",
}

DelegateFn = Callable[[WorkerKind, str], Awaitable["WorkerResult"]]


def can_delegate_at_depth(depth: int, max_depth: int | None = None) -> bool:
    limit = get_config().delegation.max_depth if max_depth is None else max_depth
    return depth < limit


class Delegator:
    """Runs the delegation tools for one worker at one depth."""

    def __init__(
        self,
        worker_kind: WorkerKind | str,
        depth: int,
        delegate: DelegateFn,
        max_depth: int | None = None,
        max_parallel: int | None = None,
    ):
        cfg = get_config().delegation
        self.worker_kind = WorkerKind.parse(worker_kind)
        self.depth = depth
        self.max_depth = cfg.max_depth if max_depth is None else max_depth
        self.max_parallel = cfg.max_parallel if max_parallel is None else max_parallel
        self._delegate = delegate
        self.tokens_in = 0
        self.tokens_out = 0

    @property
    def targets(self) -> tuple[WorkerKind, ...]:
        return delegation_targets(self.worker_kind)

    @property
    def enabled(self) -> bool:
        return bool(self.targets) and can_delegate_at_depth(self.depth, self.max_depth)

    @staticmethod
    def handles(tool: str) -> bool:
        return base_tool_name(tool) in DELEGATION_TOOLS

    def tool_specs(self) -> list[ToolSpec]:
        if not self.enabled:
            return []
        listing = "; ".join(f"{k.value} ({TARGET_DESCRIPTIONS.get(k, k.value)})" for k in self.targets)
        agent_schema = {"type": "string", "enum": [k.value for k in self.targets]}
        return [
            ToolSpec(
                key=DELEGATE_TOOL,
                description=(
                    "Delegate a sub-task to another specialist worker and get its result. "
                    f"Available workers: {listing}."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "agent": agent_schema,
                        "task": {"type": "string", "description": "Detailed sub-task description"},
                    },
                    "required": ["agent", "task"],
                },
                safety=SafetyClass.EXECUTE,
            ),
            ToolSpec(
                key=SUBAGENTS_TOOL,
                description=(
                    f"Run up to {self.max_parallel} independent sub-tasks in parallel, one worker each. "
                    f"Available workers: {listing}. "
                    'Pass tasks as a JSON array of {"agent": ..., "task": ...} objects.'
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "tasks": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {"agent": agent_schema, "task": {"type": "string"}},
                                "required": ["agent", "task"],
                            },
                        },
                    },
                    "required": ["tasks"],
                },
                safety=SafetyClass.EXECUTE,
            ),
        ]

    def take_usage(self) -> tuple[int, int]:
        """Token usage of sub-workers since the last call."""
        usage = (self.tokens_in, self.tokens_out)
        self.tokens_in = self.tokens_out = 0
        return usage

    async def execute(self, invocation: ToolInvocation) -> ToolOutcome:
        if invocation.base_name == SUBAGENTS_TOOL:
            return await self._run_parallel(invocation.arguments)
        return await self._run_single(invocation.arguments)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_single(self, args: dict[str, Any]) -> ToolOutcome:
        target = str(args.get("agent") or "").strip()
        task = str(args.get("task") or "").strip()
        if not target or not task:
            return ToolOutcome(success=False, error="INVALID ARGS: requires agent and task parameters")
        if not can_delegate_at_depth(self.depth, self.max_depth):
            return ToolOutcome(success=False, error="DELEGATION DEPTH EXCEEDED: complete the task yourself")
        decision = can_delegate(self.worker_kind, target)
        if not decision.allowed:
            return ToolOutcome(success=False, error=f"DELEGATION DENIED: {decision.reason}")

        kind = WorkerKind.parse(target)
        log.info("Delegating", worker=self.worker_kind.value, target=kind.value, depth=self.depth, task=task[:150])
        try:
            result = await self._delegate(kind, task)
        except TaskCancelledError:
            raise
        except Exception as e:
            log.warning("Delegation failed", target=kind.value, error=str(e))
            return ToolOutcome(success=False, error=f"DELEGATION FAILED: {e}")
        self._count(result)
        if result.ok:
            return ToolOutcome(success=True, content=result.output)
        return ToolOutcome(
            success=False,
            content=result.output,
            error=f"DELEGATION FAILED: {result.error or result.status}",
        )

    async def _run_parallel(self, args: dict[str, Any]) -> ToolOutcome:
        raw = args.get("tasks")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return ToolOutcome(
                    success=False,
                    error="INVALID ARGS: tasks must be a JSON array of {agent, task} objects",
                )
        if not isinstance(raw, list) or not raw:
            return ToolOutcome(success=False, error="INVALID ARGS: tasks must be a non-empty array")
        if not can_delegate_at_depth(self.depth, self.max_depth):
            return ToolOutcome(success=False, error="DELEGATION DEPTH EXCEEDED: complete the tasks yourself")

        accepted: list[tuple[WorkerKind, str]] = []
        rejections: list[str] = []
        for item in raw[: self.max_parallel]:
            if not isinstance(item, dict) or not str(item.get("task") or "").strip():
                rejections.append(f"{item!r}: requires agent and task")
                continue
            target = str(item.get("agent") or "").strip()
            decision = can_delegate(self.worker_kind, target)
            if not decision.allowed:
                rejections.append(f'"{target}": {decision.reason}')
                continue
            accepted.append((WorkerKind.parse(target), str(item["task"]).strip()))
        if len(raw) > self.max_parallel:
            rejections.append(f"{len(raw) - self.max_parallel} task(s) over the limit of {self.max_parallel}")

        if not accepted:
            return ToolOutcome(success=False, error="ALL DELEGATIONS DENIED:\n" + "\n".join(rejections))

        log.info(
            "Parallel delegation",
            worker=self.worker_kind.value,
            targets=[kind.value for kind, _ in accepted],
            depth=self.depth,
        )
        results = await asyncio.gather(
            *(self._delegate(kind, task) for kind, task in accepted),
            return_exceptions=True,
        )

        parts: list[str] = []
        all_ok = True
        for (kind, task), result in zip(accepted, results):
            if isinstance(result, TaskCancelledError):
                raise result
            if isinstance(result, BaseException):
                all_ok = False
                parts.append(f"--- Sub-agent: {kind.value} (failed) ---\nTask: {task}\nError: {result}")
                continue
            self._count(result)
            all_ok = all_ok and result.ok
            body = result.output or f"Error: {result.error or result.status}"
            parts.append(f"--- Sub-agent: {kind.value} ({result.status}) ---\nTask: {task}\nResult:\n{body}")

        content = "\n\n".join(parts)
        if rejections:
            content += f"\n\nNote: {len(rejections)} sub-task(s) skipped: " + "; ".join(rejections)
        if all_ok:
            return ToolOutcome(success=True, content=content)
        return ToolOutcome(success=False, content=content, error="one or more sub-agents failed")

    def _count(self, result: "WorkerResult") -> None:
        self.tokens_in += result.tokens_in
        self.tokens_out += result.tokens_out
