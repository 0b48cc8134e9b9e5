"""Single choke point between a tool loop and the tool provider.

Every invocation passes, in order: permission check, ignore patterns,
read deduplication, approval, timed dispatch and bookkeeping.  Each stage
that refuses a call answers with a failed ``ToolOutcome``; nothing here
raises for a tool problem.
"""

from __future__ import annotations

import asyncio
import fnmatch
import time
from pathlib import Path
from typing import Any

from taskloom.cancellation import CancellationToken
from taskloom.config import get_config
from taskloom.events import AgentEvent, EventSink, EventType, emit_safely, one_line
from taskloom.exceptions import TaskCancelledError
from taskloom.logging import get_logger
from taskloom.permissions import (
    EDIT_TOOLS,
    FULL_WRITE_TOOLS,
    READ_TOOLS,
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    PermissionPolicy,
    WorkerKind,
    classify_tool,
)
from taskloom.protocol.base import ToolInvocation
from taskloom.repetition import MistakeCounters, build_edit_fallback_message
from taskloom.tools.file_cache import FileContentCache, slice_lines
from taskloom.tools.registry import ToolOutcome, ToolProvider

log = get_logger(__name__)

PATH_ARGUMENTS = ("path", "file_path", "source", "destination", "directory")
REMOVAL_TOOLS = frozenset({"file_delete", "file_move"})


def load_ignore_patterns(working_directory: Path | str | None, ignore_file: str | None = None) -> list[str]:
    """Configured patterns plus the non-comment lines of the ignore file."""
    cfg = get_config().tools
    patterns = [p for p in cfg.ignore_patterns if p.strip()]
    name = ignore_file if ignore_file is not None else cfg.ignore_file
    if not name:
        return patterns
    candidate = Path(name)
    if not candidate.is_absolute() and working_directory is not None:
        candidate = Path(working_directory) / candidate
    try:
        lines = candidate.read_text(encoding="utf-8").splitlines()
    except OSError:
        return patterns
    for line in lines:
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            patterns.append(stripped)
    return patterns


def matches_ignore(path: str, patterns: list[str]) -> str | None:
    """Return the first pattern matching path, if any."""
    normalized = str(path or "").strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    if not normalized:
        return None
    name = normalized.rsplit("/", 1)[-1]
    parts = normalized.split("/")
    for pattern in patterns:
        pat = pattern.strip().replace("\\", "/")
        if pat.endswith("/"):
            directory = pat.rstrip("/")
            if any(fnmatch.fnmatch(part, directory) for part in parts[:-1]) or normalized.startswith(directory + "/"):
                return pattern
            continue
        if fnmatch.fnmatch(normalized, pat) or fnmatch.fnmatch(name, pat):
            return pattern
    return None


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception):
        pass


def invocation_path(arguments: dict[str, Any]) -> str:
    for key in PATH_ARGUMENTS:
        value = arguments.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class ToolExecutionGateway:
    """Runs tool invocations for one loop on behalf of one worker."""

    def __init__(
        self,
        provider: ToolProvider,
        worker_kind: WorkerKind | str = WorkerKind.EXECUTOR,
        task_id: str = "",
        permissions: PermissionPolicy | None = None,
        approval: ApprovalPolicy | None = None,
        file_cache: FileContentCache | None = None,
        mistakes: MistakeCounters | None = None,
        events: EventSink | None = None,
        cancellation: CancellationToken | None = None,
        ignore_patterns: list[str] | None = None,
        working_directory: Path | str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.provider = provider
        self.worker_kind = WorkerKind.parse(worker_kind)
        self.task_id = task_id
        self.permissions = permissions or PermissionPolicy()
        self.approval = approval or ApprovalPolicy()
        self.file_cache = file_cache if file_cache is not None else FileContentCache(working_directory)
        self.mistakes = mistakes if mistakes is not None else MistakeCounters()
        self.events = events
        self.cancellation = cancellation
        self.ignore_patterns = (
            list(ignore_patterns)
            if ignore_patterns is not None
            else load_ignore_patterns(working_directory)
        )
        self.timeout_seconds = float(timeout_seconds or get_config().tools.timeout_seconds)
        self._feedback: list[str] = []

    def drain_feedback(self) -> list[str]:
        """Approval feedback collected since the last call, oldest first."""
        feedback, self._feedback = self._feedback, []
        return feedback

    async def execute(self, invocation: ToolInvocation, step: int = 0) -> ToolOutcome:
        started = time.monotonic()
        outcome = await self._run(invocation, step)
        if not outcome.latency:
            outcome = outcome.model_copy(update={"latency": time.monotonic() - started})
        emit_safely(
            self.events,
            AgentEvent(
                EventType.TOOL_CALLED,
                self.task_id,
                {
                    "tool": invocation.tool,
                    "success": outcome.success,
                    "duration": round(outcome.latency, 3),
                    "summary": one_line(outcome.text),
                    "step": step,
                    "origin": invocation.origin.value,
                },
            ),
        )
        return outcome

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, invocation: ToolInvocation, step: int) -> ToolOutcome:
        tool = invocation.tool
        name = invocation.base_name
        args = dict(invocation.arguments)
        path = invocation_path(args)

        decision = self.permissions.check(self.worker_kind, tool)
        if not decision.allowed:
            self.mistakes.record_mistake()
            log.info("Tool call denied", tool=tool, worker=self.worker_kind.value, reason=decision.reason)
            return ToolOutcome(success=False, content=f"PERMISSION DENIED: {decision.reason}", error=decision.reason)

        if path:
            pattern = matches_ignore(path, self.ignore_patterns)
            if pattern is not None:
                self.mistakes.record_mistake()
                reason = f'Access to "{path}" is blocked by ignore pattern "{pattern}"'
                log.info("Tool call blocked by ignore pattern", tool=tool, path=path, pattern=pattern)
                return ToolOutcome(success=False, content=f"BLOCKED: {reason}", error=reason)

        if name in READ_TOOLS and path:
            cached = self._serve_cached_read(path, args, step)
            if cached is not None:
                return cached

        if self.approval.requires_approval(tool, args):
            approval = await self._ask_approval(invocation, path)
            if not approval.approved:
                message = "Rejected by user."
                if approval.feedback:
                    message += f" Feedback: {approval.feedback}"
                    self._feedback.append(approval.feedback)
                elif approval.reason:
                    message += f" ({approval.reason})"
                return ToolOutcome(success=False, content=message, error="Rejected by user")

        outcome = await self._dispatch(tool, args)
        return self._bookkeep(name, path, args, outcome, step)

    def _serve_cached_read(self, path: str, args: dict[str, Any], step: int) -> ToolOutcome | None:
        entry = self.file_cache.get(path)
        if entry is None or entry.truncated:
            return None
        if entry.path in self.file_cache.stale_paths():
            self.file_cache.invalidate(entry.path)
            return None
        self.file_cache.record_hit(path, step)
        start, end = args.get("start_line"), args.get("end_line")
        if start is not None or end is not None:
            content = slice_lines(entry.content, start, end)
        else:
            content = entry.content
        log.debug("Read served from cache", path=entry.path, step=step)
        return ToolOutcome(success=True, content=content)

    async def _ask_approval(self, invocation: ToolInvocation, path: str) -> ApprovalDecision:
        summary = f"{invocation.base_name} {path}".strip() if path else invocation.base_name
        request = ApprovalRequest(
            task_id=self.task_id,
            worker_kind=self.worker_kind.value,
            tool=invocation.tool,
            args=dict(invocation.arguments),
            summary=summary,
            safety=classify_tool(invocation.tool),
        )
        try:
            return await self.approval.request_approval(request)
        except Exception as e:
            log.warning("Approval callback failed", tool=invocation.tool, error=str(e))
            return ApprovalDecision(approved=False, reason=f"approval failed: {e}")

    async def _dispatch(self, tool: str, args: dict[str, Any]) -> ToolOutcome:
        signal = self.cancellation.signal if self.cancellation is not None else None
        if signal is not None and signal.is_set():
            return ToolOutcome(success=False, error="Execution aborted")

        call_task = asyncio.create_task(self.provider.call_tool(tool, args, abort_event=signal))
        abort_task = asyncio.create_task(signal.wait()) if signal is not None else None
        waiters = {call_task} if abort_task is None else {call_task, abort_task}
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
            if call_task in done:
                outcome = call_task.result()
                if not isinstance(outcome, ToolOutcome):
                    return ToolOutcome(success=False, error="Tool returned invalid result payload")
                return outcome
            if abort_task is not None and abort_task in done:
                return ToolOutcome(success=False, error="Execution aborted")
            return ToolOutcome(success=False, error=f"Execution timed out after {self.timeout_seconds:g}s")
        except TaskCancelledError:
            return ToolOutcome(success=False, error="Execution aborted")
        except Exception as e:
            log.error("Tool dispatch failed", tool=tool, error=str(e))
            return ToolOutcome(success=False, error=str(e))
        finally:
            for task in (call_task, abort_task):
                await _cancel_task(task)

    def _bookkeep(
        self,
        name: str,
        path: str,
        args: dict[str, Any],
        outcome: ToolOutcome,
        step: int,
    ) -> ToolOutcome:
        if not path:
            return outcome

        if outcome.success:
            if name in READ_TOOLS:
                if args.get("start_line") is None and args.get("end_line") is None:
                    self.file_cache.record_read(path, outcome.content, step)
            elif name in FULL_WRITE_TOOLS:
                content = args.get("content")
                self.file_cache.record_edit(path, step, content if isinstance(content, str) else None)
                self.mistakes.reset_edit_failures(path)
            elif name in EDIT_TOOLS:
                self.file_cache.record_edit(path, step)
                self.mistakes.reset_edit_failures(path)
            elif name in REMOVAL_TOOLS:
                self.file_cache.invalidate(path)
                destination = args.get("destination")
                if isinstance(destination, str):
                    self.file_cache.invalidate(destination)
            return outcome

        if name in EDIT_TOOLS:
            count = self.mistakes.record_edit_failure(path, kind="diff")
            entry = self.file_cache.get(path)
            guidance = build_edit_fallback_message(path, count, entry.content if entry else "")
            log.info("Edit failed", path=path, failures=count)
            return outcome.model_copy(update={"content": f"{outcome.text}\n\n{guidance}"})
        if name in FULL_WRITE_TOOLS:
            self.mistakes.record_edit_failure(path, kind="edit")
        return outcome
