"""Round-based DAG execution of task plans.

Each round runs every ready sub-task concurrently and joins on all of them.
Failed attempts are retried with the failure appended to the sub-task
description; exhausted sub-tasks fail but still unblock their dependents.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from taskloom.cancellation import CancellationRegistry, CancellationToken
from taskloom.config import get_config
from taskloom.events import AgentEvent, EventSink, EventType, emit_safely, one_line
from taskloom.exceptions import DependencyDeadlockError
from taskloom.llm import LLMProvider, Message
from taskloom.logging import get_logger
from taskloom.permissions import WorkerKind
from taskloom.task_graph import SubTask, TaskGraph, TaskPlan
from taskloom.tool_loop import LoopOutcome
from taskloom.worker import WorkerContext, WorkerResult

log = get_logger(__name__)

SYNTHESIS_TIMEOUT_SECONDS = 120.0


class SubTaskRunner(Protocol):
    async def run(self, task: str, context: WorkerContext) -> WorkerResult: ...


WorkerFactory = Callable[[WorkerKind], SubTaskRunner]
Synthesizer = Callable[[TaskPlan, dict[str, WorkerResult]], Awaitable[str]]


@dataclass
class PlanResult:
    """Compiled outcome of one plan."""

    plan_id: str
    task_id: str
    status: str  # "success", "partial", "failed"
    output: str
    confidence: float
    results: dict[str, WorkerResult] = field(default_factory=dict)
    rounds: int = 0
    cancelled: bool = False
    error: str | None = None

    @property
    def tokens_in(self) -> int:
        return sum(r.tokens_in for r in self.results.values())

    @property
    def tokens_out(self) -> int:
        return sum(r.tokens_out for r in self.results.values())


class PlanHandle:
    """A plan running in the background."""

    def __init__(self, plan: TaskPlan, task: asyncio.Task[PlanResult], cancellation: CancellationToken):
        self.plan = plan
        self._task = task
        self._cancellation = cancellation

    @property
    def task_id(self) -> str:
        return self.plan.task_id

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self, reason: str = "cancelled by user") -> bool:
        return self._cancellation.cancel(reason)

    async def result(self) -> PlanResult:
        return await self._task


def _format_results(plan: TaskPlan, results: dict[str, WorkerResult]) -> str:
    lines: list[str] = []
    for index, sub in enumerate(plan.sub_tasks, start=1):
        result = results.get(sub.id)
        lines.append(f"## Step {index}: {sub.original_description}")
        if result is None:
            lines.append("(not run)")
        else:
            lines.append(f"Status: {result.status}")
            if result.output:
                lines.append(result.output.strip())
            if result.error:
                lines.append(f"Error: {result.error}")
        lines.append("")
    return "\n".join(lines).strip()


def synthesizer_from_provider(provider: LLMProvider, max_tokens: int = 8000) -> Synthesizer:
    """Synthesizer that asks the model to merge all sub-task outputs."""

    async def _synthesize(plan: TaskPlan, results: dict[str, WorkerResult]) -> str:
        prompt = (
            f"Original request:\n{plan.task_text}\n\n"
            f"Results of the individual steps:\n{_format_results(plan, results)}\n\n"
            "Combine these into one coherent answer to the original request."
        )
        response = await asyncio.wait_for(
            provider.complete(messages=[Message(role="user", content=prompt)], tools=None, max_tokens=max_tokens),
            timeout=SYNTHESIS_TIMEOUT_SECONDS,
        )
        return str(response.content or "").strip()

    return _synthesize


class TaskScheduler:
    """Drives a TaskPlan to completion."""

    def __init__(
        self,
        worker_factory: WorkerFactory,
        events: EventSink | None = None,
        synthesizer: Synthesizer | None = None,
        max_parallel: int | None = None,
        working_directory: Path | str | None = None,
        blackboard: Any = None,
        delegation_depth: int = 0,
        mode: str = "default",
    ):
        self.worker_factory = worker_factory
        self.events = events
        self.synthesizer = synthesizer
        limit = get_config().scheduler.max_parallel if max_parallel is None else max_parallel
        self.max_parallel = max(0, int(limit))
        self.working_directory = working_directory
        self.blackboard = blackboard
        self.delegation_depth = delegation_depth
        self.mode = mode
        self._cancellations = CancellationRegistry()
        self._handles: dict[str, PlanHandle] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, plan: TaskPlan) -> PlanHandle:
        """Start plan in the background and return its handle."""
        token = self._cancellations.create(plan.task_id)
        task = asyncio.create_task(self.execute(plan, cancellation=token))
        handle = PlanHandle(plan, task, token)
        self._handles[plan.task_id] = handle
        task.add_done_callback(lambda _: self._handles.pop(plan.task_id, None))
        return handle

    def handle(self, task_id: str) -> PlanHandle | None:
        return self._handles.get(task_id)

    def cancel(self, task_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel the plan registered under task_id.  Returns False if unknown."""
        return self._cancellations.cancel(task_id, reason)

    async def execute(self, plan: TaskPlan, cancellation: CancellationToken | None = None) -> PlanResult:
        """Run plan to completion.

        Raises:
            PlanValidationError: unknown or duplicate sub-task ids.
            DependencyDeadlockError: sub-tasks remain but none can become ready.
        """
        graph = TaskGraph.from_plan(plan)
        token = cancellation or self._cancellations.create(plan.task_id)
        if plan.task_id not in self._cancellations:
            self._cancellations.register(plan.task_id, token)
        results: dict[str, WorkerResult] = {}
        semaphore = asyncio.Semaphore(self.max_parallel) if self.max_parallel > 0 else None
        rounds = 0

        log.info("Plan started", plan_id=plan.id, task_id=plan.task_id, sub_tasks=graph.task_count)
        try:
            while not graph.is_complete:
                if token.is_cancelled:
                    for tid in graph.remaining:
                        graph.abandon(tid, f"cancelled: {token.reason}")
                    break

                ready = graph.ready()
                if not ready:
                    remaining = graph.remaining
                    log.error("Dependency deadlock", plan_id=plan.id, remaining=remaining)
                    self._emit(plan.task_id, EventType.ERROR, {"error": "dependency deadlock", "remaining": remaining})
                    raise DependencyDeadlockError(remaining)

                rounds += 1
                self._emit(
                    plan.task_id,
                    EventType.ROUND_STARTED,
                    {"round": rounds, "sub_tasks": [sub.id for sub in ready]},
                )
                for sub in ready:
                    graph.mark_running(sub.id)
                    self._emit(
                        plan.task_id,
                        EventType.SUBTASK_STARTED,
                        {"sub_task": sub.id, "worker": sub.worker_kind.value, "attempt": sub.attempts + 1, "round": rounds},
                    )

                snapshot = dict(results)
                outcomes = await asyncio.gather(
                    *(self._run_sub_task(plan, sub, snapshot, token, semaphore) for sub in ready)
                )
                for sub, result in zip(ready, outcomes):
                    self._resolve(plan, graph, sub, result, results, token)
        finally:
            if self._cancellations.get(plan.task_id) is token:
                self._cancellations.remove(plan.task_id)

        output, confidence = await self.compile_results(plan, results)
        status = self._plan_status(plan, results)
        error = f"cancelled: {token.reason}" if token.is_cancelled else None
        log.info(
            "Plan finished",
            plan_id=plan.id,
            status=status,
            rounds=rounds,
            cancelled=token.is_cancelled,
        )
        self._emit(
            plan.task_id,
            EventType.PLAN_COMPLETED,
            {"status": status, "rounds": rounds, "summary": graph.summary(), "cancelled": token.is_cancelled},
        )
        return PlanResult(
            plan_id=plan.id,
            task_id=plan.task_id,
            status=status,
            output=output,
            confidence=confidence,
            results=results,
            rounds=rounds,
            cancelled=token.is_cancelled,
            error=error,
        )

    async def compile_results(self, plan: TaskPlan, results: dict[str, WorkerResult]) -> tuple[str, float]:
        """Merge terminal outputs into one answer and an average confidence."""
        ordered = [results[sub.id] for sub in plan.sub_tasks if sub.id in results]
        if not ordered:
            return "", 0.0
        confidence = sum(r.confidence for r in ordered) / len(ordered)
        if len(plan.sub_tasks) == 1:
            return ordered[0].output, ordered[0].confidence

        if self.synthesizer is not None:
            try:
                synthesized = await self.synthesizer(plan, results)
                if synthesized:
                    return synthesized, confidence
            except asyncio.TimeoutError:
                log.warning("Synthesis timed out", plan_id=plan.id)
            except Exception as e:
                log.warning("Synthesis failed", plan_id=plan.id, error=str(e))
        return _format_results(plan, results), confidence

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_sub_task(
        self,
        plan: TaskPlan,
        sub: SubTask,
        snapshot: dict[str, WorkerResult],
        token: CancellationToken,
        semaphore: asyncio.Semaphore | None,
    ) -> WorkerResult:
        context = WorkerContext(
            task_id=f"{plan.task_id}:{sub.id}",
            plan_id=plan.id,
            parent_task=plan.task_text,
            sibling_results=snapshot,
            blackboard=self.blackboard,
            delegation_depth=self.delegation_depth,
            cancellation=token,
            working_directory=self.working_directory,
            mode=self.mode,
        )
        try:
            worker = self.worker_factory(sub.worker_kind)
            if semaphore is None:
                return await worker.run(sub.description, context)
            async with semaphore:
                return await worker.run(sub.description, context)
        except Exception as e:
            log.error("Sub-task raised", sub_task=sub.id, error=str(e))
            return WorkerResult(status="failed", output="", confidence=0.0, error=str(e), outcome=LoopOutcome.FAILED)

    def _resolve(
        self,
        plan: TaskPlan,
        graph: TaskGraph,
        sub: SubTask,
        result: WorkerResult,
        results: dict[str, WorkerResult],
        token: CancellationToken,
    ) -> None:
        results[sub.id] = result
        if result.ok:
            graph.complete(sub.id, result)
            self._emit(
                plan.task_id,
                EventType.SUBTASK_COMPLETED,
                {"sub_task": sub.id, "status": result.status, "confidence": result.confidence},
            )
            return

        error = result.error or "failed"
        if token.is_cancelled:
            graph.abandon(sub.id, error)
            self._emit(plan.task_id, EventType.SUBTASK_FAILED, {"sub_task": sub.id, "error": one_line(error)})
            return

        if graph.fail(sub.id, error, result):
            log.info("Retrying sub-task", sub_task=sub.id, attempt=sub.attempts, max_attempts=sub.max_attempts)
            self._emit(
                plan.task_id,
                EventType.SUBTASK_RETRYING,
                {"sub_task": sub.id, "attempts": sub.attempts, "error": one_line(error)},
            )
        else:
            log.warning("Sub-task failed", sub_task=sub.id, attempts=sub.attempts, error=error)
            self._emit(
                plan.task_id,
                EventType.SUBTASK_FAILED,
                {"sub_task": sub.id, "attempts": sub.attempts, "error": one_line(error)},
            )

    @staticmethod
    def _plan_status(plan: TaskPlan, results: dict[str, WorkerResult]) -> str:
        finished = [results.get(sub.id) for sub in plan.sub_tasks]
        ok = [r for r in finished if r is not None and r.ok]
        if ok and len(ok) == len(finished) and all(r.status == "success" for r in ok):
            return "success"
        if ok:
            return "partial"
        return "failed"

    def _emit(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        emit_safely(self.events, AgentEvent(event_type, task_id, payload))
