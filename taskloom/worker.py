"""One worker invocation: the tool loop, or a single model call.

Worker kinds whose capability tier grants tools run the agentic tool loop;
the rest get one completion request.  Single-shot answers that fail with a
format-shaped error are retried once with the error appended.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from taskloom.cancellation import CancellationToken
from taskloom.config import get_config
from taskloom.delegation import Delegator, can_delegate_at_depth
from taskloom.events import AgentEvent, EventSink, EventType, emit_safely
from taskloom.exceptions import TaskCancelledError
from taskloom.llm import LLMProvider, LLMResponse, Message, race_abort
from taskloom.llm.retry import CircuitBreaker, RetryPolicy, with_retry
from taskloom.logging import get_logger
from taskloom.permissions import ApprovalPolicy, PermissionPolicy, WorkerKind, delegation_targets
from taskloom.persistence import InvocationRecord, NullPersistenceSink, PersistenceSink
from taskloom.tool_loop import AgenticToolLoop, LoopOutcome, LoopResult
from taskloom.tools.registry import ToolProvider, ToolRegistry

log = get_logger(__name__)

SELF_CORRECTABLE_KEYWORDS = (
    "json", "parse", "unexpected token", "syntax", "invalid", "format", "expected", "missing", "property",
)
TRANSPORT_KEYWORDS = (
    "api key", "auth", "401", "403", "circuit breaker", "rate_limit", "rate limit", "429",
    "timeout", "etimedout", "econnreset",
)
CORRECTED_CONFIDENCE_CAP = 0.6
SIBLING_OUTPUT_CHARS = 2000

OutputParser = Callable[[str], Any]


def is_self_correctable(error: str) -> bool:
    """True for content/format errors that re-prompting can fix."""
    lower = (error or "").lower()
    if any(keyword in lower for keyword in TRANSPORT_KEYWORDS):
        return False
    return any(keyword in lower for keyword in SELF_CORRECTABLE_KEYWORDS)


def assess_confidence(response: LLMResponse) -> float:
    if response.finish_reason == "stop":
        return 0.7
    if response.finish_reason == "length":
        return 0.4
    return 0.5


@dataclass(frozen=True)
class WorkerContext:
    """Read-only view of the plan a worker runs inside."""

    task_id: str
    plan_id: str = ""
    parent_task: str = ""
    sibling_results: Mapping[str, "WorkerResult"] = field(default_factory=dict)
    blackboard: Any = None
    delegation_depth: int = 0
    cancellation: CancellationToken | None = None
    working_directory: Path | str | None = None
    mode: str = "default"

    def __post_init__(self) -> None:
        object.__setattr__(self, "sibling_results", MappingProxyType(dict(self.sibling_results)))


@dataclass(frozen=True)
class WorkerResult:
    status: str  # "success", "partial", "failed"
    output: str
    confidence: float
    tokens_in: int = 0
    tokens_out: int = 0
    model: str = ""
    artifacts: tuple[str, ...] = ()
    error: str | None = None
    duration: float = 0.0
    outcome: LoopOutcome = LoopOutcome.SINGLE_SHOT

    @property
    def ok(self) -> bool:
        return self.status in {"success", "partial"}

    @classmethod
    def from_loop(cls, result: LoopResult, duration: float) -> "WorkerResult":
        return cls(
            status=result.status,
            output=result.output,
            confidence=max(0.0, min(1.0, result.confidence)),
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            model=result.model,
            artifacts=tuple(result.artifacts),
            error=result.error,
            duration=duration,
            outcome=result.outcome,
        )


class Worker:
    """Runs one sub-task for one worker kind."""

    def __init__(
        self,
        provider: LLMProvider,
        worker_kind: WorkerKind | str = WorkerKind.EXECUTOR,
        tools: ToolProvider | None = None,
        system_prompt: str = "",
        events: EventSink | None = None,
        permissions: PermissionPolicy | None = None,
        approval: ApprovalPolicy | None = None,
        persistence: PersistenceSink | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        output_parser: OutputParser | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        loop_options: dict[str, Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = get_config()
        self.provider = provider
        self.worker_kind = WorkerKind.parse(worker_kind)
        self.tools = tools if tools is not None else ToolRegistry()
        self.system_prompt = system_prompt
        self.events = events
        self.permissions = permissions or PermissionPolicy.from_config()
        self.approval = approval or ApprovalPolicy.from_config()
        self.persistence = persistence or NullPersistenceSink()
        self.temperature = cfg.model.temperature if temperature is None else temperature
        self.max_tokens = max_tokens or cfg.model.max_tokens
        self.output_parser = output_parser
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.breaker = breaker
        self.loop_options = dict(loop_options or {})
        self._sleep = sleep
        self._clock = clock

    @property
    def uses_tools(self) -> bool:
        return self.permissions.tool_enabled(self.worker_kind)

    async def run(self, task: str, context: WorkerContext) -> WorkerResult:
        started = self._clock()
        cancellation = context.cancellation or CancellationToken()
        prompt = self.build_prompt(task, context)
        log.info(
            "Worker started",
            task_id=context.task_id,
            worker=self.worker_kind.value,
            tools=self.uses_tools,
            depth=context.delegation_depth,
        )

        if self.uses_tools:
            loop_options = dict(self.loop_options)
            loop_options.setdefault("delegator", self._delegator(task, context, cancellation))
            loop = AgenticToolLoop(
                self.provider,
                self.tools,
                worker_kind=self.worker_kind,
                task_id=context.task_id,
                system_prompt=self.system_prompt,
                events=self.events,
                cancellation=cancellation,
                permissions=self.permissions,
                approval=self.approval,
                working_directory=context.working_directory,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                retry_policy=self.retry_policy,
                breaker=self.breaker,
                sleep=self._sleep,
                clock=self._clock,
                **loop_options,
            )
            loop_result = await loop.run(prompt)
            result = WorkerResult.from_loop(loop_result, self._clock() - started)
        else:
            result = await self._single_shot(prompt, context, cancellation, started)

        await self._record(context, result)
        return result

    def build_prompt(self, task: str, context: WorkerContext) -> str:
        """Task text plus the parent task and finished sibling outputs."""
        parts = [task.strip()]
        if context.parent_task and context.parent_task.strip() != task.strip():
            parts.append(f"Overall goal:\n{context.parent_task.strip()}")
        finished = [(sid, r) for sid, r in context.sibling_results.items() if r.output]
        if finished:
            lines = ["Results from earlier steps:"]
            for sub_id, sibling in finished:
                output = sibling.output
                if len(output) > SIBLING_OUTPUT_CHARS:
                    output = output[:SIBLING_OUTPUT_CHARS] + "\n... (truncated)"
                lines.append(f"[{sub_id}] ({sibling.status})\n{output}")
            parts.append("\n\n".join(lines))
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def spawn(self, worker_kind: WorkerKind) -> "Worker":
        """A worker of another kind sharing this worker's provider and tools."""
        return Worker(
            self.provider,
            worker_kind=worker_kind,
            tools=self.tools,
            events=self.events,
            permissions=self.permissions,
            approval=self.approval,
            persistence=self.persistence,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            retry_policy=self.retry_policy,
            breaker=self.breaker,
            loop_options={k: v for k, v in self.loop_options.items() if k != "delegator"},
            sleep=self._sleep,
            clock=self._clock,
        )

    def _delegator(self, task: str, context: WorkerContext, cancellation: CancellationToken) -> Delegator | None:
        if not delegation_targets(self.worker_kind) or not can_delegate_at_depth(context.delegation_depth):
            return None
        counter = itertools.count(1)

        async def _delegate(worker_kind: WorkerKind, sub_task: str) -> WorkerResult:
            child_context = WorkerContext(
                task_id=f"{context.task_id}/{worker_kind.value}-{next(counter)}",
                plan_id=context.plan_id,
                parent_task=task,
                blackboard=context.blackboard,
                delegation_depth=context.delegation_depth + 1,
                cancellation=cancellation,
                working_directory=context.working_directory,
                mode=context.mode,
            )
            return await self.spawn(worker_kind).run(sub_task, child_context)

        return Delegator(self.worker_kind, context.delegation_depth, _delegate)

    # ------------------------------------------------------------------
    # Single-shot path
    # ------------------------------------------------------------------

    async def _complete(self, prompt: str, temperature: float, cancellation: CancellationToken) -> LLMResponse:
        messages: list[Message] = []
        if self.system_prompt:
            messages.append(Message(role="system", content=self.system_prompt))
        messages.append(Message(role="user", content=prompt))
        signal = cancellation.signal
        return await race_abort(
            with_retry(
                lambda: self.provider.complete(
                    messages,
                    temperature=temperature,
                    max_tokens=self.max_tokens,
                    abort_event=signal,
                ),
                policy=self.retry_policy,
                label=f"{self.worker_kind.value} call",
                abort_event=signal,
                breaker=self.breaker,
                sleep=self._sleep,
            ),
            signal,
        )

    def _check_output(self, response: LLMResponse) -> None:
        if self.output_parser is not None:
            self.output_parser(response.content or "")

    async def _single_shot(
        self,
        prompt: str,
        context: WorkerContext,
        cancellation: CancellationToken,
        started: float,
    ) -> WorkerResult:
        self._emit(context.task_id, EventType.THINKING_STARTED, {"worker": self.worker_kind.value})
        try:
            response = await self._complete(prompt, self.temperature, cancellation)
            self._check_output(response)
            return self._single_result(response, assess_confidence(response), started)
        except TaskCancelledError as e:
            return self._cancelled(e.reason, started)
        except Exception as e:
            error = str(e)

        if is_self_correctable(error):
            log.info("Attempting self-correction", task_id=context.task_id, error=error[:100])
            corrected_prompt = (
                f"{prompt}\n\nIMPORTANT: Your previous attempt failed with this error:\n\"{error}\"\n\n"
                "Fix the issue and try again. Be careful with the output format."
            )
            try:
                response = await self._complete(corrected_prompt, max(0.1, self.temperature - 0.2), cancellation)
                self._check_output(response)
                confidence = min(assess_confidence(response), CORRECTED_CONFIDENCE_CAP)
                return self._single_result(response, confidence, started)
            except TaskCancelledError as e:
                return self._cancelled(e.reason, started)
            except Exception as e:
                log.warning("Self-correction failed", task_id=context.task_id, error=str(e))

        self._emit(context.task_id, EventType.ERROR, {"error": error})
        log.error("Worker failed", task_id=context.task_id, worker=self.worker_kind.value, error=error)
        return WorkerResult(
            status="failed",
            output="",
            confidence=0.0,
            model=getattr(self.provider, "model", ""),
            error=error,
            duration=self._clock() - started,
            outcome=LoopOutcome.FAILED,
        )

    def _single_result(self, response: LLMResponse, confidence: float, started: float) -> WorkerResult:
        return WorkerResult(
            status="success",
            output=response.content or "",
            confidence=confidence,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            model=response.model or getattr(self.provider, "model", ""),
            duration=self._clock() - started,
            outcome=LoopOutcome.SINGLE_SHOT,
        )

    def _cancelled(self, reason: str, started: float) -> WorkerResult:
        return WorkerResult(
            status="failed",
            output="",
            confidence=0.1,
            model=getattr(self.provider, "model", ""),
            error=f"cancelled: {reason}",
            duration=self._clock() - started,
            outcome=LoopOutcome.PARTIAL_CANCELLED,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _record(self, context: WorkerContext, result: WorkerResult) -> None:
        record = InvocationRecord(
            task_id=context.task_id,
            worker_kind=self.worker_kind.value,
            status=result.status,
            confidence=result.confidence,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            model=result.model,
            duration=result.duration,
            error=result.error,
            outcome=result.outcome.value,
        )
        try:
            await self.persistence.record(record)
        except Exception as e:
            log.warning("Failed to persist invocation", task_id=context.task_id, error=str(e))

    def _emit(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        emit_safely(self.events, AgentEvent(event_type, task_id, payload))


def worker_factory(provider: LLMProvider, **worker_options: Any) -> Callable[[WorkerKind], Worker]:
    """Build workers of any kind that share one provider and option set."""

    def _build(worker_kind: WorkerKind) -> Worker:
        return Worker(provider, worker_kind=worker_kind, **worker_options)

    return _build
