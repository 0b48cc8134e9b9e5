"""The agentic tool loop: ask the model, run its tools, feed results back.

One ``AgenticToolLoop.run`` call owns its conversation, file cache, mistake
counters and repetition detector; nothing is shared between runs.  Every
terminal state is returned as a ``LoopResult``; only programming errors
escape.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from taskloom.cancellation import CancellationToken
from taskloom.condensation import compact_context, condense
from taskloom.config import get_config
from taskloom.conversation import ConversationState
from taskloom.delegation import Delegator
from taskloom.events import AgentEvent, EventSink, EventType, emit_safely, one_line
from taskloom.exceptions import TaskCancelledError
from taskloom.llm import ContentBlock, LLMProvider, LLMResponse, Message, ToolDefinition
from taskloom.llm.retry import CircuitBreaker, RetryPolicy, stream_with_retry, with_retry
from taskloom.logging import get_logger
from taskloom.permissions import (
    EDIT_TOOLS,
    FULL_WRITE_TOOLS,
    READ_TOOLS,
    ApprovalPolicy,
    PermissionPolicy,
    WorkerKind,
    is_read_only,
)
from taskloom.protocol import (
    InvocationOrigin,
    LegacyJsonProtocol,
    ParsedTurn,
    ProseToolExtractor,
    StreamingTagParser,
    StructuredProtocol,
    TagProtocol,
    ToolInvocation,
    parse_text_turn,
)
from taskloom.repetition import (
    MistakeCounters,
    RepetitionAction,
    RepetitionDetector,
    StreamRepetitionWatchdog,
)
from taskloom.tools.file_cache import FileContentCache
from taskloom.tools.gateway import ToolExecutionGateway, invocation_path
from taskloom.tools.registry import ToolOutcome, ToolProvider, ToolSpec

log = get_logger(__name__)

FINAL_SUMMARY_PROMPT = (
    "Stop calling tools now. Summarize what you accomplished, what is left to do "
    "and anything the user should know. Reply with plain text only."
)
GENTLE_REMINDER = (
    "No tool call detected. Use a tool block to make progress, or "
    "<attempt_completion> when the task is done."
)
STRONG_REMINDER = (
    "You have answered {count} times without calling a tool. Respond with exactly one "
    "tool block, or finish with <attempt_completion><result>...</result></attempt_completion>."
)


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_TIMEOUT = "partial_timeout"
    PARTIAL_CANCELLED = "partial_cancelled"
    PARTIAL_LOOP_DETECTED = "partial_loop_detected"
    SINGLE_SHOT = "single_shot"


@dataclass
class LoopResult:
    status: str
    output: str
    confidence: float
    outcome: LoopOutcome
    tokens_in: int = 0
    tokens_out: int = 0
    model: str = ""
    steps: int = 0
    error: str | None = None
    tool_calls: int = 0
    successful_tool_calls: int = 0
    artifacts: list[str] = field(default_factory=list)


@dataclass
class _RunState:
    """Mutable per-run bookkeeping."""

    started: float
    step: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    tool_calls: int = 0
    successful_tool_calls: int = 0
    artifacts: list[str] = field(default_factory=list)
    last_text: str = ""
    system_prompt: str = ""
    streamed: list[str] = field(default_factory=list)

    @property
    def any_success(self) -> bool:
        return self.successful_tool_calls > 0

    @property
    def attempted(self) -> bool:
        return self.tool_calls > 0


class AgenticToolLoop:
    """Drives one worker through a multi-step task."""

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolProvider,
        worker_kind: WorkerKind | str = WorkerKind.EXECUTOR,
        task_id: str = "",
        system_prompt: str = "",
        events: EventSink | None = None,
        cancellation: CancellationToken | None = None,
        permissions: PermissionPolicy | None = None,
        approval: ApprovalPolicy | None = None,
        working_directory: Path | str | None = None,
        timeout_seconds: float | None = None,
        protocol: str | None = None,
        streaming: bool | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_steps: int | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        on_text: Callable[[str], None] | None = None,
        delegator: Delegator | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = get_config()
        self.provider = provider
        self.tools = tools
        self.worker_kind = WorkerKind.parse(worker_kind)
        self.task_id = task_id
        self.system_prompt = system_prompt
        self.events = events
        self.cancellation = cancellation or CancellationToken()
        self.permissions = permissions or PermissionPolicy.from_config()
        self.approval = approval or ApprovalPolicy.from_config()
        self.working_directory = working_directory
        self.timeout_seconds = float(timeout_seconds or self.permissions.timeout_for(self.worker_kind))
        self.protocol = protocol or cfg.loop.protocol
        self.streaming = cfg.loop.streaming if streaming is None else streaming
        self.temperature = cfg.model.temperature if temperature is None else temperature
        self.max_tokens = max_tokens or cfg.model.max_tokens
        self.max_steps = max_steps or cfg.loop.max_steps
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.breaker = breaker or CircuitBreaker.from_config(getattr(provider, "model", "") or "llm")
        self.on_text = on_text
        self.delegator = delegator if delegator is not None and delegator.enabled else None
        self._sleep = sleep
        self._clock = clock

    @property
    def structured(self) -> bool:
        return self.protocol == "structured"

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, task: str) -> LoopResult:
        cfg = get_config()
        state = _RunState(started=self._clock())

        specs = await self._allowed_specs()
        if self.delegator is not None:
            specs.extend(self.delegator.tool_specs())
        tag_protocol = TagProtocol([spec.key for spec in specs])
        structured_protocol = StructuredProtocol()
        legacy = LegacyJsonProtocol()
        prose = ProseToolExtractor()
        definitions = StructuredProtocol.tool_definitions(
            [ToolDefinition(name=s.key, description=s.description, parameters=s.input_schema) for s in specs]
        )
        system_prompt = self._build_system_prompt(specs)
        state.system_prompt = system_prompt

        conversation = ConversationState.for_provider(self.provider, structured=self.structured)
        overhead = self.provider.count_tokens(system_prompt)
        if self.structured:
            overhead += self.provider.count_tokens(
                json.dumps([d.parameters for d in definitions], default=str)
            )
        conversation.reserve_fixed_overhead(overhead, floor=cfg.context.min_budget)
        conversation.add_message("user", task)

        file_cache = FileContentCache(self.working_directory)
        mistakes = MistakeCounters.from_config()
        detector = RepetitionDetector.from_config()
        gateway = ToolExecutionGateway(
            self.tools,
            worker_kind=self.worker_kind,
            task_id=self.task_id,
            permissions=self.permissions,
            approval=self.approval,
            file_cache=file_cache,
            mistakes=mistakes,
            events=self.events,
            cancellation=self.cancellation,
            working_directory=self.working_directory,
        )

        log.info(
            "Tool loop started",
            task_id=self.task_id,
            worker=self.worker_kind.value,
            protocol=self.protocol,
            tools=len(specs),
            budget=conversation.budget,
        )

        for step in range(1, self.max_steps + 1):
            state.step = step

            if self.cancellation.is_cancelled:
                return self._interrupted(state, LoopOutcome.PARTIAL_CANCELLED, f"cancelled: {self.cancellation.reason}")
            if self._clock() - state.started > self.timeout_seconds:
                return self._interrupted(
                    state,
                    LoopOutcome.PARTIAL_TIMEOUT,
                    f"timed out after {self.timeout_seconds:g}s",
                )

            try:
                await self._manage_context(conversation, file_cache, step)
            except TaskCancelledError:
                return self._interrupted(state, LoopOutcome.PARTIAL_CANCELLED, f"cancelled: {self.cancellation.reason}")

            try:
                response = await self._call_model(system_prompt, conversation, definitions, tag_protocol, state)
            except TaskCancelledError:
                partial = "".join(state.streamed)
                if partial.strip():
                    self._record_turn(conversation, LLMResponse(content=partial))
                    state.last_text = partial
                return self._interrupted(state, LoopOutcome.PARTIAL_CANCELLED, f"cancelled: {self.cancellation.reason}")
            except Exception as e:
                log.error("Model call failed", task_id=self.task_id, step=step, error=str(e))
                self._emit(EventType.ERROR, {"step": step, "error": str(e)})
                return self._result(state, "failed", str(e), 0.1, LoopOutcome.FAILED, error=str(e))

            state.tokens_in += response.tokens_in or conversation.token_count
            state.tokens_out += response.tokens_out or self.provider.count_tokens(response.content or "")
            self._record_turn(conversation, response)
            if response.content.strip():
                state.last_text = response.content

            if self.cancellation.is_cancelled:
                return self._interrupted(state, LoopOutcome.PARTIAL_CANCELLED, f"cancelled: {self.cancellation.reason}")

            if self.structured:
                parsed = structured_protocol.parse(response)
                if parsed.is_empty and response.content.strip():
                    parsed = parse_text_turn(response.content, tag_protocol, legacy, prose)
            else:
                parsed = parse_text_turn(response.content, tag_protocol, legacy, prose)

            if parsed.is_empty and not response.content.strip() and not response.blocks:
                mistakes.record_empty_response()
                conversation.add_system_notice("Your last response was empty. Continue with the task.")
                if mistakes.should_abort:
                    return await self._stuck(state, conversation, "too many empty responses")
                self._step_events(state, conversation, 0)
                continue

            if parsed.completion is not None:
                if parsed.invocations:
                    log.info(
                        "Completion signalled alongside tool calls; tool calls ignored",
                        task_id=self.task_id,
                        ignored=len(parsed.invocations),
                    )
                self._step_events(state, conversation, 0)
                return self._completed(state, parsed)

            if parsed.invocations:
                mistakes.reset_no_tool_use()
                if parsed.dropped:
                    conversation.add_system_notice(
                        f"Only the first tool call was executed; {parsed.dropped} more were ignored. "
                        "Use one tool per message unless every call is read-only."
                    )
                stop_reason = await self._run_invocations(
                    parsed, state, conversation, gateway, detector, step
                )
                for feedback in gateway.drain_feedback():
                    conversation.add_message("user", f"User feedback on the rejected action: {feedback}")
                self._step_events(state, conversation, len(parsed.invocations))
                if stop_reason:
                    return await self._stuck(state, conversation, stop_reason)
                if mistakes.should_abort:
                    return await self._stuck(state, conversation, "too many mistakes")
                continue

            count = mistakes.record_no_tool_use()
            if count >= cfg.loop.no_tool_abort:
                log.info("Accepting free-text answer", task_id=self.task_id, turns_without_tools=count)
                status = "success" if state.any_success else "partial"
                return self._result(
                    state,
                    status,
                    state.last_text,
                    0.7 if state.any_success else 0.5,
                    LoopOutcome.COMPLETED,
                )
            if mistakes.past_grace:
                conversation.add_system_notice(STRONG_REMINDER.format(count=count))
            else:
                conversation.add_message("user", GENTLE_REMINDER)
            self._step_events(state, conversation, 0)

        return await self._stuck(state, conversation, f"step limit of {self.max_steps} reached")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _allowed_specs(self) -> list[ToolSpec]:
        specs = await self.tools.list_tools()
        allowed = set(self.permissions.filter_tools(self.worker_kind, [s.key for s in specs]))
        return [spec for spec in specs if spec.key in allowed]

    def _build_system_prompt(self, specs: list[ToolSpec]) -> str:
        parts = [self.system_prompt.strip()] if self.system_prompt.strip() else []
        if not self.structured and specs:
            parts.append("Available tools:")
            parts.extend(f"- {spec.key}: {one_line(spec.description, 200)}" for spec in specs)
            parts.append(
                "Call a tool with a block named after it, one parameter per child tag. "
                "Finish with <attempt_completion><result>...</result></attempt_completion>."
            )
        return "\n".join(parts)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _manage_context(self, conversation: ConversationState, file_cache: FileContentCache, step: int) -> None:
        cfg = get_config().context
        threshold = cfg.structured_proactive_threshold if self.structured else cfg.proactive_threshold
        if conversation.usage_ratio >= threshold:
            freed = await condense(conversation, self.provider, file_cache, abort_event=self.cancellation.signal)
            if freed:
                self._emit(EventType.COMPACTION, {"kind": "condense", "freed_tokens": freed, "step": step})

        if conversation.usage_ratio >= cfg.hard_threshold:
            target = int(conversation.token_count * cfg.compaction_target_ratio)
            result = compact_context(conversation, file_cache, target, step)
            if result.notice:
                conversation.add_system_notice(result.notice)
                self._emit(
                    EventType.COMPACTION,
                    {"kind": "heuristic", "level": result.level, "freed_tokens": result.freed_tokens, "step": step},
                )

        if conversation.token_count > conversation.budget:
            conversation.trim_to_budget()
        elif conversation.is_near_budget():
            log.warning("Context near budget", task_id=self.task_id, step=step, **conversation.usage_summary())

    def _request_messages(self, system_prompt: str, conversation: ConversationState) -> list[Message]:
        messages = conversation.messages
        if system_prompt:
            return [Message(role="system", content=system_prompt), *messages]
        return messages

    async def _call_model(
        self,
        system_prompt: str,
        conversation: ConversationState,
        definitions: list[ToolDefinition],
        tag_protocol: TagProtocol,
        state: _RunState,
    ) -> LLMResponse:
        messages = self._request_messages(system_prompt, conversation)
        state.streamed = []
        signal = self.cancellation.signal
        self._emit(EventType.THINKING_STARTED, {"messages": len(messages)})

        if self.structured or not self.streaming:
            tools = definitions if self.structured else None
            return await with_retry(
                lambda: self.provider.complete(
                    messages,
                    tools=tools,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    abort_event=signal,
                ),
                policy=self.retry_policy,
                label="model call",
                abort_event=signal,
                breaker=self.breaker,
                sleep=self._sleep,
            )

        live = StreamingTagParser(tag_protocol)

        def _on_chunk(chunk: str) -> None:
            state.streamed.append(chunk)
            fed = live.feed(chunk)
            if fed.display_text and self.on_text is not None:
                self.on_text(fed.display_text)

        watchdog = StreamRepetitionWatchdog() if get_config().loop.stream_watchdog else None
        outcome = await stream_with_retry(
            self.provider,
            messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            abort_event=signal,
            policy=self.retry_policy,
            breaker=self.breaker,
            on_chunk=_on_chunk,
            watchdog=watchdog,
            sleep=self._sleep,
        )
        live.finalize()
        if outcome.interrupted:
            log.warning("Using partial streamed turn", task_id=self.task_id, error=outcome.error)
        return LLMResponse(
            content=outcome.text,
            model=getattr(self.provider, "model", ""),
            finish_reason="length" if outcome.repetition_aborted or outcome.interrupted else "stop",
        )

    def _record_turn(self, conversation: ConversationState, response: LLMResponse) -> None:
        for thought in response.thinking:
            self._emit(EventType.THINKING, {"text": one_line(thought, 500)})

        if not self.structured:
            conversation.add_message("assistant", response.content or "")
            return

        blocks = list(response.blocks)
        if not blocks:
            if response.content:
                blocks.append(ContentBlock(type="text", text=response.content))
            for call in response.tool_calls:
                blocks.append(
                    ContentBlock(
                        type="tool_use",
                        tool_call_id=call.id,
                        tool_name=call.name,
                        arguments=tuple(sorted((call.arguments or {}).items())),
                    )
                )
        conversation.add_blocks("assistant", blocks)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _run_invocations(
        self,
        parsed: ParsedTurn,
        state: _RunState,
        conversation: ConversationState,
        gateway: ToolExecutionGateway,
        detector: RepetitionDetector,
        step: int,
    ) -> str | None:
        """Run a turn's invocations; returns a stop reason when the loop is stuck."""
        invocations = parsed.invocations
        batch = len(invocations) > 1 and all(is_read_only(inv.tool) for inv in invocations)

        approved: list[ToolInvocation] = []
        stop_reason: str | None = None
        for index, invocation in enumerate(invocations):
            check = detector.check(invocation.tool, invocation.arguments)
            if check.action == RepetitionAction.STOP:
                log.warning("Loop detected", task_id=self.task_id, tool=invocation.tool, reason=check.reason)
                stop_reason = f"loop detected: {check.reason}"
                if self.structured:
                    for skipped in [*approved, *invocations[index:]]:
                        conversation.add_tool_result(
                            skipped.tool, False, "Not executed: loop detected.", skipped.call_id or None
                        )
                break
            if check.action == RepetitionAction.WARN:
                log.info("Repetition warning", task_id=self.task_id, tool=invocation.tool, reason=check.reason)
                conversation.add_tool_result(
                    invocation.tool,
                    False,
                    f"STUCK DETECTION: {check.reason}. This call was not executed.",
                    invocation.call_id or None,
                )
                conversation.add_system_notice(
                    f"{check.reason}. You may be looping; change approach or finish the task."
                )
                continue

            if batch:
                approved.append(invocation)
                continue

            if self.cancellation.is_cancelled:
                break
            if self.delegator is not None and self.delegator.handles(invocation.tool):
                outcome = await self._delegate(invocation, state, step)
            else:
                outcome = await gateway.execute(invocation, step)
            self._record_outcome(state, conversation, invocation, outcome, self._read_source(gateway, invocation))

        # A stop anywhere in the turn cancels the whole read-only batch.
        if batch and approved and not stop_reason and not self.cancellation.is_cancelled:
            outcomes = await asyncio.gather(*(gateway.execute(inv, step) for inv in approved))
            for invocation, outcome in zip(approved, outcomes):
                self._record_outcome(state, conversation, invocation, outcome, self._read_source(gateway, invocation))

        return stop_reason

    async def _delegate(self, invocation: ToolInvocation, state: _RunState, step: int) -> ToolOutcome:
        self._emit(
            EventType.DELEGATION,
            {"step": step, "tool": invocation.base_name, "arguments": one_line(str(invocation.arguments), 300)},
        )
        started = self._clock()
        outcome = await self.delegator.execute(invocation)
        outcome = outcome.model_copy(update={"latency": self._clock() - started})
        tokens_in, tokens_out = self.delegator.take_usage()
        state.tokens_in += tokens_in
        state.tokens_out += tokens_out
        self._emit(
            EventType.TOOL_CALLED,
            {
                "tool": invocation.tool,
                "success": outcome.success,
                "duration": round(outcome.latency, 3),
                "summary": one_line(outcome.text),
                "step": step,
                "origin": invocation.origin.value,
            },
        )
        return outcome

    @staticmethod
    def _read_source(gateway: ToolExecutionGateway, invocation: ToolInvocation) -> str | None:
        """Cache key of the file a read returned, so compaction can find the turn later."""
        if invocation.base_name not in READ_TOOLS:
            return None
        entry = gateway.file_cache.get(invocation_path(invocation.arguments))
        return entry.path if entry is not None else None

    def _record_outcome(
        self,
        state: _RunState,
        conversation: ConversationState,
        invocation: ToolInvocation,
        outcome: ToolOutcome,
        source: str | None = None,
    ) -> None:
        state.tool_calls += 1
        if outcome.success:
            state.successful_tool_calls += 1
            if invocation.base_name in FULL_WRITE_TOOLS | EDIT_TOOLS:
                path = invocation.arguments.get("path")
                if isinstance(path, str) and path not in state.artifacts:
                    state.artifacts.append(path)
        content = outcome.text
        if invocation.origin == InvocationOrigin.PROSE:
            content = f"[Extracted from your prose output] {content}"
        conversation.add_tool_result(
            invocation.tool, outcome.success, content, invocation.call_id or None, source=source
        )

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _completed(self, state: _RunState, parsed: ParsedTurn) -> LoopResult:
        status = "partial" if state.attempted and not state.any_success else "success"
        if parsed.completion_origin == InvocationOrigin.PROSE:
            confidence = 0.8 if state.any_success else 0.6
        else:
            confidence = 0.9 if state.any_success else 0.7
        return self._result(state, status, parsed.completion or "", confidence, LoopOutcome.COMPLETED)

    def _interrupted(self, state: _RunState, outcome: LoopOutcome, reason: str) -> LoopResult:
        high, low = (0.4, 0.1) if outcome == LoopOutcome.PARTIAL_CANCELLED else (0.5, 0.2)
        status = "partial" if state.any_success else "failed"
        log.info("Tool loop interrupted", task_id=self.task_id, outcome=outcome.value, reason=reason, step=state.step)
        return self._result(
            state,
            status,
            state.last_text or reason,
            high if state.any_success else low,
            outcome,
            error=reason,
        )

    async def _stuck(self, state: _RunState, conversation: ConversationState, reason: str) -> LoopResult:
        """One final tools-disabled request for a summary, then give up."""
        log.warning("Tool loop stopped", task_id=self.task_id, reason=reason, step=state.step)
        conversation.add_system_notice(FINAL_SUMMARY_PROMPT)
        summary = ""
        if not self.cancellation.is_cancelled:
            try:
                response = await with_retry(
                    lambda: self.provider.complete(
                        self._request_messages(state.system_prompt, conversation),
                        tools=None,
                        temperature=self.temperature,
                        max_tokens=self.max_tokens,
                        abort_event=self.cancellation.signal,
                    ),
                    policy=self.retry_policy,
                    label="final summary",
                    abort_event=self.cancellation.signal,
                    breaker=self.breaker,
                    sleep=self._sleep,
                )
                summary = (response.content or "").strip()
                state.tokens_in += response.tokens_in
                state.tokens_out += response.tokens_out
            except Exception as e:
                log.warning("Final summary request failed", task_id=self.task_id, error=str(e))
        status = "partial" if state.any_success else "failed"
        return self._result(
            state,
            status,
            summary or state.last_text or reason,
            0.3,
            LoopOutcome.PARTIAL_LOOP_DETECTED,
            error=reason,
        )

    def _result(
        self,
        state: _RunState,
        status: str,
        output: str,
        confidence: float,
        outcome: LoopOutcome,
        error: str | None = None,
    ) -> LoopResult:
        result = LoopResult(
            status=status,
            output=output,
            confidence=confidence,
            outcome=outcome,
            tokens_in=state.tokens_in,
            tokens_out=state.tokens_out,
            model=getattr(self.provider, "model", ""),
            steps=state.step,
            error=error,
            tool_calls=state.tool_calls,
            successful_tool_calls=state.successful_tool_calls,
            artifacts=list(state.artifacts),
        )
        log.info(
            "Tool loop finished",
            task_id=self.task_id,
            status=status,
            outcome=outcome.value,
            steps=state.step,
            tool_calls=state.tool_calls,
        )
        return result

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        emit_safely(self.events, AgentEvent(event_type, self.task_id, payload))

    def _step_events(self, state: _RunState, conversation: ConversationState, tools_this_step: int) -> None:
        self._emit(
            EventType.STEP_COMPLETED,
            {
                "step": state.step,
                "tools": tools_this_step,
                "tool_calls": state.tool_calls,
                "successful_tool_calls": state.successful_tool_calls,
            },
        )
        self._emit(EventType.CONTEXT_USAGE, conversation.usage_summary())
