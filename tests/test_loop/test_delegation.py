import asyncio
import json

import pytest

from taskloom.cancellation import CancellationToken
from taskloom.config import Config, get_config, set_config
from taskloom.delegation import DELEGATE_TOOL, SUBAGENTS_TOOL, Delegator
from taskloom.events import CollectingEventSink, EventType
from taskloom.exceptions import TaskCancelledError
from taskloom.llm import LLMProvider, LLMResponse
from taskloom.llm.retry import RetryPolicy
from taskloom.permissions import WorkerKind
from taskloom.persistence import MemoryPersistenceSink
from taskloom.protocol import ToolInvocation
from taskloom.tool_loop import LoopOutcome
from taskloom.tools.registry import Tool, ToolOutcome, ToolRegistry
from taskloom.worker import Worker, WorkerContext, WorkerResult

DELEGATE_RESEARCH = (
    "I will hand this off.\n"
    "<delegate_to_agent>\n<agent>researcher</agent>\n<task>Find the release date</task>\n</delegate_to_agent>"
)


class ScriptedProvider(LLMProvider):
    model = "scripted"
    context_window = 32000

    def __init__(self, replies, on_call=None):
        self.replies = list(replies)
        self.on_call = on_call
        self.calls: list[list] = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None, abort_event=None):
        self.calls.append(list(messages))
        if self.on_call is not None:
            self.on_call(len(self.calls))
        reply = self.replies.pop(0) if self.replies else "I am out of ideas."
        return LLMResponse(content=reply, model=self.model, usage={"prompt_tokens": 10, "completion_tokens": 5})

    async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None, abort_event=None):
        response = await self.complete(messages, tools, temperature, max_tokens, abort_event)
        yield response.content

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a file"
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }

    async def execute(self, **kwargs):
        return ToolOutcome(success=True, content=f"contents of {kwargs['path']}")


class FakeDelegate:
    """Stands in for a sub-worker; tracks how many run at once."""

    def __init__(self, result: WorkerResult | None = None, error: BaseException | None = None):
        self.result = result
        self.error = error
        self.calls: list[tuple[WorkerKind, str]] = []
        self.active = 0
        self.peak = 0

    async def __call__(self, worker_kind: WorkerKind, task: str) -> WorkerResult:
        self.calls.append((worker_kind, task))
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0)
        self.active -= 1
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return WorkerResult(
            status="success",
            output=f"{worker_kind.value} did {task}",
            confidence=0.9,
            tokens_in=10,
            tokens_out=4,
        )


@pytest.fixture(autouse=True)
def default_config():
    old_cfg = get_config()
    set_config(Config())
    yield
    set_config(old_cfg)


def _delegate_call(agent: str | None = "researcher", task: str | None = "Find the release date") -> ToolInvocation:
    args = {}
    if agent is not None:
        args["agent"] = agent
    if task is not None:
        args["task"] = task
    return ToolInvocation(DELEGATE_TOOL, args)


def _worker(provider, kind, **kwargs) -> Worker:
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=1))
    kwargs.setdefault("loop_options", {"streaming": False})
    return Worker(provider, worker_kind=kind, **kwargs)


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ReadFileTool())
    return registry


def test_delegation_tools_depend_on_kind_and_depth():
    delegate = FakeDelegate()

    assert not Delegator(WorkerKind.CRITIC, 0, delegate).enabled
    assert Delegator(WorkerKind.CRITIC, 0, delegate).tool_specs() == []
    assert not Delegator(WorkerKind.CODER, 2, delegate).enabled

    coder = Delegator("coder", 1, delegate)
    specs = coder.tool_specs()

    assert coder.enabled
    assert [spec.key for spec in specs] == [DELEGATE_TOOL, SUBAGENTS_TOOL]
    assert specs[0].input_schema["properties"]["agent"]["enum"] == ["researcher", "reviewer"]
    assert "Run up to 5 independent sub-tasks" in specs[1].description
    assert Delegator.handles("local::delegate_to_agent")
    assert not Delegator.handles("read_file")


@pytest.mark.asyncio
async def test_single_delegation_returns_the_sub_worker_output():
    delegate = FakeDelegate()
    delegator = Delegator(WorkerKind.EXECUTOR, 0, delegate)

    outcome = await delegator.execute(_delegate_call())

    assert outcome.success
    assert outcome.content == "researcher did Find the release date"
    assert delegate.calls == [(WorkerKind.RESEARCHER, "Find the release date")]
    assert delegator.take_usage() == (10, 4)
    assert delegator.take_usage() == (0, 0)


@pytest.mark.asyncio
async def test_rejected_delegations_never_reach_a_sub_worker():
    delegate = FakeDelegate()
    coder = Delegator(WorkerKind.CODER, 0, delegate)

    denied = await coder.execute(_delegate_call(agent="executor"))
    itself = await coder.execute(_delegate_call(agent="coder"))
    missing = await coder.execute(_delegate_call(task=None))
    too_deep = await Delegator(WorkerKind.CODER, 2, delegate).execute(_delegate_call())

    assert denied.error.startswith("DELEGATION DENIED:")
    assert "Allowed targets: researcher, reviewer" in denied.error
    assert "cannot delegate to itself" in itself.error
    assert missing.error == "INVALID ARGS: requires agent and task parameters"
    assert too_deep.error == "DELEGATION DEPTH EXCEEDED: complete the task yourself"
    assert delegate.calls == []


@pytest.mark.asyncio
async def test_failed_or_raising_sub_workers_become_failed_outcomes():
    failed = FakeDelegate(result=WorkerResult(status="failed", output="", confidence=0.1, error="timed out"))
    raising = FakeDelegate(error=RuntimeError("boom"))

    outcome = await Delegator(WorkerKind.EXECUTOR, 0, failed).execute(_delegate_call())
    crashed = await Delegator(WorkerKind.EXECUTOR, 0, raising).execute(_delegate_call())

    assert not outcome.success
    assert outcome.text == "Error: DELEGATION FAILED: timed out"
    assert crashed.error == "DELEGATION FAILED: boom"


@pytest.mark.asyncio
async def test_cancellation_inside_a_sub_worker_propagates():
    delegator = Delegator(WorkerKind.EXECUTOR, 0, FakeDelegate(error=TaskCancelledError("stop")))

    with pytest.raises(TaskCancelledError):
        await delegator.execute(_delegate_call())


@pytest.mark.asyncio
async def test_parallel_delegation_runs_accepted_tasks_together():
    delegate = FakeDelegate()
    delegator = Delegator(WorkerKind.EXECUTOR, 0, delegate)
    tasks = [
        {"agent": "researcher", "task": "a"},
        {"agent": "coder", "task": "b"},
        {"agent": "executor", "task": "c"},
        {"agent": "reviewer", "task": "d"},
        {"agent": "writer", "task": "e"},
        {"agent": "analyst", "task": "f"},
    ]

    outcome = await delegator.execute(ToolInvocation(SUBAGENTS_TOOL, {"tasks": json.dumps(tasks)}))

    assert outcome.success
    assert [task for _, task in delegate.calls] == ["a", "b", "d", "e"]
    assert delegate.peak == 4
    assert "--- Sub-agent: researcher (success) ---\nTask: a\nResult:\nresearcher did a" in outcome.content
    assert "Note: 2 sub-task(s) skipped" in outcome.content
    assert "cannot delegate to itself" in outcome.content
    assert "1 task(s) over the limit of 5" in outcome.content
    assert delegator.take_usage() == (40, 16)


@pytest.mark.asyncio
async def test_parallel_delegation_reports_bad_input_and_failures():
    delegate = FakeDelegate(result=WorkerResult(status="failed", output="", confidence=0.1, error="timed out"))
    coder = Delegator(WorkerKind.CODER, 0, delegate)

    not_json = await coder.execute(ToolInvocation(SUBAGENTS_TOOL, {"tasks": "first do a, then b"}))
    all_denied = await coder.execute(ToolInvocation(SUBAGENTS_TOOL, {"tasks": [{"agent": "coder", "task": "x"}]}))
    failed = await coder.execute(ToolInvocation(SUBAGENTS_TOOL, {"tasks": [{"agent": "reviewer", "task": "x"}]}))

    assert not_json.error.startswith("INVALID ARGS: tasks must be a JSON array")
    assert all_denied.error.startswith("ALL DELEGATIONS DENIED:\n")
    assert not failed.success
    assert failed.error == "one or more sub-agents failed"
    assert "--- Sub-agent: reviewer (failed) ---" in failed.content
    assert "Error: timed out" in failed.content


@pytest.mark.asyncio
async def test_worker_feeds_the_sub_worker_answer_back_as_the_tool_result():
    provider = ScriptedProvider([
        DELEGATE_RESEARCH,
        "<attempt_completion><result>March 3.</result></attempt_completion>",
        "<attempt_completion><result>The release is on March 3.</result></attempt_completion>",
    ])
    events = CollectingEventSink()
    sink = MemoryPersistenceSink()
    worker = _worker(provider, WorkerKind.EXECUTOR, tools=_registry(), events=events, persistence=sink)

    result = await worker.run("When is the release?", WorkerContext(task_id="t1"))

    assert result.status == "success"
    assert result.output == "The release is on March 3."
    assert result.confidence == 0.9
    assert (result.tokens_in, result.tokens_out) == (30, 15)

    child_prompt = provider.calls[1][-1].content
    assert child_prompt.startswith("Find the release date")
    assert "Overall goal:\nWhen is the release?" in child_prompt
    parent_messages = [message.content for message in provider.calls[2]]
    assert '<tool_result tool="delegate_to_agent" status="success">\nMarch 3.\n</tool_result>' in parent_messages

    (delegation,) = events.of_type(EventType.DELEGATION)
    assert delegation.task_id == "t1"
    assert delegation.payload["tool"] == DELEGATE_TOOL
    assert [record.task_id for record in sink.records] == ["t1/researcher-1", "t1"]
    assert sink.records[0].worker_kind == "researcher"


@pytest.mark.asyncio
async def test_sub_worker_at_the_depth_limit_cannot_delegate_further():
    provider = ScriptedProvider([
        "<delegate_to_agent>\n<agent>reviewer</agent>\n<task>Review the patch</task>\n</delegate_to_agent>",
        "<attempt_completion><result>Looks fine.</result></attempt_completion>",
        "<attempt_completion><result>Reviewed.</result></attempt_completion>",
    ])
    worker = _worker(provider, WorkerKind.CODER, tools=_registry())

    result = await worker.run("Fix the bug", WorkerContext(task_id="t1", delegation_depth=1))

    assert result.output == "Reviewed."
    assert DELEGATE_TOOL in provider.calls[0][0].content
    assert all(DELEGATE_TOOL not in message.content for message in provider.calls[1])


@pytest.mark.asyncio
async def test_cancelling_the_shared_token_stops_parent_and_sub_worker():
    token = CancellationToken()

    def cancel_during_sub_worker(call: int) -> None:
        if call == 2:
            token.cancel("user stop")

    provider = ScriptedProvider(
        [DELEGATE_RESEARCH, "<attempt_completion><result>March 3.</result></attempt_completion>"],
        on_call=cancel_during_sub_worker,
    )
    worker = _worker(provider, WorkerKind.EXECUTOR, tools=_registry())

    result = await worker.run("When is the release?", WorkerContext(task_id="t1", cancellation=token))

    assert result.outcome == LoopOutcome.PARTIAL_CANCELLED
    assert result.status == "failed"
    assert len(provider.calls) == 2
