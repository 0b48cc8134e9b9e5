import asyncio

import pytest

from taskloom.config import Config, get_config, set_config
from taskloom.events import CollectingEventSink, EventType
from taskloom.exceptions import DependencyDeadlockError, PlanValidationError
from taskloom.llm import LLMProvider, LLMResponse
from taskloom.scheduler import TaskScheduler, synthesizer_from_provider
from taskloom.task_graph import FAILED, TaskPlan
from taskloom.tool_loop import LoopOutcome
from taskloom.worker import WorkerResult


def ok(output: str, confidence: float = 0.8) -> WorkerResult:
    return WorkerResult(status="success", output=output, confidence=confidence, tokens_in=10, tokens_out=5)


def failed(error: str) -> WorkerResult:
    return WorkerResult(status="failed", output="", confidence=0.0, error=error, outcome=LoopOutcome.FAILED)


class ScriptedWorkers:
    """Worker factory whose runners answer from per-sub-task scripts."""

    def __init__(self, scripts):
        self.scripts = scripts
        self.calls: list[tuple[str, str, object]] = []
        self.kinds: list[str] = []

    def __call__(self, worker_kind):
        self.kinds.append(worker_kind.value)
        return self

    async def run(self, task, context):
        sub_id = context.task_id.rsplit(":", 1)[-1]
        self.calls.append((sub_id, task, context))
        attempt = sum(1 for call in self.calls if call[0] == sub_id)
        script = self.scripts[sub_id]
        if callable(script):
            result = script(attempt, context)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return script

    def calls_for(self, sub_id):
        return [call for call in self.calls if call[0] == sub_id]


def _plan(*sub_tasks, task_id="t-1", task="Ship it") -> TaskPlan:
    return TaskPlan.from_dict({"task_id": task_id, "task": task, "sub_tasks": list(sub_tasks)})


@pytest.fixture(autouse=True)
def default_config():
    old_cfg = get_config()
    set_config(Config())
    yield
    set_config(old_cfg)


@pytest.mark.asyncio
async def test_retried_sub_task_gates_its_dependent_until_it_succeeds():
    workers = ScriptedWorkers({
        "A": lambda attempt, ctx: ok("A done") if attempt == 3 else failed(f"boom {attempt}"),
        "B": ok("B done"),
        "C": ok("C done"),
    })
    events = CollectingEventSink()
    plan = _plan(
        {"id": "A", "description": "Build", "max_attempts": 3},
        {"id": "B", "description": "Lint"},
        {"id": "C", "description": "Release", "dependencies": ["A", "B"]},
    )

    result = await TaskScheduler(workers, events=events).execute(plan)

    rounds = [e.payload["sub_tasks"] for e in events.of_type(EventType.ROUND_STARTED)]
    assert rounds == [["A", "B"], ["A"], ["A"], ["C"]]
    assert result.rounds == 4
    assert result.status == "success"
    assert plan.get("A").attempts == 2
    assert len(events.of_type(EventType.SUBTASK_RETRYING)) == 2

    third_attempt_task = workers.calls_for("A")[2][1]
    assert third_attempt_task.startswith("Build\n\nPrevious attempt 2 failed: boom 2")

    (_, _, c_context) = workers.calls_for("C")[0]
    assert set(c_context.sibling_results) == {"A", "B"}
    assert c_context.parent_task == "Ship it"
    assert c_context.task_id == "t-1:C"


@pytest.mark.asyncio
async def test_exhausted_failure_still_runs_dependents():
    workers = ScriptedWorkers({"A": failed("always"), "B": ok("B done")})
    plan = _plan(
        {"id": "A", "description": "Flaky", "max_attempts": 2},
        {"id": "B", "description": "After", "depends_on": ["A"]},
    )

    result = await TaskScheduler(workers).execute(plan)

    assert plan.get("A").status == FAILED
    assert plan.get("A").attempts == 2
    assert len(workers.calls_for("B")) == 1
    assert result.status == "partial"
    assert result.results["A"].error == "always"


@pytest.mark.asyncio
async def test_cycle_raises_dependency_deadlock_after_runnable_work():
    workers = ScriptedWorkers({"A": ok("a"), "B": ok("b"), "C": ok("c")})
    events = CollectingEventSink()
    plan = _plan(
        {"id": "A", "description": "a", "dependencies": ["B"]},
        {"id": "B", "description": "b", "dependencies": ["A"]},
        {"id": "C", "description": "c"},
    )

    with pytest.raises(DependencyDeadlockError) as excinfo:
        await TaskScheduler(workers, events=events).execute(plan)

    assert excinfo.value.remaining == ["A", "B"]
    assert [call[0] for call in workers.calls] == ["C"]
    assert events.of_type(EventType.ERROR)


@pytest.mark.asyncio
async def test_unknown_dependency_is_rejected_before_running():
    workers = ScriptedWorkers({"A": ok("a")})
    plan = _plan({"id": "A", "description": "a", "dependencies": ["ghost"]})

    with pytest.raises(PlanValidationError):
        await TaskScheduler(workers).execute(plan)
    assert workers.calls == []


@pytest.mark.asyncio
async def test_cancel_abandons_running_and_pending_sub_tasks():
    started = asyncio.Event()

    async def wait_for_cancel(attempt, context):
        started.set()
        reason = await context.cancellation.wait()
        return WorkerResult(
            status="failed",
            output="",
            confidence=0.1,
            error=f"cancelled: {reason}",
            outcome=LoopOutcome.PARTIAL_CANCELLED,
        )

    workers = ScriptedWorkers({"A": wait_for_cancel, "B": ok("b")})
    scheduler = TaskScheduler(workers)
    plan = _plan(
        {"id": "A", "description": "slow"},
        {"id": "B", "description": "after", "dependencies": ["A"]},
    )

    handle = scheduler.submit(plan)
    await asyncio.wait_for(started.wait(), timeout=1.0)
    assert scheduler.handle("t-1") is handle
    assert scheduler.cancel("t-1", "stop") is True
    result = await asyncio.wait_for(handle.result(), timeout=1.0)
    await asyncio.sleep(0)

    assert result.cancelled is True
    assert result.status == "failed"
    assert result.error == "cancelled: stop"
    assert plan.get("A").attempts == 0
    assert plan.get("B").status == FAILED
    assert workers.calls_for("B") == []
    assert scheduler.handle("t-1") is None
    assert scheduler.cancel("t-1") is False


@pytest.mark.asyncio
async def test_worker_exception_becomes_failed_attempt():
    def explode(attempt, context):
        if attempt == 1:
            raise RuntimeError("worker crashed")
        return ok("recovered")

    workers = ScriptedWorkers({"A": explode})

    result = await TaskScheduler(workers).execute(_plan({"id": "A", "description": "a"}))

    assert result.status == "success"
    assert result.output == "recovered"
    assert "worker crashed" in workers.calls_for("A")[1][1]


@pytest.mark.asyncio
async def test_single_sub_task_output_is_returned_as_is():
    workers = ScriptedWorkers({"A": ok("only answer", confidence=0.9)})

    result = await TaskScheduler(workers, synthesizer=None).execute(_plan({"id": "A", "description": "a"}))

    assert result.output == "only answer"
    assert result.confidence == 0.9
    assert (result.tokens_in, result.tokens_out) == (10, 5)


@pytest.mark.asyncio
async def test_synthesizer_merges_multiple_outputs():
    seen = {}

    async def synthesize(plan, results):
        seen.update(results)
        return "merged answer"

    workers = ScriptedWorkers({"A": ok("a", 0.6), "B": ok("b", 1.0)})
    plan = _plan({"id": "A", "description": "a"}, {"id": "B", "description": "b"})

    result = await TaskScheduler(workers, synthesizer=synthesize).execute(plan)

    assert result.output == "merged answer"
    assert result.confidence == pytest.approx(0.8)
    assert set(seen) == {"A", "B"}


@pytest.mark.asyncio
async def test_failed_synthesis_falls_back_to_formatted_steps():
    async def synthesize(plan, results):
        raise RuntimeError("model down")

    workers = ScriptedWorkers({"A": ok("alpha"), "B": failed("nope")})
    plan = _plan(
        {"id": "A", "description": "First step"},
        {"id": "B", "description": "Second step", "max_attempts": 1},
    )

    result = await TaskScheduler(workers, synthesizer=synthesize).execute(plan)

    assert result.output.startswith("## Step 1: First step\nStatus: success\nalpha")
    assert "## Step 2: Second step\nStatus: failed\nError: nope" in result.output
    assert result.status == "partial"


@pytest.mark.asyncio
async def test_max_parallel_limits_concurrent_workers():
    active = 0
    peak = 0

    async def tracked(attempt, context):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return ok("x")

    workers = ScriptedWorkers({sid: tracked for sid in "ABCD"})
    plan = _plan(*({"id": sid, "description": sid} for sid in "ABCD"))

    result = await TaskScheduler(workers, max_parallel=2).execute(plan)

    assert result.rounds == 1
    assert peak == 2


@pytest.mark.asyncio
async def test_worker_factory_receives_each_sub_task_kind():
    workers = ScriptedWorkers({"A": ok("a"), "B": ok("b")})
    plan = _plan(
        {"id": "A", "description": "a", "worker_kind": "researcher"},
        {"id": "B", "description": "b", "worker_kind": "writer", "dependencies": ["A"]},
    )

    await TaskScheduler(workers).execute(plan)

    assert workers.kinds == ["researcher", "writer"]


class SynthProvider(LLMProvider):
    model = "synth"

    def __init__(self):
        self.prompts = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None, abort_event=None):
        self.prompts.append(messages[-1].content)
        return LLMResponse(content="  combined  ")

    async def complete_streaming(self, messages, tools=None, temperature=None, max_tokens=None, abort_event=None):
        yield "combined"

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


@pytest.mark.asyncio
async def test_provider_synthesizer_prompts_with_request_and_steps():
    provider = SynthProvider()
    plan = _plan({"id": "A", "description": "Find"}, {"id": "B", "description": "Write"}, task="Make a report")

    text = await synthesizer_from_provider(provider)(plan, {"A": ok("facts"), "B": ok("report")})

    assert text == "combined"
    assert "Original request:\nMake a report" in provider.prompts[0]
    assert "## Step 2: Write" in provider.prompts[0]
