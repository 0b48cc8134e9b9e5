import asyncio
import os

import pytest

from taskloom.cancellation import CancellationToken
from taskloom.events import CollectingEventSink, EventType
from taskloom.permissions import ApprovalDecision, ApprovalPolicy, WorkerKind
from taskloom.protocol import ToolInvocation
from taskloom.repetition import MistakeCounters
from taskloom.tools.gateway import ToolExecutionGateway, load_ignore_patterns, matches_ignore
from taskloom.tools.registry import ToolOutcome, ToolProvider


class RecordingProvider(ToolProvider):
    def __init__(self, outcomes: dict[str, ToolOutcome] | None = None, delay: float = 0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls: list[tuple[str, dict]] = []

    async def list_tools(self):
        return []

    async def call_tool(self, key, arguments, abort_event=None):
        self.calls.append((key, dict(arguments)))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcomes.get(key) or ToolOutcome(success=True, content=f"{key} ok")


def _gateway(provider: ToolProvider, **kwargs) -> ToolExecutionGateway:
    kwargs.setdefault("ignore_patterns", [])
    return ToolExecutionGateway(provider, task_id="t1", **kwargs)


@pytest.mark.asyncio
async def test_permission_denied_is_a_failed_result_and_a_mistake():
    provider = RecordingProvider()
    mistakes = MistakeCounters()
    gateway = _gateway(provider, worker_kind=WorkerKind.RESEARCHER, mistakes=mistakes)

    outcome = await gateway.execute(ToolInvocation("write_to_file", {"path": "a.py", "content": "x"}))

    assert outcome.success is False
    assert outcome.content.startswith("PERMISSION DENIED:")
    assert provider.calls == []
    assert mistakes.general == 1


@pytest.mark.asyncio
async def test_ignored_path_is_blocked():
    provider = RecordingProvider()
    gateway = _gateway(provider, ignore_patterns=["secrets/", "*.pem"])

    blocked_dir = await gateway.execute(ToolInvocation("read_file", {"path": "config/secrets/key.txt"}))
    blocked_glob = await gateway.execute(ToolInvocation("read_file", {"path": "certs/server.pem"}))
    allowed = await gateway.execute(ToolInvocation("read_file", {"path": "src/main.py"}))

    assert blocked_dir.content.startswith("BLOCKED:")
    assert '"secrets/"' in blocked_dir.content
    assert blocked_glob.success is False
    assert allowed.success is True
    assert provider.calls == [("read_file", {"path": "src/main.py"})]


def test_ignore_patterns_come_from_config_and_ignore_file(tmp_path):
    (tmp_path / ".taskloomignore").write_text("# comment\n\nbuild/\n*.log\n", encoding="utf-8")

    patterns = load_ignore_patterns(tmp_path)

    assert patterns == ["build/", "*.log"]
    assert matches_ignore("./build/out.js", patterns) == "build/"
    assert matches_ignore("logs/app.log", patterns) == "*.log"
    assert matches_ignore("src/app.py", patterns) is None


@pytest.mark.asyncio
async def test_repeated_read_is_served_from_cache():
    provider = RecordingProvider({"read_file": ToolOutcome(success=True, content="one\ntwo\nthree\nfour")})
    gateway = _gateway(provider)

    first = await gateway.execute(ToolInvocation("read_file", {"path": "notes.txt"}), step=1)
    second = await gateway.execute(ToolInvocation("read_file", {"path": "./notes.txt"}), step=2)
    ranged = await gateway.execute(
        ToolInvocation("read_file", {"path": "notes.txt", "start_line": 2, "end_line": 3}), step=3
    )

    assert len(provider.calls) == 1
    assert first.content == second.content
    assert ranged.content == "[Lines 2-3 of 4 total]\ntwo\nthree"
    assert gateway.file_cache.get("notes.txt").read_count == 3


@pytest.mark.asyncio
async def test_cached_read_is_refreshed_when_file_changes_on_disk(tmp_path):
    target = tmp_path / "data.txt"
    target.write_text("old", encoding="utf-8")
    provider = RecordingProvider({"read_file": ToolOutcome(success=True, content="old")})
    gateway = _gateway(provider, working_directory=tmp_path)

    await gateway.execute(ToolInvocation("read_file", {"path": "data.txt"}), step=1)
    stat = os.stat(target)
    os.utime(target, (stat.st_atime + 10, stat.st_mtime + 10))
    await gateway.execute(ToolInvocation("read_file", {"path": "data.txt"}), step=2)

    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_whole_file_write_refreshes_cache():
    provider = RecordingProvider()
    gateway = _gateway(provider)

    await gateway.execute(ToolInvocation("write_to_file", {"path": "b.py", "content": "print(1)\n"}), step=1)
    read = await gateway.execute(ToolInvocation("read_file", {"path": "b.py"}), step=2)

    assert read.content == "print(1)\n"
    assert [name for name, _ in provider.calls] == ["write_to_file"]


@pytest.mark.asyncio
async def test_rejection_with_feedback_is_reported_and_queued():
    provider = RecordingProvider()
    approval = ApprovalPolicy(mode="approve_all", callback=lambda request: (False, "use the staging db"))
    gateway = _gateway(provider, approval=approval)

    outcome = await gateway.execute(ToolInvocation("execute_command", {"command": "migrate"}))

    assert outcome.success is False
    assert outcome.content == "Rejected by user. Feedback: use the staging db"
    assert provider.calls == []
    assert gateway.drain_feedback() == ["use the staging db"]
    assert gateway.drain_feedback() == []


@pytest.mark.asyncio
async def test_reads_skip_approval_in_auto_approve_reads_mode():
    provider = RecordingProvider()
    requests = []

    async def approve(request):
        requests.append(request)
        return ApprovalDecision(approved=True)

    gateway = _gateway(provider, approval=ApprovalPolicy(mode="auto_approve_reads", callback=approve))

    await gateway.execute(ToolInvocation("read_file", {"path": "a.py"}))
    await gateway.execute(ToolInvocation("write_to_file", {"path": "a.py", "content": "x"}))

    assert [r.tool for r in requests] == ["write_to_file"]
    assert requests[0].summary == "write_to_file a.py"
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_failing_approval_callback_rejects_the_call():
    def broken(request):
        raise RuntimeError("ui gone")

    provider = RecordingProvider()
    gateway = _gateway(provider, approval=ApprovalPolicy(mode="approve_all", callback=broken))

    outcome = await gateway.execute(ToolInvocation("execute_command", {"command": "ls"}))

    assert outcome.content == "Rejected by user. (approval failed: ui gone)"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_missing_approval_callback_allows_the_call():
    provider = RecordingProvider()
    gateway = _gateway(provider, approval=ApprovalPolicy(mode="approve_all"))

    outcome = await gateway.execute(ToolInvocation("execute_command", {"command": "ls"}))

    assert outcome.success is True


@pytest.mark.asyncio
async def test_slow_tool_times_out():
    gateway = _gateway(RecordingProvider(delay=1.0), timeout_seconds=0.05)

    outcome = await gateway.execute(ToolInvocation("execute_command", {"command": "sleep 1"}))

    assert outcome.success is False
    assert outcome.error == "Execution timed out after 0.05s"


@pytest.mark.asyncio
async def test_cancellation_aborts_running_tool():
    token = CancellationToken()
    gateway = _gateway(RecordingProvider(delay=5.0), cancellation=token)

    running = asyncio.create_task(gateway.execute(ToolInvocation("execute_command", {"command": "build"})))
    await asyncio.sleep(0.05)
    token.cancel("user stop")
    outcome = await asyncio.wait_for(running, timeout=1.0)

    assert outcome.success is False
    assert outcome.error == "Execution aborted"


@pytest.mark.asyncio
async def test_already_cancelled_token_skips_dispatch():
    token = CancellationToken()
    token.cancel()
    provider = RecordingProvider()
    gateway = _gateway(provider, cancellation=token)

    outcome = await gateway.execute(ToolInvocation("execute_command", {"command": "ls"}))

    assert outcome.error == "Execution aborted"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_failed_edit_carries_guidance_with_current_content():
    provider = RecordingProvider(
        {
            "read_file": ToolOutcome(success=True, content="def main():\n    pass\n"),
            "replace_in_file": ToolOutcome(success=False, error="SEARCH block not found"),
        }
    )
    gateway = _gateway(provider)

    await gateway.execute(ToolInvocation("read_file", {"path": "app.py"}), step=1)
    outcome = await gateway.execute(
        ToolInvocation("replace_in_file", {"path": "app.py", "old_string": "x", "new_string": "y"}), step=2
    )

    assert outcome.success is False
    assert outcome.content.startswith("Error: SEARCH block not found")
    assert 'The edit to "app.py" failed' in outcome.content
    assert "def main():" in outcome.content
    assert gateway.mistakes.edit_failures("app.py") == 1


@pytest.mark.asyncio
async def test_every_call_emits_a_tool_event():
    events = CollectingEventSink()
    gateway = _gateway(RecordingProvider(), events=events, worker_kind="writer")

    await gateway.execute(ToolInvocation("read_file", {"path": "a.py"}), step=4)

    (event,) = events.of_type(EventType.TOOL_CALLED)
    assert event.task_id == "t1"
    assert event.payload["tool"] == "read_file"
    assert event.payload["success"] is False
    assert event.payload["step"] == 4
