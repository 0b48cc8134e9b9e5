import pytest

from taskloom.config import Config, get_config, set_config
from taskloom.exceptions import PlanValidationError
from taskloom.permissions import WorkerKind
from taskloom.task_graph import (
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    RETRYING,
    SubTask,
    TaskGraph,
    TaskPlan,
)


@pytest.fixture(autouse=True)
def default_config():
    old_cfg = get_config()
    set_config(Config())
    yield
    set_config(old_cfg)


def _graph(*specs: tuple[str, list[str]]) -> TaskGraph:
    return TaskGraph([SubTask(id=sid, description=f"do {sid}", dependencies=deps) for sid, deps in specs])


def test_topological_order_uses_plan_order_for_ties():
    graph = _graph(("c", ["a"]), ("b", []), ("a", []), ("d", ["b", "c"]))

    assert graph.topological_order() == ["b", "a", "c", "d"]
    assert [t.id for t in graph.ready()] == ["b", "a"]


def test_validate_rejects_unknown_self_and_duplicate_ids():
    with pytest.raises(PlanValidationError, match="unknown sub-task x"):
        _graph(("a", ["x"])).validate()
    with pytest.raises(PlanValidationError, match="depends on itself"):
        _graph(("a", ["a"])).validate()
    with pytest.raises(PlanValidationError, match="Duplicate"):
        _graph(("a", []), ("a", []))


def test_cycles_are_reported_and_never_ready():
    graph = _graph(("a", ["b"]), ("b", ["a"]), ("c", []))

    assert graph.cyclic_tasks() == ["a", "b"]
    assert [t.id for t in graph.ready()] == ["c"]


def test_failed_attempt_is_retried_with_reason_in_description():
    graph = _graph(("a", []))
    graph.mark_running("a")

    assert graph.fail("a", "compiler error") is True

    task = graph.get_task("a")
    assert task.status == RETRYING
    assert task.attempts == 1
    assert task.description.startswith("do a\n\nPrevious attempt 1 failed: compiler error")
    assert [t.id for t in graph.ready()] == ["a"]

    graph.mark_running("a")
    graph.fail("a", "again")
    assert "Previous attempt 2 failed: again" in task.description
    assert "Previous attempt 1" not in task.description


def test_exhausted_sub_task_fails_but_unblocks_dependents():
    graph = TaskGraph([
        SubTask(id="a", description="a", max_attempts=1),
        SubTask(id="b", description="b", dependencies=["a"]),
    ])
    graph.mark_running("a")

    assert graph.fail("a", "boom") is False

    assert graph.get_task("a").status == FAILED
    assert [t.id for t in graph.ready()] == ["b"]
    assert graph.has_failures


def test_mark_running_only_from_activatable_states():
    graph = _graph(("a", []))
    graph.mark_running("a")

    assert graph.get_task("a").status == IN_PROGRESS
    with pytest.raises(PlanValidationError):
        graph.mark_running("a")


def test_abandon_and_completion_summary():
    graph = _graph(("a", []), ("b", ["a"]))
    graph.mark_running("a")
    graph.complete("a", "result")
    graph.abandon("b", "cancelled")
    graph.abandon("a", "ignored for terminal tasks")

    summary = graph.summary()

    assert graph.is_complete
    assert graph.get_task("a").status == COMPLETED
    assert graph.get_task("b").attempts == 0
    assert summary["completed"] == 1
    assert summary["failed"] == 1
    assert summary["ready"] == 0


def test_plan_from_dict_accepts_aliases_and_derives_worker_kinds():
    plan = TaskPlan.from_dict({
        "task_id": "t-1",
        "task": "Write docs",
        "sub_tasks": [
            {"id": "research", "description": "Collect facts", "agent": "researcher"},
            {"id": "draft", "description": "Write", "worker_kind": "writer", "depends_on": ["research"]},
        ],
    })

    assert plan.id == "plan-t-1"
    assert plan.get("draft").dependencies == ["research"]
    assert plan.required_worker_kinds == [WorkerKind.RESEARCHER, WorkerKind.WRITER]
    assert plan.get("research").max_attempts == 3


def test_plan_without_sub_tasks_is_invalid():
    with pytest.raises(PlanValidationError, match="no sub-tasks"):
        TaskPlan.from_dict({"task": "x", "sub_tasks": []})


def test_plan_from_yaml(tmp_path):
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text(
        "task: Release\n"
        "sub_tasks:\n"
        "  - id: build\n"
        "    description: Build it\n"
        "    max_attempts: 2\n"
        "  - id: publish\n"
        "    description: Publish it\n"
        "    dependencies: [build]\n",
        encoding="utf-8",
    )
    broken = tmp_path / "broken.yaml"
    broken.write_text("task: [unclosed\n", encoding="utf-8")

    plan = TaskPlan.from_yaml(plan_file)

    assert [s.id for s in plan.sub_tasks] == ["build", "publish"]
    assert plan.get("build").max_attempts == 2
    with pytest.raises(PlanValidationError, match="Invalid plan YAML"):
        TaskPlan.from_yaml(broken)


def test_sub_task_round_trips_to_dict():
    sub = SubTask.from_dict({"id": "a", "description": "x", "worker_kind": "coder", "dependencies": ["b"]})

    data = sub.to_dict()

    assert data["worker_kind"] == "coder"
    assert data["dependencies"] == ["b"]
    assert data["status"] == "pending"
