"""Task plans and the DAG of sub-tasks the scheduler drives.

Provides the plan model, topological ordering, ready-set computation and
retry bookkeeping.  A terminally failed sub-task still resolves its
dependents: they run on whatever their dependencies produced.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from taskloom.config import get_config
from taskloom.exceptions import PlanValidationError
from taskloom.permissions import WorkerKind


# ---------------------------------------------------------------------------
# Sub-task statuses
# ---------------------------------------------------------------------------

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
RETRYING = "retrying"

_TERMINAL_STATES = {COMPLETED, FAILED}
_ACTIVATABLE_STATES = {PENDING, RETRYING}


# ---------------------------------------------------------------------------
# Plan model
# ---------------------------------------------------------------------------


@dataclass
class SubTask:
    """Single unit of work in the plan DAG."""

    id: str
    description: str
    worker_kind: WorkerKind = WorkerKind.EXECUTOR
    dependencies: list[str] = field(default_factory=list)
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 0
    result: Any = None
    error: str = ""
    original_description: str = ""
    started_at: float = 0.0
    completed_at: float = 0.0

    def __post_init__(self) -> None:
        self.worker_kind = WorkerKind.parse(self.worker_kind)
        if self.max_attempts <= 0:
            self.max_attempts = max(1, get_config().scheduler.default_max_attempts)
        if not self.original_description:
            self.original_description = self.description

    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubTask":
        if "id" not in data or "description" not in data:
            raise PlanValidationError(f"Sub-task needs 'id' and 'description': {data!r}")
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            worker_kind=data.get("worker_kind") or data.get("agent") or WorkerKind.EXECUTOR,
            dependencies=[str(dep) for dep in data.get("dependencies") or data.get("depends_on") or []],
            max_attempts=int(data.get("max_attempts") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "worker_kind": self.worker_kind.value,
            "dependencies": list(self.dependencies),
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
        }


@dataclass
class TaskPlan:
    """An ordered list of sub-tasks produced by a planner."""

    id: str
    task_id: str
    task_text: str
    sub_tasks: list[SubTask] = field(default_factory=list)
    estimated_complexity: str = "medium"
    required_worker_kinds: list[WorkerKind] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.required_worker_kinds:
            seen: list[WorkerKind] = []
            for sub in self.sub_tasks:
                if sub.worker_kind not in seen:
                    seen.append(sub.worker_kind)
            self.required_worker_kinds = seen

    def get(self, sub_task_id: str) -> SubTask | None:
        for sub in self.sub_tasks:
            if sub.id == sub_task_id:
                return sub
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskPlan":
        raw_subs = data.get("sub_tasks") or data.get("subtasks") or []
        if not isinstance(raw_subs, list) or not raw_subs:
            raise PlanValidationError("Plan has no sub-tasks")
        task_id = str(data.get("task_id") or uuid.uuid4().hex[:12])
        return cls(
            id=str(data.get("id") or f"plan-{task_id}"),
            task_id=task_id,
            task_text=str(data.get("task") or data.get("task_text") or ""),
            sub_tasks=[SubTask.from_dict(item) for item in raw_subs],
            estimated_complexity=str(data.get("estimated_complexity") or "medium"),
            required_worker_kinds=[WorkerKind.parse(k) for k in data.get("required_worker_kinds") or []],
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> "TaskPlan":
        with open(Path(path).expanduser(), "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise PlanValidationError(f"Invalid plan YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise PlanValidationError(f"Plan file must contain a mapping: {path}")
        return cls.from_dict(data)


# ---------------------------------------------------------------------------
# TaskGraph
# ---------------------------------------------------------------------------


class TaskGraph:
    """DAG of SubTask nodes.

    Manages topological ordering, the ready set and retry logic.  The
    scheduler is the only caller that mutates sub-task state.
    """

    def __init__(self, sub_tasks: list[SubTask] | None = None):
        self._tasks: dict[str, SubTask] = {}
        self._order: list[str] = []
        for sub in sub_tasks or []:
            self.add_task(sub)

    @classmethod
    def from_plan(cls, plan: TaskPlan) -> "TaskGraph":
        graph = cls(plan.sub_tasks)
        graph.validate()
        return graph

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def add_task(self, task: SubTask) -> None:
        if task.id in self._tasks:
            raise PlanValidationError(f"Duplicate sub-task id: {task.id}")
        self._tasks[task.id] = task
        self._order = []

    def get_task(self, task_id: str) -> SubTask | None:
        return self._tasks.get(task_id)

    @property
    def tasks(self) -> dict[str, SubTask]:
        return dict(self._tasks)

    @property
    def task_count(self) -> int:
        return len(self._tasks)

    def validate(self) -> None:
        """Raise PlanValidationError for unknown or self dependencies."""
        for tid, task in self._tasks.items():
            for dep_id in task.dependencies:
                if dep_id == tid:
                    raise PlanValidationError(f"Sub-task {tid} depends on itself")
                if dep_id not in self._tasks:
                    raise PlanValidationError(f"Sub-task {tid} depends on unknown sub-task {dep_id}")

    # ------------------------------------------------------------------
    # Topological sort (Kahn's algorithm)
    # ------------------------------------------------------------------

    @staticmethod
    def _topological_sort(
        task_ids: list[str],
        dependencies: dict[str, list[str]],
    ) -> tuple[list[str], list[str]]:
        """Return (stable topological order, ids left over on a cycle)."""
        dep_map: dict[str, set[str]] = {tid: set() for tid in task_ids}
        reverse_map: dict[str, set[str]] = {tid: set() for tid in task_ids}
        position = {tid: index for index, tid in enumerate(task_ids)}
        for tid in task_ids:
            for dep_id in dependencies.get(tid, []):
                if dep_id not in position:
                    continue
                dep_map[tid].add(dep_id)
                reverse_map[dep_id].add(tid)

        # Plan order breaks ties.
        ready = sorted((tid for tid, deps in dep_map.items() if not deps), key=position.__getitem__)
        order: list[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for dependent in reverse_map.get(current, set()):
                pending = dep_map[dependent]
                pending.discard(current)
                if not pending and dependent not in order and dependent not in ready:
                    ready.append(dependent)
            ready.sort(key=position.__getitem__)

        leftovers = [tid for tid in task_ids if tid not in order]
        return order, leftovers

    def topological_order(self) -> list[str]:
        """Sub-task ids in dependency order; cyclic leftovers go last."""
        if not self._order:
            task_ids = list(self._tasks)
            order, leftovers = self._topological_sort(
                task_ids, {tid: list(task.dependencies) for tid, task in self._tasks.items()}
            )
            self._order = order + leftovers
        return list(self._order)

    def cyclic_tasks(self) -> list[str]:
        task_ids = list(self._tasks)
        _, leftovers = self._topological_sort(
            task_ids, {tid: list(task.dependencies) for tid, task in self._tasks.items()}
        )
        return leftovers

    # ------------------------------------------------------------------
    # Ready set
    # ------------------------------------------------------------------

    def _dependencies_resolved(self, task: SubTask) -> bool:
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is not None and not dep.is_terminal():
                return False
        return True

    def ready(self) -> list[SubTask]:
        """Activatable sub-tasks whose dependencies are all resolved, in order."""
        return [
            self._tasks[tid]
            for tid in self.topological_order()
            if self._tasks[tid].status in _ACTIVATABLE_STATES
            and self._dependencies_resolved(self._tasks[tid])
        ]

    def mark_running(self, task_id: str) -> SubTask:
        task = self._require(task_id)
        if task.status not in _ACTIVATABLE_STATES:
            raise PlanValidationError(f"Sub-task {task_id} cannot start from status {task.status}")
        task.status = IN_PROGRESS
        task.started_at = time.monotonic()
        return task

    # ------------------------------------------------------------------
    # Completion / failure
    # ------------------------------------------------------------------

    def complete(self, task_id: str, result: Any = None) -> None:
        """Mark sub-task as completed."""
        task = self._require(task_id)
        task.status = COMPLETED
        task.result = result
        task.error = ""
        task.completed_at = time.monotonic()

    def fail(self, task_id: str, error: str = "", result: Any = None) -> bool:
        """Record a failed attempt.

        Returns True when the sub-task was queued for another attempt.  The
        failure reason is appended to the description so the next attempt
        can correct itself.  Exhausted sub-tasks become FAILED, which still
        resolves the dependency for their dependents.
        """
        task = self._require(task_id)
        task.attempts += 1
        task.error = error or "failed"
        task.result = result

        if task.attempts < task.max_attempts:
            task.status = RETRYING
            task.started_at = 0.0
            task.description = (
                f"{task.original_description}\n\n"
                f"Previous attempt {task.attempts} failed: {task.error}\n"
                "Take a different approach to avoid the same failure."
            )
            return True

        task.status = FAILED
        task.completed_at = time.monotonic()
        return False

    def abandon(self, task_id: str, reason: str) -> None:
        """Terminally fail a sub-task without counting an attempt."""
        task = self._require(task_id)
        if task.is_terminal():
            return
        task.status = FAILED
        task.error = reason
        task.completed_at = time.monotonic()

    def _require(self, task_id: str) -> SubTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise PlanValidationError(f"Unknown sub-task: {task_id}")
        return task

    # ------------------------------------------------------------------
    # Graph-level queries
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        """All sub-tasks are in a terminal state."""
        return all(task.is_terminal() for task in self._tasks.values())

    @property
    def remaining(self) -> list[str]:
        return [tid for tid in self.topological_order() if not self._tasks[tid].is_terminal()]

    @property
    def has_failures(self) -> bool:
        return any(task.status == FAILED for task in self._tasks.values())

    def summary(self) -> dict[str, Any]:
        """Compact graph status summary."""
        counts = {PENDING: 0, IN_PROGRESS: 0, COMPLETED: 0, FAILED: 0, RETRYING: 0}
        for task in self._tasks.values():
            counts[task.status] = counts.get(task.status, 0) + 1
        return {
            "total": len(self._tasks),
            **counts,
            "ready": len(self.ready()),
            "is_complete": self.is_complete,
            "has_failures": self.has_failures,
        }
