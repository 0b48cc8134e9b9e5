"""Worker kinds, tool permissions and the human approval gate.

Permissions answer "may this kind of worker call this tool at all?";
approval answers "should a human confirm this particular call first?".
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from taskloom.config import get_config
from taskloom.logging import get_logger

log = get_logger(__name__)

APPROVAL_TIMEOUT_SECONDS = 300.0


class WorkerKind(str, Enum):
    EXECUTOR = "executor"
    RESEARCHER = "researcher"
    CODER = "coder"
    REVIEWER = "reviewer"
    ANALYST = "analyst"
    CRITIC = "critic"
    WRITER = "writer"
    PLANNER = "planner"
    REFLECTION = "reflection"
    ORCHESTRATOR = "orchestrator"

    @classmethod
    def parse(cls, value: "WorkerKind | str") -> "WorkerKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown worker kind: {value!r}") from None


class PermissionTier(str, Enum):
    FULL = "full"
    READ_WRITE = "read_write"
    READ = "read"
    NONE = "none"


class SafetyClass(str, Enum):
    SAFE = "safe"
    WRITE = "write"
    EXECUTE = "execute"
    DANGEROUS = "dangerous"


SAFE_TOOLS = frozenset({
    "read_file", "file_read",
    "list_files", "directory_list",
    "search_files",
    "list_code_definition_names",
    "web_search",
    "webpage_fetch",
    "http_request",
    "condense",
})
WRITE_TOOLS = frozenset({
    "write_to_file", "file_write", "file_create",
    "replace_in_file", "file_edit",
    "apply_patch",
    "create_directory",
})
EXECUTE_TOOLS = frozenset({"execute_command", "shell_execute"})
DANGEROUS_TOOLS = frozenset({"file_delete", "file_move"})

READ_TOOLS = frozenset({"read_file", "file_read"})
EDIT_TOOLS = frozenset({"replace_in_file", "file_edit", "apply_patch"})
FULL_WRITE_TOOLS = frozenset({"write_to_file", "file_write", "file_create"})


def base_tool_name(tool: str) -> str:
    """Strip a namespace prefix (``local::read_file`` -> ``read_file``)."""
    return str(tool or "").split("::")[-1].strip()


def classify_tool(tool: str) -> SafetyClass:
    """Classify a tool by its safety level; unknown tools count as execute."""
    name = base_tool_name(tool)
    if name in SAFE_TOOLS:
        return SafetyClass.SAFE
    if name in DANGEROUS_TOOLS:
        return SafetyClass.DANGEROUS
    if name in WRITE_TOOLS:
        return SafetyClass.WRITE
    if name in EXECUTE_TOOLS:
        return SafetyClass.EXECUTE
    return SafetyClass.EXECUTE


def is_read_only(tool: str) -> bool:
    return classify_tool(tool) == SafetyClass.SAFE


@dataclass(frozen=True)
class WorkerCapabilities:
    """Explicit capability set for one worker kind."""

    tier: PermissionTier
    allowed_tools: frozenset[str] | None = None
    blocked_tools: frozenset[str] = frozenset()
    timeout_seconds: float = 300.0

    @property
    def has_tools(self) -> bool:
        return self.tier != PermissionTier.NONE


DEFAULT_CAPABILITIES: dict[WorkerKind, WorkerCapabilities] = {
    WorkerKind.EXECUTOR: WorkerCapabilities(PermissionTier.FULL, timeout_seconds=600.0),
    WorkerKind.RESEARCHER: WorkerCapabilities(
        PermissionTier.READ,
        allowed_tools=frozenset({
            "web_search", "webpage_fetch", "read_file", "list_files", "search_files", "http_request",
        }),
    ),
    WorkerKind.CODER: WorkerCapabilities(
        PermissionTier.READ_WRITE,
        allowed_tools=frozenset({
            "read_file", "write_to_file", "replace_in_file", "list_files", "search_files",
            "list_code_definition_names", "create_directory", "web_search", "webpage_fetch",
        }),
        blocked_tools=frozenset({"execute_command", "file_delete"}),
    ),
    WorkerKind.REVIEWER: WorkerCapabilities(
        PermissionTier.READ,
        allowed_tools=frozenset({
            "read_file", "list_files", "search_files", "list_code_definition_names",
            "web_search", "webpage_fetch",
        }),
        timeout_seconds=180.0,
    ),
    WorkerKind.ANALYST: WorkerCapabilities(
        PermissionTier.READ,
        allowed_tools=frozenset({"read_file", "list_files", "web_search", "webpage_fetch", "http_request"}),
        timeout_seconds=180.0,
    ),
    WorkerKind.CRITIC: WorkerCapabilities(
        PermissionTier.READ,
        allowed_tools=frozenset({"web_search", "webpage_fetch"}),
        timeout_seconds=120.0,
    ),
    WorkerKind.WRITER: WorkerCapabilities(PermissionTier.NONE),
    WorkerKind.PLANNER: WorkerCapabilities(PermissionTier.NONE),
    WorkerKind.REFLECTION: WorkerCapabilities(PermissionTier.NONE),
    WorkerKind.ORCHESTRATOR: WorkerCapabilities(PermissionTier.NONE),
}


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str = ""


class PermissionPolicy:
    """Per worker-kind tool access checks."""

    def __init__(self, capabilities: dict[WorkerKind, WorkerCapabilities] | None = None):
        self._capabilities = dict(DEFAULT_CAPABILITIES)
        if capabilities:
            self._capabilities.update(capabilities)

    @classmethod
    def from_config(cls) -> "PermissionPolicy":
        """Apply ``workers`` overrides from configuration on top of the defaults."""
        overrides: dict[WorkerKind, WorkerCapabilities] = {}
        for raw_kind, override in get_config().workers.items():
            kind = WorkerKind.parse(raw_kind)
            base = DEFAULT_CAPABILITIES[kind]
            overrides[kind] = WorkerCapabilities(
                tier=PermissionTier(override.tier) if override.tier else base.tier,
                allowed_tools=(
                    frozenset(override.allowed_tools)
                    if override.allowed_tools is not None
                    else base.allowed_tools
                ),
                blocked_tools=base.blocked_tools | frozenset(override.blocked_tools),
                timeout_seconds=override.timeout_seconds or base.timeout_seconds,
            )
        return cls(overrides)

    def capabilities(self, worker_kind: WorkerKind | str) -> WorkerCapabilities:
        kind = WorkerKind.parse(worker_kind)
        return self._capabilities.get(kind, WorkerCapabilities(PermissionTier.NONE))

    def tool_enabled(self, worker_kind: WorkerKind | str) -> bool:
        return self.capabilities(worker_kind).has_tools

    def timeout_for(self, worker_kind: WorkerKind | str) -> float:
        return self.capabilities(worker_kind).timeout_seconds

    def check(self, worker_kind: WorkerKind | str, tool: str) -> PermissionDecision:
        kind = WorkerKind.parse(worker_kind)
        caps = self.capabilities(kind)
        name = base_tool_name(tool)

        if caps.tier == PermissionTier.NONE:
            return PermissionDecision(False, f'Worker "{kind.value}" has no tool access (tier: none)')
        if name in caps.blocked_tools:
            return PermissionDecision(False, f'Tool "{name}" is explicitly blocked for worker "{kind.value}"')
        if caps.tier == PermissionTier.FULL:
            return PermissionDecision(True)
        if caps.allowed_tools is not None and name not in caps.allowed_tools:
            return PermissionDecision(False, f'Tool "{name}" is not in the allow-list for worker "{kind.value}"')

        safety = classify_tool(name)
        if caps.tier == PermissionTier.READ and safety != SafetyClass.SAFE:
            return PermissionDecision(
                False,
                f'Worker "{kind.value}" (tier: read) cannot use {safety.value}-level tool "{name}"',
            )
        if caps.tier == PermissionTier.READ_WRITE and safety in (SafetyClass.EXECUTE, SafetyClass.DANGEROUS):
            return PermissionDecision(
                False,
                f'Worker "{kind.value}" (tier: read_write) cannot use {safety.value}-level tool "{name}"',
            )
        return PermissionDecision(True)

    def filter_tools(self, worker_kind: WorkerKind | str, tools: list[str]) -> list[str]:
        return [tool for tool in tools if self.check(worker_kind, tool).allowed]


# Which worker kinds each kind may hand sub-tasks to.  Kinds missing here
# never delegate.
DELEGATION_RULES: dict[WorkerKind, tuple[WorkerKind, ...]] = {
    WorkerKind.EXECUTOR: (
        WorkerKind.RESEARCHER, WorkerKind.CODER, WorkerKind.REVIEWER,
        WorkerKind.WRITER, WorkerKind.ANALYST, WorkerKind.CRITIC,
    ),
    WorkerKind.CODER: (WorkerKind.RESEARCHER, WorkerKind.REVIEWER),
    WorkerKind.RESEARCHER: (WorkerKind.CODER,),
    WorkerKind.REVIEWER: (WorkerKind.RESEARCHER, WorkerKind.CODER),
    WorkerKind.ANALYST: (WorkerKind.RESEARCHER,),
}


def delegation_targets(worker_kind: WorkerKind | str) -> tuple[WorkerKind, ...]:
    return DELEGATION_RULES.get(WorkerKind.parse(worker_kind), ())


def can_delegate(delegator: WorkerKind | str, target: WorkerKind | str) -> PermissionDecision:
    source = WorkerKind.parse(delegator)
    try:
        kind = WorkerKind.parse(target)
    except ValueError:
        return PermissionDecision(False, f'Unknown worker kind "{target}"')
    allowed = delegation_targets(source)
    if not allowed:
        return PermissionDecision(False, f'Worker "{source.value}" is not permitted to delegate')
    if kind == source:
        return PermissionDecision(False, f'Worker "{source.value}" cannot delegate to itself')
    if kind not in allowed:
        names = ", ".join(k.value for k in allowed)
        return PermissionDecision(
            False,
            f'Worker "{source.value}" cannot delegate to "{kind.value}". Allowed targets: {names}',
        )
    return PermissionDecision(True)


# ---------------------------------------------------------------------------
# Approval gate
# ---------------------------------------------------------------------------


class ApprovalMode(str, Enum):
    AUTONOMOUS = "autonomous"
    AUTO_APPROVE_READS = "auto_approve_reads"
    APPROVE_ALL = "approve_all"


@dataclass(frozen=True)
class ApprovalRequest:
    task_id: str
    worker_kind: str
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    summary: str = ""
    safety: SafetyClass = SafetyClass.EXECUTE


@dataclass(frozen=True)
class ApprovalDecision:
    approved: bool
    feedback: str = ""
    reason: str = ""


ApprovalCallbackResult = Union[bool, ApprovalDecision, tuple]
ApprovalCallback = Callable[
    [ApprovalRequest],
    Union[ApprovalCallbackResult, Awaitable[ApprovalCallbackResult]],
]


class ApprovalPolicy:
    """Decides which calls need confirmation and asks the injected callback."""

    def __init__(
        self,
        mode: ApprovalMode | str = ApprovalMode.AUTONOMOUS,
        callback: ApprovalCallback | None = None,
        timeout_seconds: float = APPROVAL_TIMEOUT_SECONDS,
    ):
        self.mode = ApprovalMode(mode)
        self._callback = callback
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, callback: ApprovalCallback | None = None) -> "ApprovalPolicy":
        return cls(mode=get_config().approval.mode, callback=callback)

    def set_callback(self, callback: ApprovalCallback | None) -> None:
        self._callback = callback

    def requires_approval(self, tool: str, args: dict[str, Any] | None = None) -> bool:
        if self.mode == ApprovalMode.AUTONOMOUS:
            return False
        if self.mode == ApprovalMode.APPROVE_ALL:
            return True
        return classify_tool(tool) != SafetyClass.SAFE

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision:
        if not callable(self._callback):
            log.warning(
                "Tool call requires approval but no callback is configured; allowing",
                tool=request.tool,
            )
            return ApprovalDecision(approved=True)

        try:
            raw = self._callback(request)
            if inspect.isawaitable(raw):
                raw = await asyncio.wait_for(raw, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.warning("Approval timed out", tool=request.tool)
            return ApprovalDecision(approved=False, reason="Approval timed out")
        return self._coerce(raw)

    @staticmethod
    def _coerce(raw: Any) -> ApprovalDecision:
        if isinstance(raw, ApprovalDecision):
            return raw
        if isinstance(raw, tuple):
            approved = bool(raw[0]) if raw else False
            feedback = str(raw[1]) if len(raw) > 1 and raw[1] else ""
            return ApprovalDecision(approved=approved, feedback=feedback)
        return ApprovalDecision(approved=bool(raw))
