"""Tool provider port, base tool class and the in-process tool registry."""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field, model_validator

from taskloom.config import get_config
from taskloom.exceptions import (
    ToolBlockedError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from taskloom.logging import get_logger
from taskloom.permissions import SafetyClass, classify_tool

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


class ToolOutcome(BaseModel):
    """Result of one tool call as fed back to the model."""

    success: bool = True
    content: str = ""
    error: str | None = None
    latency: float = 0.0

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolOutcome":
        """Ensure failed outcomes always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def text(self) -> str:
        """Content shown to the model (error text for failures without content)."""
        if self.success:
            return self.content
        return self.content or f"Error: {self.error}"


class ToolSpec(BaseModel):
    """Tool description exposed by a provider."""

    key: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    safety: SafetyClass | None = None

    @property
    def safety_class(self) -> SafetyClass:
        return self.safety or classify_tool(self.key)


class ToolProvider(ABC):
    """Port for whatever actually executes tools."""

    @abstractmethod
    async def list_tools(self) -> list[ToolSpec]:
        pass

    @abstractmethod
    async def call_tool(
        self,
        key: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolOutcome:
        pass


class Tool(ABC):
    """Base class for in-process tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0
    safety: SafetyClass | None = None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolOutcome:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolOutcome with success status and content
        """
        pass

    def get_spec(self) -> ToolSpec:
        return ToolSpec(
            key=self.name,
            description=self.description,
            input_schema=self.parameters,
            safety=self.safety,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate required arguments against the schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolPolicy(BaseModel):
    """Policy rule set for filtering available tools."""

    allow: list[str] | None = None
    deny: list[str] = Field(default_factory=list)
    also_allow: list[str] = Field(default_factory=list)


class ToolPolicyChain:
    """Apply policies in cascade: global -> plan -> task."""

    def __init__(self, steps: list[tuple[str, ToolPolicy]] | None = None):
        self.steps: list[tuple[str, ToolPolicy]] = list(steps or [])

    @staticmethod
    def _normalize_name_set(items: list[str] | None) -> set[str] | None:
        if items is None:
            return None
        return {
            _normalize_tool_name(item)
            for item in items
            if _normalize_tool_name(item)
        }

    def _apply(
        self,
        current_names: set[str],
        all_names: set[str],
        policy: ToolPolicy,
    ) -> set[str]:
        """Apply one policy step against current allowed tool names."""
        next_names = set(current_names)
        allow_names = self._normalize_name_set(policy.allow)
        if allow_names is not None:
            next_names = {name for name in next_names if name in allow_names}

        next_names -= self._normalize_name_set(policy.deny) or set()

        also_allow_names = self._normalize_name_set(policy.also_allow) or set()
        next_names |= also_allow_names & all_names
        return next_names

    def resolve(self, names: list[str]) -> list[str]:
        """Resolve final tool names after applying the chain."""
        if not self.steps:
            return list(names)

        all_names = {_normalize_tool_name(name) for name in names if _normalize_tool_name(name)}
        current_names = set(all_names)
        for _, policy in self.steps:
            current_names = self._apply(current_names, all_names, policy)
        return [name for name in names if _normalize_tool_name(name) in current_names]


class ToolRegistry(ToolProvider):
    """In-process tool provider with policy filtering, timeouts and abort."""

    def __init__(self, policies: list[tuple[str, ToolPolicy | dict[str, Any]]] | None = None):
        self._tools: dict[str, Tool] = {}
        self._policy_chain = ToolPolicyChain(
            [(label, self._coerce_policy(policy)) for label, policy in (policies or [])]
        )

    @staticmethod
    def _coerce_policy(policy: ToolPolicy | dict[str, Any]) -> ToolPolicy:
        if isinstance(policy, ToolPolicy):
            return policy
        if isinstance(policy, dict):
            return ToolPolicy(**policy)
        raise TypeError(f"Unsupported policy type: {type(policy)!r}")

    def add_policy(self, label: str, policy: ToolPolicy | dict[str, Any]) -> None:
        self._policy_chain.steps.append((label, self._coerce_policy(policy)))

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("Tool must have a name")
        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Tool:
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_names(self) -> list[str]:
        return self._policy_chain.resolve(list(self._tools.keys()))

    async def list_tools(self) -> list[ToolSpec]:
        allowed = set(self.list_names())
        return [tool.get_spec() for name, tool in self._tools.items() if name in allowed]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolOutcome:
        """Execute a tool by name.

        Raises:
            ToolNotFoundError if tool not found
            ToolBlockedError if tool is blocked by the policy chain
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        if name not in self.list_names():
            raise ToolBlockedError(name, "Blocked by tool policy chain")

        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolOutcome] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name)
            timeout_seconds = float(getattr(tool, "timeout_seconds", 0) or get_config().tools.timeout_seconds)
            timeout_seconds = max(0.01, timeout_seconds)

            execute_task = asyncio.create_task(tool.execute(**arguments))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolOutcome):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ToolExecutionError(name, "Execution aborted")
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)

    async def call_tool(
        self,
        key: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolOutcome:
        """Provider entry point: like execute(), but failures become outcomes."""
        started = time.monotonic()
        try:
            outcome = await self.execute(key, arguments, abort_event=abort_event)
        except ToolError as e:
            return ToolOutcome(success=False, error=str(e), latency=time.monotonic() - started)
        if not outcome.latency:
            outcome = outcome.model_copy(update={"latency": time.monotonic() - started})
        return outcome
