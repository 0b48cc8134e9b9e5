"""Custom exceptions for Taskloom."""


class TaskloomError(Exception):
    """Base exception for Taskloom."""

    pass


class ConfigurationError(TaskloomError):
    """Configuration-related errors."""

    pass


class LLMError(TaskloomError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(LLMError):
    """Circuit breaker is open; calls are short-circuited."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(
            f"Circuit breaker '{name}' is open; retry after {retry_after:.1f}s"
        )
        self.name = name
        self.retry_after = retry_after


class ToolError(TaskloomError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class ContextError(TaskloomError):
    """Context window errors."""

    pass


class ContextOverflowError(ContextError):
    """Context window overflow."""

    def __init__(self, current_tokens: int, max_tokens: int):
        super().__init__(
            f"Context overflow: {current_tokens} > {max_tokens} tokens"
        )
        self.current_tokens = current_tokens
        self.max_tokens = max_tokens


class ValidationError(TaskloomError):
    """Validation errors."""

    pass


class TaskCancelledError(TaskloomError):
    """Work was cancelled through a cancellation token."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Cancelled: {reason}")
        self.reason = reason


class SchedulerError(TaskloomError):
    """Plan scheduling errors."""

    pass


class PlanValidationError(SchedulerError):
    """Plan is malformed (duplicate ids, unknown dependencies)."""

    pass


class DependencyDeadlockError(SchedulerError):
    """No sub-task can become ready; the dependency graph is unsatisfiable."""

    def __init__(self, remaining: list[str]):
        super().__init__(
            "Dependency deadlock: no ready sub-tasks among "
            + ", ".join(sorted(remaining))
        )
        self.remaining = list(remaining)
