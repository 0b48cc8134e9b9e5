"""Observability events emitted by tool loops and the scheduler.

Sinks are injected at construction; there is no process-wide bus.  A sink
that raises is logged and ignored so observability can never break a run.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from taskloom.logging import get_logger

log = get_logger(__name__)


class EventType(str, Enum):
    THINKING_STARTED = "thinking_started"
    THINKING = "thinking"
    TOOL_CALLED = "tool_called"
    STEP_COMPLETED = "step_completed"
    ERROR = "error"
    CONTEXT_USAGE = "context_usage"
    COMPACTION = "compaction"
    DELEGATION = "delegation"
    ROUND_STARTED = "round_started"
    SUBTASK_STARTED = "subtask_started"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_RETRYING = "subtask_retrying"
    SUBTASK_FAILED = "subtask_failed"
    PLAN_COMPLETED = "plan_completed"


@dataclass(frozen=True)
class AgentEvent:
    """A structured observability event."""

    type: EventType
    task_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: AgentEvent) -> None: ...


class NullEventSink:
    """Discards every event."""

    def emit(self, event: AgentEvent) -> None:
        return None


class LoggingEventSink:
    """Writes events to the structured log."""

    def __init__(self, level: str = "info"):
        self._level = level

    def emit(self, event: AgentEvent) -> None:
        method = getattr(log, self._level, log.info)
        fields = {k: v for k, v in event.payload.items() if k not in {"event", "kind", "task_id"}}
        method("Agent event", kind=event.type.value, task_id=event.task_id, **fields)


class CollectingEventSink:
    """Keeps events in memory (progress streams and tests)."""

    def __init__(self) -> None:
        self.events: list[AgentEvent] = []

    def emit(self, event: AgentEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()


class FanoutEventSink:
    """Forwards events to several sinks."""

    def __init__(self, *sinks: EventSink):
        self._sinks = list(sinks)

    def add(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(self, event: AgentEvent) -> None:
        for sink in self._sinks:
            emit_safely(sink, event)


def emit_safely(sink: EventSink | None, event: AgentEvent) -> None:
    """Deliver event to sink, logging (not raising) sink failures."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        log.warning("Event sink failed", kind=event.type.value, error=str(e))


def one_line(text: str, limit: int = 120) -> str:
    """Collapse whitespace and cap length for event summaries."""
    flat = " ".join(str(text or "").split())
    if len(flat) > limit:
        return flat[: limit - 3] + "..."
    return flat
