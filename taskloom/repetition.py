"""Stuck detection for tool loops.

Three independent mechanisms:

- ``RepetitionDetector`` watches the sequence of tool calls;
- ``MistakeCounters`` tracks turns without a tool call and model mistakes;
- ``StreamRepetitionWatchdog`` watches the streamed text of a single turn.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from taskloom.config import get_config
from taskloom.logging import get_logger

log = get_logger(__name__)

EDIT_PREVIEW_LINES = 60


def stable_stringify(value: Any) -> str:
    """Canonical JSON: sorted keys, no whitespace, unknown types as strings."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


class RepetitionAction(str, Enum):
    OK = "ok"
    WARN = "warn"
    STOP = "stop"


@dataclass(frozen=True)
class RepetitionCheck:
    action: RepetitionAction = RepetitionAction.OK
    reason: str = ""
    count: int = 0

    @property
    def ok(self) -> bool:
        return self.action == RepetitionAction.OK


class RepetitionDetector:
    """Detects a loop from the calls a worker makes.

    Checks, in order:

    1. the identical call repeated ``consecutive_limit`` times in a row;
    2. the identical call ``history_limit`` times anywhere in the run;
    3. one tool name called ``name_frequency_limit`` times in total;
    4. one tool name called ``consecutive_name_limit`` times in a row.

    1 and 2 stop the loop at once.  3 and 4 warn on the first crossing and
    stop on the next one.
    """

    def __init__(
        self,
        consecutive_limit: int = 3,
        history_limit: int = 3,
        name_frequency_limit: int = 8,
        consecutive_name_limit: int = 5,
    ):
        self.consecutive_limit = consecutive_limit
        self.history_limit = history_limit
        self.name_frequency_limit = name_frequency_limit
        self.consecutive_name_limit = consecutive_name_limit
        self.reset()

    def reset(self) -> None:
        self._last_signature: str | None = None
        self._consecutive = 0
        self._last_name: str | None = None
        self._consecutive_name = 0
        self._signatures: Counter[str] = Counter()
        self._names: Counter[str] = Counter()
        self._warned_frequency: set[str] = set()
        self._warned_streak: set[str] = set()

    @classmethod
    def from_config(cls) -> "RepetitionDetector":
        cfg = get_config().repetition
        return cls(
            consecutive_limit=cfg.consecutive_limit,
            history_limit=cfg.history_limit,
            name_frequency_limit=cfg.name_frequency_limit,
            consecutive_name_limit=cfg.consecutive_name_limit,
        )

    def check(self, tool: str, args: dict[str, Any] | None = None) -> RepetitionCheck:
        """Record one call and report whether the loop should go on."""
        signature = stable_stringify({"tool": tool, "args": args or {}})

        if signature == self._last_signature:
            self._consecutive += 1
        else:
            self._consecutive = 1
        self._last_signature = signature

        if tool == self._last_name:
            self._consecutive_name += 1
        else:
            self._consecutive_name = 1
        self._last_name = tool

        self._signatures[signature] += 1
        self._names[tool] += 1

        if self._consecutive >= self.consecutive_limit:
            return RepetitionCheck(
                RepetitionAction.STOP,
                f'Identical call to "{tool}" repeated {self._consecutive} times in a row',
                self._consecutive,
            )

        repeats = self._signatures[signature]
        if repeats >= self.history_limit:
            return RepetitionCheck(
                RepetitionAction.STOP,
                f'Identical call to "{tool}" made {repeats} times',
                repeats,
            )

        total = self._names[tool]
        if total >= self.name_frequency_limit:
            return self._escalate(
                self._warned_frequency,
                tool,
                f'"{tool}" called {total} times',
                total,
            )

        if self._consecutive_name >= self.consecutive_name_limit:
            return self._escalate(
                self._warned_streak,
                tool,
                f'"{tool}" called {self._consecutive_name} times in a row',
                self._consecutive_name,
            )

        return RepetitionCheck(count=self._consecutive)

    @staticmethod
    def _escalate(warned: set[str], tool: str, reason: str, count: int) -> RepetitionCheck:
        if tool in warned:
            return RepetitionCheck(RepetitionAction.STOP, reason, count)
        warned.add(tool)
        return RepetitionCheck(RepetitionAction.WARN, reason, count)


@dataclass
class MistakeCounters:
    """Per-invocation mistake bookkeeping."""

    grace: int = 2
    max_general: int = 5
    general: int = 0
    no_tool_use: int = 0
    no_assistant_message: int = 0
    diff_errors: dict[str, int] = field(default_factory=dict)
    edit_errors: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_config(cls) -> "MistakeCounters":
        cfg = get_config().loop
        return cls(grace=cfg.no_tool_grace, max_general=cfg.max_general_mistakes)

    @property
    def past_grace(self) -> bool:
        return self.no_tool_use > self.grace

    @property
    def should_abort(self) -> bool:
        return self.general >= self.max_general

    def record_no_tool_use(self) -> int:
        self.no_tool_use += 1
        return self.no_tool_use

    def reset_no_tool_use(self) -> None:
        self.no_tool_use = 0

    def record_empty_response(self) -> int:
        self.no_assistant_message += 1
        if self.no_assistant_message > self.grace:
            self.general += 1
        return self.no_assistant_message

    def record_mistake(self) -> int:
        self.general += 1
        return self.general

    def record_edit_failure(self, path: str, kind: str = "edit") -> int:
        counters = self.diff_errors if kind == "diff" else self.edit_errors
        counters[path] = counters.get(path, 0) + 1
        return counters[path]

    def edit_failures(self, path: str) -> int:
        return self.diff_errors.get(path, 0) + self.edit_errors.get(path, 0)

    def reset_edit_failures(self, path: str) -> None:
        self.diff_errors.pop(path, None)
        self.edit_errors.pop(path, None)


def build_edit_fallback_message(path: str, count: int, current_content: str) -> str:
    """Guidance appended to a failed edit; gets blunter with every failure."""
    lines = (current_content or "").split("\n")
    if len(lines) > EDIT_PREVIEW_LINES:
        preview = "\n".join(lines[:EDIT_PREVIEW_LINES])
        preview += f"\n\n... [{len(lines) - EDIT_PREVIEW_LINES} more lines]"
    else:
        preview = current_content or ""

    if count <= 1:
        return (
            f'The edit to "{path}" failed. Here is the current file content:\n\n'
            f"```\n{preview}\n```\n\n"
            "Try with fewer SEARCH/REPLACE blocks, ideally just one. "
            "Make sure your SEARCH text exactly matches text in the file, "
            "including whitespace and indentation."
        )
    if count <= 3:
        return (
            f'Edit to "{path}" failed again (attempt {count}). Here is the current file content:\n\n'
            f"```\n{preview}\n```\n\n"
            "IMPORTANT: Copy the EXACT text from the file above for the SEARCH section. "
            "The match must be character-for-character identical. "
            "Include 3+ lines of surrounding context to make the match unique."
        )
    return (
        f'Edit to "{path}" has failed {count} times. '
        "The diff approach is not working for this file. "
        "Use <write_to_file> to write the COMPLETE corrected file content instead."
    )


class StreamRepetitionWatchdog:
    """Aborts a stream that keeps emitting the same text."""

    def __init__(self, segment_size: int = 200, max_identical: int = 3, min_segment_chars: int = 20):
        self.segment_size = segment_size
        self.max_identical = max_identical
        self.min_segment_chars = min_segment_chars
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._last_segment = ""
        self._identical = 0
        self._triggered = False
        self.total_chars = 0

    @property
    def triggered(self) -> bool:
        return self._triggered

    def feed(self, chunk: str) -> None:
        if self._triggered or not chunk:
            return
        self._buffer += chunk
        self.total_chars += len(chunk)

        while len(self._buffer) >= self.segment_size:
            segment = self._buffer[: self.segment_size]
            self._buffer = self._buffer[self.segment_size:]
            normalized = " ".join(segment.split())

            if normalized == self._last_segment and len(normalized) > self.min_segment_chars:
                self._identical += 1
                if self._identical >= self.max_identical:
                    self._triggered = True
                    log.warning(
                        "Stream repetition detected",
                        segments=self._identical,
                        total_chars=self.total_chars,
                        preview=normalized[:80],
                    )
                    return
            else:
                self._identical = 1
                self._last_segment = normalized
