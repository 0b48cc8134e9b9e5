"""Retry with exponential backoff, and a circuit breaker, for LLM transports.

Only transport-class failures (rate limits, timeouts, resets, 5xx) are
retried.  Streaming calls are retried only while nothing has streamed yet:
once the first chunk arrives, a later failure returns the partial output
instead of discarding it.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from taskloom.config import get_config
from taskloom.exceptions import CircuitOpenError, LLMAPIError, TaskCancelledError
from taskloom.llm import LLMProvider, Message, ToolDefinition, race_abort
from taskloom.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS = (
    "rate_limit",
    "rate limit",
    "429",
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "socket hang up",
    "502",
    "503",
    "504",
    "overloaded",
    "capacity",
    "temporarily unavailable",
    "server error",
    "500",
)
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
MIN_DELAY_SECONDS = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        cfg = get_config().retry
        return cls(
            max_attempts=max(1, cfg.max_attempts),
            base_delay_seconds=cfg.base_delay_seconds,
            max_delay_seconds=cfg.max_delay_seconds,
            multiplier=cfg.multiplier,
            jitter=cfg.jitter,
        )

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Backoff before retry number `attempt` (1-based), jittered."""
        base = min(
            self.base_delay_seconds * (self.multiplier ** max(0, attempt - 1)),
            self.max_delay_seconds,
        )
        offset = base * self.jitter * (rng() * 2 - 1)
        return max(MIN_DELAY_SECONDS, base + offset)


def is_retryable(error: BaseException) -> bool:
    """Whether error is a transient transport failure."""
    if isinstance(error, (TaskCancelledError, CircuitOpenError)):
        return False
    if isinstance(error, LLMAPIError) and error.status_code is not None:
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


class CircuitBreaker:
    """Closed -> open after consecutive failures; half-open trial calls after cooldown."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = cooldown_seconds
        self.half_open_successes = max(1, half_open_successes)
        self._clock = clock
        self.state = self.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    @classmethod
    def from_config(cls, name: str) -> "CircuitBreaker":
        cfg = get_config().retry
        return cls(
            name,
            failure_threshold=cfg.circuit_failure_threshold,
            cooldown_seconds=cfg.circuit_cooldown_seconds,
        )

    def can_execute(self) -> bool:
        if self.state == self.OPEN:
            if self._clock() - self._opened_at >= self.cooldown_seconds:
                self.state = self.HALF_OPEN
                self._successes = 0
                log.info("Circuit half-open", circuit=self.name)
                return True
            return False
        return True

    def ensure_closed(self) -> None:
        if not self.can_execute():
            retry_after = self.cooldown_seconds - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.name, max(0.0, retry_after))

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.half_open_successes:
                self.state = self.CLOSED
                self._failures = 0
                log.info("Circuit closed", circuit=self.name)
            return
        self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == self.HALF_OPEN:
            self.state = self.OPEN
            self._opened_at = self._clock()
            log.warning("Circuit re-opened after failed trial call", circuit=self.name)
            return
        if self.state == self.CLOSED and self._failures >= self.failure_threshold:
            self.state = self.OPEN
            self._opened_at = self._clock()
            log.warning("Circuit opened", circuit=self.name, failures=self._failures)

    def status(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state, "failures": self._failures}


async def _backoff(delay: float, abort_event: asyncio.Event | None, sleep: Callable[[float], Awaitable[Any]]) -> None:
    await race_abort(sleep(delay), abort_event)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    label: str = "LLM call",
    abort_event: asyncio.Event | None = None,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run fn, retrying transient failures with exponential backoff."""
    policy = policy or RetryPolicy.from_config()

    for attempt in range(1, policy.max_attempts + 1):
        if breaker is not None:
            breaker.ensure_closed()
        try:
            result = await fn()
        except TaskCancelledError:
            raise
        except Exception as e:
            if breaker is not None:
                breaker.record_failure()
            if not is_retryable(e) or attempt == policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            log.warning(
                "Retrying after transient failure",
                label=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 2),
                error=str(e),
            )
            await _backoff(delay, abort_event, sleep)
            continue
        if breaker is not None:
            breaker.record_success()
        return result

    raise RuntimeError(f"{label} retry loop exited unexpectedly")


class StreamObserver(Protocol):
    def feed(self, chunk: str) -> None: ...

    @property
    def triggered(self) -> bool: ...


@dataclass
class StreamOutcome:
    """Accumulated result of one streamed model call."""

    text: str
    attempts: int = 1
    interrupted: bool = False
    error: str = ""
    repetition_aborted: bool = False


async def stream_with_retry(
    provider: LLMProvider,
    messages: list[Message],
    *,
    tools: list[ToolDefinition] | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    abort_event: asyncio.Event | None = None,
    policy: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
    on_chunk: Callable[[str], None] | None = None,
    watchdog: StreamObserver | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> StreamOutcome:
    """Stream a completion, retrying transport failures before the first chunk.

    A failure after output started returns the partial text with
    ``interrupted=True``; the caller keeps it as the turn.  Setting
    ``abort_event`` mid-stream raises ``TaskCancelledError`` after the
    current chunk has been passed to ``on_chunk``.
    """
    policy = policy or RetryPolicy.from_config()

    for attempt in range(1, policy.max_attempts + 1):
        if breaker is not None:
            breaker.ensure_closed()
        parts: list[str] = []
        try:
            async for chunk in provider.complete_streaming(
                messages,
                tools=tools,
                temperature=temperature,
                max_tokens=max_tokens,
                abort_event=abort_event,
            ):
                if not chunk:
                    continue
                parts.append(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
                if abort_event is not None and abort_event.is_set():
                    raise TaskCancelledError("aborted while streaming")
                if watchdog is not None:
                    watchdog.feed(chunk)
                    if watchdog.triggered:
                        log.warning("Stream aborted by repetition watchdog", chars=sum(map(len, parts)))
                        if breaker is not None:
                            breaker.record_success()
                        return StreamOutcome(
                            text="".join(parts),
                            attempts=attempt,
                            repetition_aborted=True,
                        )
        except TaskCancelledError:
            raise
        except Exception as e:
            if breaker is not None:
                breaker.record_failure()
            if parts:
                log.warning(
                    "Stream failed after output started; keeping partial output",
                    chars=sum(map(len, parts)),
                    error=str(e),
                )
                return StreamOutcome(
                    text="".join(parts),
                    attempts=attempt,
                    interrupted=True,
                    error=str(e),
                )
            if not is_retryable(e) or attempt == policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            log.warning(
                "Retrying stream after transient failure",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 2),
                error=str(e),
            )
            await _backoff(delay, abort_event, sleep)
            continue

        if breaker is not None:
            breaker.record_success()
        return StreamOutcome(text="".join(parts), attempts=attempt)

    raise RuntimeError("stream retry loop exited unexpectedly")
