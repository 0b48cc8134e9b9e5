"""Cooperative cancellation primitives.

A ``CancellationToken`` is shared by reference between the scheduler, every
worker loop of a plan and the transports they call.  Firing it is
irreversible: the flag flips, the underlying ``asyncio.Event`` is set (so
in-flight HTTP/tool calls waiting on it abort), and registered callbacks run
exactly once.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from taskloom.exceptions import TaskCancelledError
from taskloom.logging import get_logger

log = get_logger(__name__)

CancelCallback = Callable[[str], None]


class CancellationToken:
    """Irreversible cancel flag with reason and callback fan-out."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""
        self._callbacks: list[CancelCallback] = []
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def signal(self) -> asyncio.Event:
        """Event set when the token fires; pass it to transports as abort signal."""
        return self._event

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the token.  Returns False when it had already fired."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason or "cancelled"
        self._event.set()
        log.info("Cancellation requested", reason=self._reason)

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception as e:
                log.warning("Cancellation callback failed", error=str(e))
        return True

    def on_cancel(self, callback: CancelCallback) -> Callable[[], None]:
        """Register a callback; runs immediately when already cancelled.

        Returns a function that unregisters the callback.
        """
        if self._cancelled:
            try:
                callback(self._reason)
            except Exception as e:
                log.warning("Cancellation callback failed", error=str(e))
            return lambda: None

        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TaskCancelledError(self._reason)

    async def wait(self) -> str:
        """Suspend until the token fires; returns the reason."""
        await self._event.wait()
        return self._reason


class CancellationRegistry:
    """Per-task token lookup owned by a scheduler instance."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def create(self, task_id: str) -> CancellationToken:
        """Create a token for task_id, superseding (and firing) any existing one."""
        existing = self._tokens.get(task_id)
        if existing is not None:
            existing.cancel("superseded")
        token = CancellationToken()
        self._tokens[task_id] = token
        return token

    def register(self, task_id: str, token: CancellationToken) -> None:
        self._tokens[task_id] = token

    def get(self, task_id: str) -> CancellationToken | None:
        return self._tokens.get(task_id)

    def cancel(self, task_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel the token registered for task_id.  Returns False if unknown."""
        token = self._tokens.get(task_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def remove(self, task_id: str) -> None:
        self._tokens.pop(task_id, None)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
