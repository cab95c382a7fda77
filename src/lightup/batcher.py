"""Debounced coalescing of small text fragments into fewer chunk messages.

The batcher is a small state machine driven by a scheduler:

* ``IDLE``: nothing pending, no timer.
* ``ARMED``: fragments pending, one timer scheduled.
* ``CLOSED``: finished or cancelled; further input is ignored.

A timer firing flushes the pending fragments and returns the batcher to
``IDLE``. The scheduler only needs ``call_later(delay, callback)`` returning a
handle with ``cancel()``, which ``asyncio`` event loops provide.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Callable
from typing import Any, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


class BatcherState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    CLOSED = "closed"


class ChunkBatcher:
    def __init__(
        self,
        emit: Callable[[str], None],
        *,
        interval_ms: float = 5.0,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._emit = emit
        self._delay = max(interval_ms, 0.0) / 1000.0
        self._scheduler = scheduler
        self._pending: list[str] = []
        self._timer: TimerHandle | None = None
        self.state = BatcherState.IDLE

    def _scheduler_or_loop(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler

    def push(self, fragment: str) -> None:
        if self.state is BatcherState.CLOSED or not fragment:
            return
        self._pending.append(fragment)
        if self.state is BatcherState.IDLE:
            self._timer = self._scheduler_or_loop().call_later(self._delay, self._on_timer)
            self.state = BatcherState.ARMED

    def _on_timer(self) -> None:
        self._timer = None
        if self.state is BatcherState.ARMED:
            self.flush()

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.state is BatcherState.CLOSED:
            return
        self.state = BatcherState.IDLE
        if not self._pending:
            return
        content = "".join(self._pending)
        self._pending.clear()
        self._emit(content)

    def finish(self) -> None:
        """Flush whatever is pending and stop accepting input."""
        self.flush()
        self.state = BatcherState.CLOSED

    def cancel(self) -> None:
        """Stop the timer and discard pending fragments without emitting."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        self.state = BatcherState.CLOSED

    @property
    def pending(self) -> str:
        return "".join(self._pending)
