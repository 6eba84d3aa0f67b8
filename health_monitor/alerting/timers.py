from __future__ import annotations

import asyncio
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timers(Protocol):
    """Schedules one-shot callbacks. Handles are opaque cancellation tokens."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioTimers:
    """Timers on the running event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, float(delay)), callback)
