from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Any, Callable

import pytest

from health_monitor.alerting.messages import AlertKind, AlertMessage
from health_monitor.models import CheckDescriptor, ProbeOutcome, Status


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class _ManualHandle:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimers:
    """Timers driven by a FakeClock; advance() fires due callbacks in order."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._heap: list[tuple[float, int, _ManualHandle]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle(self.clock.now + float(delay), callback)
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.clock.now + float(seconds)
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self.clock.now = max(self.clock.now, when)
            handle.callback()
        self.clock.now = target


class RecordingNotifier:
    def __init__(self, *, fail: bool = False):
        self.sent: list[AlertMessage] = []
        self.fail = fail

    async def send(self, descriptor: CheckDescriptor, message: AlertMessage) -> list[Any]:
        if self.fail:
            raise RuntimeError("channel exploded")
        self.sent.append(message)
        return []

    def kinds(self) -> list[AlertKind]:
        return [m.kind for m in self.sent]


class ScriptedProber:
    """Returns queued outcomes per descriptor key; repeats the last one."""

    def __init__(self, default: ProbeOutcome | None = None):
        self.default = default or ProbeOutcome(status=Status.UP, latency_ms=120.0, http_status=200)
        self.scripts: dict[str, list[Any]] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, str | None]] = []

    def script(self, key: str, *outcomes: Any) -> None:
        self.scripts[key] = list(outcomes)

    async def probe(
        self,
        descriptor: CheckDescriptor,
        *,
        timeout_seconds: float,
        access_token: str | None = None,
    ) -> ProbeOutcome:
        self.calls.append((descriptor.key, access_token))
        delay = self.delays.get(descriptor.key)
        if delay:
            await asyncio.sleep(delay)
        queue = self.scripts.get(descriptor.key)
        if queue:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            item = self.default
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def timers(clock: FakeClock) -> ManualTimers:
    return ManualTimers(clock)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


@pytest.fixture()
def prober() -> ScriptedProber:
    return ScriptedProber()
