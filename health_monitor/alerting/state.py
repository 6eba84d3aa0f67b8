"""Per-descriptor alerting state.

AlertState composes four independent sub-records, one per sub-machine. Each
owns the timer handles it rearms.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional

from ..models import Status
from .timers import TimerHandle


def cancel_timer(handle: Optional[TimerHandle]) -> None:
    if handle is not None:
        handle.cancel()


@dataclass
class FlapState:
    history_size: int = 50
    transitions: Deque[float] = field(default_factory=deque)
    is_flapping: bool = False
    flapping_until: Optional[float] = None
    timer: Optional[TimerHandle] = None

    def __post_init__(self) -> None:
        self.transitions = deque(self.transitions, maxlen=max(1, int(self.history_size)))

    def record(self, at: float, window_seconds: float) -> int:
        self.transitions.append(float(at))
        cutoff = float(at) - float(window_seconds)
        while self.transitions and self.transitions[0] < cutoff:
            self.transitions.popleft()
        return len(self.transitions)

    def reset(self) -> None:
        cancel_timer(self.timer)
        self.timer = None
        self.transitions.clear()
        self.is_flapping = False
        self.flapping_until = None


@dataclass
class EscalationState:
    down_since: Optional[float] = None
    pending_error: Optional[str] = None
    down_alert_sent: bool = False
    escalated: bool = False
    last_down_alert_at: Optional[float] = None
    recovered_at: Optional[float] = None
    short_timer: Optional[TimerHandle] = None
    long_timer: Optional[TimerHandle] = None
    reminder_timer: Optional[TimerHandle] = None

    def cancel_timers(self) -> None:
        cancel_timer(self.short_timer)
        cancel_timer(self.long_timer)
        cancel_timer(self.reminder_timer)
        self.short_timer = None
        self.long_timer = None
        self.reminder_timer = None

    def reset(self) -> None:
        # recovered_at outlives the outage it closed.
        self.cancel_timers()
        self.down_since = None
        self.pending_error = None
        self.down_alert_sent = False
        self.escalated = False


@dataclass
class SlaState:
    window_size: int = 5
    latencies: Deque[float] = field(default_factory=deque)
    last_sla_alert_at: Optional[float] = None

    def __post_init__(self) -> None:
        self.latencies = deque(self.latencies, maxlen=max(1, int(self.window_size)))

    def add(self, latency_ms: float) -> None:
        self.latencies.append(float(latency_ms))

    def mean(self) -> Optional[float]:
        if not self.latencies:
            return None
        return sum(self.latencies) / len(self.latencies)


@dataclass
class WarningState:
    active: bool = False
    alert_sent: bool = False
    last_triggered: Optional[float] = None
    pending_error: Optional[str] = None
    timer: Optional[TimerHandle] = None

    def cancel_timer(self) -> None:
        cancel_timer(self.timer)
        self.timer = None

    def clear(self) -> None:
        self.cancel_timer()
        self.active = False
        self.alert_sent = False
        self.pending_error = None


@dataclass
class AlertState:
    current_status: Status = Status.UNKNOWN
    flap: FlapState = field(default_factory=FlapState)
    escalation: EscalationState = field(default_factory=EscalationState)
    sla: SlaState = field(default_factory=SlaState)
    warning: WarningState = field(default_factory=WarningState)

    def cancel_all_timers(self) -> None:
        cancel_timer(self.flap.timer)
        self.flap.timer = None
        self.escalation.cancel_timers()
        self.warning.cancel_timer()
