"""Status rules applied between a probe outcome and the tracker."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque

import structlog

from ..config import StatusRulesConfig
from ..models import CheckDescriptor, ProbeOutcome, Status


logger = structlog.get_logger(__name__)


@dataclass
class _RuleState:
    warning_events: Deque[float] = field(default_factory=deque)
    recovering: bool = False
    up_streak: int = 0


class StatusPolicy:
    """Turns a probe's candidate status into the status that gets recorded.

    Repeated warnings inside the window are recorded as down. A descriptor
    that was down keeps reporting warning until enough consecutive up
    results arrive.
    """

    def __init__(self, config: StatusRulesConfig | None = None, *, clock: Callable[[], float] = time.time):
        self.config = config or StatusRulesConfig()
        self._clock = clock
        self._states: dict[CheckDescriptor, _RuleState] = {}

    def _state(self, descriptor: CheckDescriptor) -> _RuleState:
        state = self._states.get(descriptor)
        if state is None:
            state = _RuleState()
            self._states[descriptor] = state
        return state

    def evaluate(self, descriptor: CheckDescriptor, outcome: ProbeOutcome) -> ProbeOutcome:
        state = self._state(descriptor)

        if outcome.status == Status.DOWN:
            state.warning_events.clear()
            state.up_streak = 0
            state.recovering = True
            return outcome

        if outcome.status == Status.WARNING:
            return self._on_warning(descriptor, state, outcome)

        if outcome.status == Status.UP:
            state.warning_events.clear()
            if not state.recovering:
                return outcome
            state.up_streak += 1
            needed = int(self.config.recovery_success_threshold)
            if state.up_streak < needed:
                return replace(
                    outcome,
                    status=Status.WARNING,
                    reason="recovering",
                    error_message=f"Recovering: {state.up_streak}/{needed} successful checks",
                )
            state.recovering = False
            state.up_streak = 0
            return outcome

        return outcome

    def _on_warning(self, descriptor: CheckDescriptor, state: _RuleState, outcome: ProbeOutcome) -> ProbeOutcome:
        state.up_streak = 0
        threshold = int(self.config.warning_escalation_threshold)
        if threshold <= 0:
            return outcome

        now = self._clock()
        window = float(self.config.warning_escalation_window_seconds)
        events = state.warning_events
        while events and now - events[0] > window:
            events.popleft()
        events.append(now)
        if len(events) < threshold:
            return outcome

        count = len(events)
        events.clear()
        state.recovering = True
        logger.warning(
            "Repeated warnings recorded as down",
            descriptor=descriptor.key,
            warnings=count,
            window_seconds=window,
        )
        detail = outcome.error_message or outcome.reason
        return replace(
            outcome,
            status=Status.DOWN,
            reason="warning_escalation",
            error_message=f"{count} warnings within {window:g}s: {detail}",
        )
