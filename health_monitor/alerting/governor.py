"""Per-descriptor alerting decisions.

The governor decides whether, when and what to notify. Decisions are
synchronous: transitions and timer callbacks never interleave for a
descriptor. Sends are spawned as tracked tasks bounded by a semaphore and are
best-effort; the next natural trigger is the only retry.
"""

from __future__ import annotations

import asyncio
import time
from functools import partial
from typing import Any, Callable, Protocol

import structlog

from ..config import AlertingConfig
from ..models import CheckDescriptor, Incident, Status
from .messages import AlertKind, AlertMessage
from .state import AlertState, FlapState, SlaState
from .timers import AsyncioTimers, Timers


logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def send(self, descriptor: CheckDescriptor, message: AlertMessage) -> list[Any]: ...


class AlertGovernor:
    def __init__(
        self,
        config: AlertingConfig,
        notifier: Notifier,
        *,
        timers: Timers | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._notifier = notifier
        self._timers: Timers = timers or AsyncioTimers()
        self._clock = clock
        self._states: dict[CheckDescriptor, AlertState] = {}
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max(1, int(config.max_inflight_dispatches)))

    # -- state ---------------------------------------------------------------

    def _state(self, descriptor: CheckDescriptor) -> AlertState:
        state = self._states.get(descriptor)
        if state is None:
            state = AlertState(
                flap=FlapState(history_size=self.config.flap_history_size),
                sla=SlaState(window_size=self.config.sla_window_size),
            )
            self._states[descriptor] = state
        return state

    def state_for(self, descriptor: CheckDescriptor) -> AlertState | None:
        return self._states.get(descriptor)

    def is_flapping(self, descriptor: CheckDescriptor) -> bool:
        state = self._states.get(descriptor)
        return bool(state and state.flap.is_flapping)

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    # -- dispatch ------------------------------------------------------------

    def _dispatch(self, message: AlertMessage) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("alert_dispatch_failed", descriptor=message.descriptor.key, kind=message.kind.value, error="no running event loop")
            return
        logger.info("Dispatching alert", descriptor=message.descriptor.key, kind=message.kind.value)
        task = loop.create_task(self._send(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, message: AlertMessage) -> None:
        async with self._semaphore:
            try:
                await self._notifier.send(message.descriptor, message)
            except Exception as exc:
                logger.error(
                    "alert_dispatch_failed",
                    descriptor=message.descriptor.key,
                    kind=message.kind.value,
                    error=str(exc),
                )

    def _suppressed(self, descriptor: CheckDescriptor, reason: str, **kw: Any) -> None:
        logger.info("alert_suppressed", descriptor=descriptor.key, reason=reason, **kw)

    def _arm(self, delay: float, callback: Callable[[CheckDescriptor], None], descriptor: CheckDescriptor):
        return self._timers.call_later(max(0.0, float(delay)), partial(self._guarded, callback, descriptor))

    def _guarded(self, callback: Callable[[CheckDescriptor], None], descriptor: CheckDescriptor) -> None:
        try:
            callback(descriptor)
        except Exception as exc:
            logger.error("Timer callback failed", descriptor=descriptor.key, callback=callback.__name__, error=str(exc))

    async def drain(self) -> None:
        """Wait for every in-flight dispatch, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def shutdown(self) -> None:
        for state in self._states.values():
            state.cancel_all_timers()
        logger.info("Alert governor timers cancelled", descriptors=len(self._states))

    # -- transitions ---------------------------------------------------------

    def on_transition(
        self,
        descriptor: CheckDescriptor,
        previous: Status,
        new: Status,
        *,
        details: str | None = None,
        at: float | None = None,
        incident: Incident | None = None,
    ) -> None:
        state = self._state(descriptor)
        now = self._clock() if at is None else float(at)
        state.current_status = new
        if previous == new:
            return
        if previous == Status.DOWN:
            state.escalation.recovered_at = now

        # The first result after startup is not a change worth counting.
        if previous != Status.UNKNOWN:
            entered = self._record_flap(descriptor, state, now)
            if entered:
                state.escalation.cancel_timers()
                state.warning.cancel_timer()
                logger.warning("Flapping detected", descriptor=descriptor.key, transitions=len(state.flap.transitions))
                self._dispatch(
                    AlertMessage(
                        kind=AlertKind.UNSTABLE,
                        descriptor=descriptor,
                        created_at=now,
                        error=details,
                        transitions=len(state.flap.transitions),
                    )
                )
            if state.flap.is_flapping:
                if not entered:
                    self._suppressed(descriptor, "flapping", previous=previous.value, new=new.value)
                self._track_while_flapping(state, new, now, details, incident)
                return

        self._escalation_transition(descriptor, state, previous, new, now, details, incident)
        self._warning_transition(descriptor, state, previous, new, now, details)

    # -- flap governor -------------------------------------------------------

    def _record_flap(self, descriptor: CheckDescriptor, state: AlertState, now: float) -> bool:
        flap = state.flap
        window = float(self.config.flap_window_seconds)
        count = flap.record(now, window)
        entered = False
        if not flap.is_flapping and count > int(self.config.flap_threshold):
            flap.is_flapping = True
            entered = True
        if flap.is_flapping:
            if flap.timer is not None:
                flap.timer.cancel()
            flap.flapping_until = now + window
            flap.timer = self._arm(window, self._on_flap_timer, descriptor)
        return entered

    def _track_while_flapping(
        self,
        state: AlertState,
        new: Status,
        now: float,
        details: str | None,
        incident: Incident | None,
    ) -> None:
        esc = state.escalation
        if new == Status.DOWN:
            if esc.down_since is None:
                esc.down_since = incident.start_time if incident is not None else now
            esc.pending_error = details
        elif not esc.down_alert_sent:
            esc.down_since = None
        state.warning.active = new == Status.WARNING

    def _on_flap_timer(self, descriptor: CheckDescriptor) -> None:
        state = self._states.get(descriptor)
        if state is None:
            return
        state.flap.timer = None
        if not state.flap.is_flapping:
            return
        state.flap.reset()
        logger.info("Flapping ended", descriptor=descriptor.key, status=state.current_status.value)
        self._reconcile_after_flap(descriptor, state)

    def _reconcile_after_flap(self, descriptor: CheckDescriptor, state: AlertState) -> None:
        now = self._clock()
        status = state.current_status
        esc = state.escalation
        if status == Status.DOWN:
            if esc.down_since is None:
                esc.down_since = now
            esc.cancel_timers()
            if esc.down_alert_sent:
                esc.reminder_timer = self._arm(self.config.reminder_interval_seconds, self._on_reminder_timer, descriptor)
            else:
                esc.short_timer = self._arm(self.config.short_downtime_seconds, self._on_short_timer, descriptor)
        else:
            if esc.down_alert_sent:
                self._dispatch(
                    AlertMessage(
                        kind=AlertKind.RECOVERED,
                        descriptor=descriptor,
                        created_at=now,
                        downtime_seconds=(now - esc.down_since) if esc.down_since is not None else None,
                    )
                )
            esc.reset()

        warning = state.warning
        if status == Status.WARNING:
            if not warning.alert_sent:
                warning.cancel_timer()
                warning.active = True
                warning.timer = self._arm(self.config.warning_sustain_seconds, self._on_warning_timer, descriptor)
        else:
            if warning.alert_sent and status == Status.UP:
                self._dispatch(AlertMessage(kind=AlertKind.WARNING_RESOLVED, descriptor=descriptor, created_at=now))
            warning.clear()

    # -- down escalation -----------------------------------------------------

    def _escalation_transition(
        self,
        descriptor: CheckDescriptor,
        state: AlertState,
        previous: Status,
        new: Status,
        now: float,
        details: str | None,
        incident: Incident | None,
    ) -> None:
        esc = state.escalation
        if new == Status.DOWN:
            esc.reset()
            esc.down_since = incident.start_time if incident is not None else now
            esc.pending_error = details
            esc.short_timer = self._arm(self.config.short_downtime_seconds, self._on_short_timer, descriptor)
            return

        if previous != Status.DOWN:
            return

        sent = esc.down_alert_sent
        if sent:
            if incident is not None and incident.duration_ms is not None:
                downtime = incident.duration_ms / 1000.0
            elif esc.down_since is not None:
                downtime = now - esc.down_since
            else:
                downtime = None
            self._dispatch(
                AlertMessage(kind=AlertKind.RECOVERED, descriptor=descriptor, created_at=now, downtime_seconds=downtime)
            )
        else:
            self._suppressed(descriptor, "transient", new=new.value)
        esc.reset()

    def _still_down(self, state: AlertState) -> bool:
        return state.current_status == Status.DOWN and not state.flap.is_flapping

    def _on_short_timer(self, descriptor: CheckDescriptor) -> None:
        state = self._states.get(descriptor)
        if state is None:
            return
        esc = state.escalation
        esc.short_timer = None
        if not self._still_down(state):
            return
        now = self._clock()
        esc.down_alert_sent = True
        esc.last_down_alert_at = now
        self._dispatch(AlertMessage(kind=AlertKind.DOWN, descriptor=descriptor, created_at=now, error=esc.pending_error))

        down_since = esc.down_since if esc.down_since is not None else now
        delay = down_since + float(self.config.long_downtime_seconds) - now
        if esc.long_timer is not None:
            esc.long_timer.cancel()
        esc.long_timer = self._arm(delay, self._on_long_timer, descriptor)

    def _on_long_timer(self, descriptor: CheckDescriptor) -> None:
        state = self._states.get(descriptor)
        if state is None:
            return
        esc = state.escalation
        esc.long_timer = None
        if not self._still_down(state):
            return
        now = self._clock()
        esc.escalated = True
        esc.last_down_alert_at = now
        self._dispatch(
            AlertMessage(
                kind=AlertKind.ESCALATION,
                descriptor=descriptor,
                created_at=now,
                error=esc.pending_error,
                downtime_seconds=(now - esc.down_since) if esc.down_since is not None else None,
            )
        )
        if esc.reminder_timer is not None:
            esc.reminder_timer.cancel()
        esc.reminder_timer = self._arm(self.config.reminder_interval_seconds, self._on_reminder_timer, descriptor)

    def _on_reminder_timer(self, descriptor: CheckDescriptor) -> None:
        state = self._states.get(descriptor)
        if state is None:
            return
        esc = state.escalation
        esc.reminder_timer = None
        if not self._still_down(state):
            return
        now = self._clock()
        esc.last_down_alert_at = now
        self._dispatch(
            AlertMessage(
                kind=AlertKind.REMINDER,
                descriptor=descriptor,
                created_at=now,
                error=esc.pending_error,
                downtime_seconds=(now - esc.down_since) if esc.down_since is not None else None,
            )
        )
        esc.reminder_timer = self._arm(self.config.reminder_interval_seconds, self._on_reminder_timer, descriptor)

    # -- warning sustain -----------------------------------------------------

    def _warning_transition(
        self,
        descriptor: CheckDescriptor,
        state: AlertState,
        previous: Status,
        new: Status,
        now: float,
        details: str | None,
    ) -> None:
        warning = state.warning
        if new == Status.WARNING:
            warning.cancel_timer()
            warning.active = True
            warning.pending_error = details
            warning.timer = self._arm(self.config.warning_sustain_seconds, self._on_warning_timer, descriptor)
            return

        if previous != Status.WARNING:
            return

        if warning.alert_sent and new == Status.UP:
            self._dispatch(AlertMessage(kind=AlertKind.WARNING_RESOLVED, descriptor=descriptor, created_at=now))
        elif warning.alert_sent:
            logger.info("Warning dismissed by down status", descriptor=descriptor.key)
        else:
            self._suppressed(descriptor, "transient", new=new.value, previous=previous.value)
        warning.clear()

    def _on_warning_timer(self, descriptor: CheckDescriptor) -> None:
        state = self._states.get(descriptor)
        if state is None:
            return
        warning = state.warning
        warning.timer = None
        if state.current_status != Status.WARNING or state.flap.is_flapping:
            return
        now = self._clock()
        if warning.last_triggered is not None and now - warning.last_triggered < float(self.config.warning_cooldown_seconds):
            self._suppressed(descriptor, "cooldown", kind=AlertKind.WARNING.value)
            return
        warning.alert_sent = True
        warning.last_triggered = now
        self._dispatch(
            AlertMessage(kind=AlertKind.WARNING, descriptor=descriptor, created_at=now, error=warning.pending_error)
        )

    # -- SLA latency ---------------------------------------------------------

    def track_latency(self, descriptor: CheckDescriptor, latency_ms: float | None, status: Status) -> None:
        threshold = self.config.latency_threshold_for(descriptor.kind)
        if threshold is None or latency_ms is None:
            return
        if status not in (Status.UP, Status.WARNING):
            return

        sla = self._state(descriptor).sla
        sla.add(latency_ms)
        min_samples = min(int(self.config.sla_min_samples), int(self.config.sla_window_size))
        if len(sla.latencies) < min_samples:
            return

        mean = sla.mean()
        if mean is None:
            return
        now = self._clock()
        if mean >= threshold:
            if sla.last_sla_alert_at is not None and now - sla.last_sla_alert_at < float(self.config.sla_cooldown_seconds):
                self._suppressed(descriptor, "cooldown", kind=AlertKind.SLA.value, mean_ms=round(mean, 1))
                return
            sla.last_sla_alert_at = now
            self._dispatch(
                AlertMessage(
                    kind=AlertKind.SLA,
                    descriptor=descriptor,
                    created_at=now,
                    latency_ms=mean,
                    threshold_ms=threshold,
                )
            )
        elif sla.last_sla_alert_at is not None:
            logger.info("Latency back under threshold", descriptor=descriptor.key, mean_ms=round(mean, 1))
            sla.last_sla_alert_at = None

    # -- reconciliation ------------------------------------------------------

    def on_orphan_recovered(self, incident: Incident) -> None:
        """Recovery notice for an incident closed by orphan reconciliation.

        Only outages this process never saw end get a notice, i.e. incidents
        left open by a previous run. When the live recovery was already
        handled here (and only the record failed to close), reconciliation
        fixes the record silently.
        """
        descriptor = incident.descriptor
        state = self._state(descriptor)
        now = self._clock()
        if state.current_status == Status.DOWN:
            self._suppressed(descriptor, "still_down", kind=AlertKind.RECOVERED.value, incident_id=incident.id)
            return
        recovered_at = state.escalation.recovered_at
        if recovered_at is not None and recovered_at >= incident.start_time:
            self._suppressed(descriptor, "already_recovered", kind=AlertKind.RECOVERED.value, incident_id=incident.id)
            return
        if state.flap.is_flapping:
            self._suppressed(descriptor, "flapping", kind=AlertKind.RECOVERED.value, incident_id=incident.id)
            return
        downtime = incident.duration_ms / 1000.0 if incident.duration_ms is not None else None
        state.escalation.reset()
        self._dispatch(
            AlertMessage(kind=AlertKind.RECOVERED, descriptor=descriptor, created_at=now, downtime_seconds=downtime)
        )
