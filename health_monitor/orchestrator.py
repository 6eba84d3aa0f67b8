"""Monitoring cycles: probe, track, ledger, govern, publish."""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable, Optional

import structlog

from .alerting.governor import AlertGovernor
from .config import MonitorConfig, TenantConfig
from .credentials import CredentialProvider, StaticCredentialProvider
from .incidents.ledger import IncidentLedger
from .metrics import InMemoryMetrics, MetricsRecorder
from .models import CheckDescriptor, CheckKind, HealthCheckRecord, Incident, ProbeOutcome, StatusRecord
from .notifications.dispatcher import ChannelDispatcher
from .persistence.base import Store
from .persistence.sqlite_store import SqliteStore
from .probes.base import Prober
from .probes.http_probe import HttpProbe
from .scheduler import JobScheduler
from .status.policy import StatusPolicy
from .status.tracker import StatusTracker


logger = structlog.get_logger(__name__)

Listener = Callable[[CheckDescriptor, StatusRecord], Any]

SECONDS_PER_DAY = 86400.0


class MonitorOrchestrator:
    """Runs one cycle per tenant on a fixed interval.

    Probes within a cycle run concurrently; their outcomes are then fed one at
    a time through tracker, ledger and governor under the descriptor's lock.
    """

    def __init__(
        self,
        config: MonitorConfig,
        *,
        store: Store,
        probe: Prober,
        governor: AlertGovernor,
        dispatcher: Optional[ChannelDispatcher] = None,
        tracker: Optional[StatusTracker] = None,
        policy: Optional[StatusPolicy] = None,
        ledger: Optional[IncidentLedger] = None,
        metrics: Optional[MetricsRecorder] = None,
        credentials: Optional[CredentialProvider] = None,
        scheduler: Optional[JobScheduler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.probe = probe
        self.governor = governor
        self.dispatcher = dispatcher
        self.tracker = tracker or StatusTracker(clock=clock)
        self.policy = policy or StatusPolicy(config.status_rules, clock=clock)
        self.ledger = ledger or IncidentLedger(store, self.tracker.status_of, clock=clock)
        self.metrics = metrics
        self.credentials = credentials
        self.scheduler = scheduler
        self._clock = clock

        self._listeners: list[Listener] = []
        self._locks: dict[CheckDescriptor, asyncio.Lock] = {}
        self._last_cycle_at: dict[str, float] = {}
        self._running = False

        self.ledger.bind_locks(self._lock_for)
        self.ledger.add_recovery_listener(self.governor.on_orphan_recovered)
        for tenant in config.tenants:
            descriptors = self.descriptors_for(tenant)
            self.tracker.register_all(descriptors)
            monitored = {d.kind for d in descriptors}
            skipped = [kind.value for kind in CheckKind if kind not in monitored]
            if skipped:
                logger.info("Check kinds not monitored", tenant_id=tenant.id, skipped=skipped)

    # -- accessors -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def descriptors_for(self, tenant: TenantConfig) -> list[CheckDescriptor]:
        return [CheckDescriptor(tenant_id=tenant.id, kind=kind) for kind in tenant.check_targets()]

    def get_status(self, tenant_id: str) -> dict[CheckKind, StatusRecord]:
        return self.tracker.snapshot(tenant_id)

    def get_last_check_time(self, tenant_id: str | None = None) -> float | None:
        return self.tracker.last_check_time(tenant_id)

    def last_cycle_at(self, tenant_id: str) -> float | None:
        return self._last_cycle_at.get(tenant_id)

    def is_healthy(self, tenant_id: str | None = None) -> bool:
        """True iff every selected tenant completed a cycle within twice the interval."""
        tenant_ids = [tenant_id] if tenant_id is not None else [t.id for t in self.config.tenants]
        if not tenant_ids:
            return False
        now = self._clock()
        limit = 2.0 * float(self.config.interval_seconds)
        for tid in tenant_ids:
            last = self._last_cycle_at.get(tid)
            if last is None or now - last > limit:
                return False
        return True

    def status_summary(self) -> dict[str, Any]:
        tenants: dict[str, Any] = {}
        for tenant in self.config.tenants:
            checks: dict[str, Any] = {}
            for kind, record in self.tracker.snapshot(tenant.id).items():
                entry = record.to_dict()
                entry["flapping"] = self.governor.is_flapping(CheckDescriptor(tenant_id=tenant.id, kind=kind))
                checks[kind.value] = entry
            tenants[tenant.id] = {
                "label": tenant.display_label,
                "last_cycle_at": self._last_cycle_at.get(tenant.id),
                "healthy": self.is_healthy(tenant.id),
                "checks": checks,
            }
        return tenants

    # -- listeners -----------------------------------------------------------

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _publish(self, descriptor: CheckDescriptor, record: StatusRecord) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(descriptor, record)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("Status listener failed", descriptor=descriptor.key, error=str(exc))

    # -- cycle ---------------------------------------------------------------

    def _lock_for(self, descriptor: CheckDescriptor) -> asyncio.Lock:
        lock = self._locks.get(descriptor)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[descriptor] = lock
        return lock

    async def _access_token(self, tenant: TenantConfig) -> str | None:
        if not any(target.requires_auth for target in tenant.check_targets().values()):
            return None
        if self.credentials is not None:
            try:
                return await self.credentials.get_access_token(tenant.id)
            except Exception as exc:
                logger.warning("Credential lookup failed, falling back to static token", tenant_id=tenant.id, error=str(exc))
        return tenant.access_token or None

    async def _probe_one(self, tenant: TenantConfig, descriptor: CheckDescriptor, token: str | None) -> ProbeOutcome:
        target = tenant.check_targets().get(descriptor.kind)
        if target is not None and target.requires_auth and not token:
            return ProbeOutcome.down("credential_unavailable", "no access token available", error_code="ENOAUTH")

        timeout = float(self.config.probe_timeout_seconds)
        try:
            return await asyncio.wait_for(
                self.probe.probe(descriptor, timeout_seconds=timeout, access_token=token),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return ProbeOutcome.down(
                "timeout",
                f"probe exceeded {timeout:g}s",
                latency_ms=round(timeout * 1000.0, 3),
                error_code="ETIMEDOUT",
            )

    async def run_cycle(self, tenant_id: str) -> list[tuple[CheckDescriptor, StatusRecord]]:
        tenant = self.config.tenant(tenant_id)
        if tenant is None:
            logger.error("Cycle requested for unknown tenant", tenant_id=tenant_id)
            return []

        descriptors = self.descriptors_for(tenant)
        token = await self._access_token(tenant)
        outcomes = await asyncio.gather(
            *(self._probe_one(tenant, d, token) for d in descriptors),
            return_exceptions=True,
        )

        published: list[tuple[CheckDescriptor, StatusRecord]] = []
        for descriptor, outcome in zip(descriptors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Probe failed outside its contract", descriptor=descriptor.key, error=str(outcome))
                outcome = ProbeOutcome.down("runtime_error", f"{type(outcome).__name__}: {outcome}", error_code=type(outcome).__name__)
            record = await self.process_outcome(descriptor, outcome)
            published.append((descriptor, record))

        self._last_cycle_at[tenant_id] = self._clock()
        logger.info(
            "Cycle complete",
            tenant_id=tenant_id,
            results={d.kind.value: r.status.value for d, r in published},
        )
        return published

    async def process_outcome(self, descriptor: CheckDescriptor, outcome: ProbeOutcome) -> StatusRecord:
        """Feed one outcome through the pipeline. Serialized per descriptor."""
        async with self._lock_for(descriptor):
            outcome = self.policy.evaluate(descriptor, outcome)
            transition = self.tracker.apply(descriptor, outcome)

            try:
                await self.store.insert_health_check(
                    HealthCheckRecord(
                        descriptor=descriptor,
                        status=transition.new,
                        checked_at=transition.at,
                        latency_ms=outcome.latency_ms,
                        http_status=outcome.http_status,
                        error_message=outcome.error_message,
                        error_code=outcome.error_code,
                        error_payload=outcome.error_payload,
                    )
                )
            except Exception as exc:
                logger.error("Failed to persist health check", descriptor=descriptor.key, error=str(exc))

            self._record_check(descriptor, outcome, transition.new)

            incident: Incident | None = None
            details = outcome.error_message or outcome.reason
            if transition.changed:
                logger.info(
                    "Status changed",
                    descriptor=descriptor.key,
                    previous=transition.previous.value,
                    new=transition.new.value,
                    reason=outcome.reason,
                )
                incident = await self.ledger.on_transition(
                    descriptor, transition.previous, transition.new, details, at=transition.at
                )
                if incident is not None and incident.opened:
                    self._record_incident(descriptor)

            self.governor.on_transition(
                descriptor,
                transition.previous,
                transition.new,
                details=details,
                at=transition.at,
                incident=incident,
            )
            self.governor.track_latency(descriptor, outcome.latency_ms, transition.new)

            record = self.tracker.get(descriptor) or StatusRecord()
            await self._publish(descriptor, record)
            return record

    def _record_check(self, descriptor: CheckDescriptor, outcome: ProbeOutcome, status) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.record_check(descriptor.kind, descriptor.tenant_id, status, outcome.latency_ms)
        except Exception as exc:
            logger.error("Metrics recorder failed", descriptor=descriptor.key, error=str(exc))

    def _record_incident(self, descriptor: CheckDescriptor) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.record_incident(descriptor.kind, descriptor.tenant_id)
        except Exception as exc:
            logger.error("Metrics recorder failed", descriptor=descriptor.key, error=str(exc))

    async def _run_cycle_safe(self, tenant_id: str) -> None:
        try:
            await self.run_cycle(tenant_id)
        except Exception as exc:
            logger.error("Cycle failed", tenant_id=tenant_id, error=str(exc))

    async def run_all(self) -> None:
        await asyncio.gather(*(self._run_cycle_safe(t.id) for t in self.config.tenants))

    # -- sweep ---------------------------------------------------------------

    async def daily_sweep(self) -> int:
        cutoff = self._clock() - float(self.config.retention_days) * SECONDS_PER_DAY
        removed = 0
        try:
            removed = await self.store.prune_before(cutoff)
        except Exception as exc:
            logger.error("Failed to prune old records", error=str(exc))
        await self.ledger.resolve_orphans()
        return removed

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Orchestrator already running")
            return
        self._running = True
        logger.info("Starting monitor", tenants=[t.id for t in self.config.tenants])

        await self.run_all()
        await self.ledger.resolve_orphans()

        if self.scheduler is not None:
            interval = float(self.config.interval_seconds)
            for tenant in self.config.tenants:
                self.scheduler.add_interval_job(
                    f"cycle:{tenant.id}",
                    self._run_cycle_safe,
                    interval,
                    args=(tenant.id,),
                    description=f"Health cycle for {tenant.display_label}",
                )
            self.scheduler.add_daily_job(
                "daily-sweep",
                self.daily_sweep,
                hour=self.config.sweep_hour,
                description="Prune old records and reconcile orphan incidents",
            )
            self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        self.governor.shutdown()
        await self.governor.drain()
        self._running = False
        logger.info("Monitor stopped")

    async def aclose(self) -> None:
        await self.stop()
        for resource in (self.probe, self.dispatcher):
            closer = getattr(resource, "aclose", None)
            if closer is not None:
                await closer()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


def build_orchestrator(config: MonitorConfig, *, with_scheduler: bool = True) -> MonitorOrchestrator:
    """Wire the default collaborators for a configuration."""
    store = SqliteStore(config.database_path)
    dispatcher = ChannelDispatcher(config)
    governor = AlertGovernor(config.alerting, dispatcher)
    return MonitorOrchestrator(
        config,
        store=store,
        probe=HttpProbe(config),
        governor=governor,
        dispatcher=dispatcher,
        metrics=InMemoryMetrics(),
        credentials=StaticCredentialProvider(config),
        scheduler=JobScheduler(config.channels.timezone) if with_scheduler else None,
    )
