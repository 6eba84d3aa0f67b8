"""Incident lifecycle: open on entering down, close on leaving it."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import replace
from typing import Callable, Optional

import structlog

from ..models import CheckDescriptor, Incident, Status
from ..persistence.base import Store


logger = structlog.get_logger(__name__)

RecoveryCallback = Callable[[Incident], None]
LockProvider = Callable[[CheckDescriptor], asyncio.Lock]

RECOVERED_STATUSES = (Status.UP, Status.WARNING)


class IncidentLedger:
    """Opens and closes incidents from status transitions.

    At most one incident per descriptor is open at a time. Persistence is the
    only suspension point and its failures never escape: the caller keeps
    running on in-memory state and the next orphan sweep reconciles.
    """

    def __init__(
        self,
        store: Store,
        status_lookup: Callable[[CheckDescriptor], Status],
        *,
        clock: Callable[[], float] = time.time,
        lock_for: Optional[LockProvider] = None,
    ):
        self._store = store
        self._status_lookup = status_lookup
        self._clock = clock
        self._lock_for = lock_for
        self._recovery_callbacks: list[RecoveryCallback] = []

    def add_recovery_listener(self, callback: RecoveryCallback) -> None:
        self._recovery_callbacks.append(callback)

    async def on_transition(
        self,
        descriptor: CheckDescriptor,
        previous: Status,
        new: Status,
        details: str = "",
        at: float | None = None,
    ) -> Incident | None:
        now = self._clock() if at is None else float(at)

        if previous != Status.DOWN and new == Status.DOWN:
            return await self._open(descriptor, now, details)
        if previous == Status.DOWN and new != Status.DOWN:
            return await self._close(descriptor, now)
        return None

    async def _open(self, descriptor: CheckDescriptor, now: float, details: str) -> Incident | None:
        try:
            existing = await self._store.get_open_incident(descriptor)
            if existing is not None:
                logger.info("Reusing open incident", descriptor=descriptor.key, incident_id=existing.id)
                return existing
            incident = await self._store.insert_incident(descriptor, now, details or "")
        except Exception as exc:
            logger.error("Failed to open incident", descriptor=descriptor.key, error=str(exc))
            return None

        logger.info("Opened incident", descriptor=descriptor.key, incident_id=incident.id)
        return replace(incident, opened=True)

    async def _close(self, descriptor: CheckDescriptor, now: float) -> Incident | None:
        try:
            incident = await self._store.get_open_incident(descriptor)
            if incident is None:
                logger.warning("No open incident to close", descriptor=descriptor.key)
                return None
            closed = await self._store.update_incident_end_time(incident.id, now)
        except Exception as exc:
            logger.error("Failed to close incident", descriptor=descriptor.key, error=str(exc))
            return None

        if closed is None:
            closed = incident.closed_at(now)
        logger.info(
            "Closed incident",
            descriptor=descriptor.key,
            incident_id=closed.id,
            duration_ms=closed.duration_ms,
        )
        return closed

    def bind_locks(self, lock_for: LockProvider) -> None:
        """Serialize orphan closes with the owner's per-descriptor pipeline."""
        self._lock_for = lock_for

    def _lock(self, descriptor: CheckDescriptor):
        if self._lock_for is None:
            return contextlib.nullcontext()
        return self._lock_for(descriptor)

    async def resolve_orphans(self, tenant_id: str | None = None) -> list[Incident]:
        """Close open incidents whose live status is known and no longer down."""
        try:
            open_incidents = await self._store.get_all_open_incidents(tenant_id)
        except Exception as exc:
            logger.error("Failed to list open incidents", tenant_id=tenant_id, error=str(exc))
            return []

        resolved: list[Incident] = []
        for incident in open_incidents:
            descriptor = incident.descriptor
            if self._status_lookup(descriptor) not in RECOVERED_STATUSES:
                continue
            async with self._lock(descriptor):
                # A cycle may have taken the descriptor down while we waited.
                live = self._status_lookup(descriptor)
                if live not in RECOVERED_STATUSES:
                    logger.info("Orphan incident is down again, leaving open", descriptor=descriptor.key, incident_id=incident.id)
                    continue
                closed = await self._close_orphan(incident)
                if closed is None:
                    continue

                resolved.append(closed)
                logger.info(
                    "Resolved orphan incident",
                    descriptor=descriptor.key,
                    incident_id=closed.id,
                    live_status=live.value,
                    duration_ms=closed.duration_ms,
                )
                for callback in list(self._recovery_callbacks):
                    try:
                        callback(closed)
                    except Exception as exc:
                        logger.error("Recovery callback failed", incident_id=closed.id, error=str(exc))

        if resolved:
            logger.info("Orphan reconciliation complete", resolved=len(resolved))
        return resolved

    async def _close_orphan(self, incident: Incident) -> Incident | None:
        try:
            closed = await self._store.update_incident_end_time(incident.id, self._clock())
        except Exception as exc:
            logger.error("Failed to resolve orphan incident", incident_id=incident.id, error=str(exc))
            return None
        if closed is None or closed.end_time is None:
            return None
        return closed

    async def recent_incidents(self, tenant_id: str | None = None, limit: int = 50) -> list[Incident]:
        try:
            return await self._store.list_incidents(tenant_id, limit=limit)
        except Exception as exc:
            logger.error("Failed to list incidents", tenant_id=tenant_id, error=str(exc))
            return []
