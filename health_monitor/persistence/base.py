from __future__ import annotations

from typing import Protocol

from ..models import CheckDescriptor, HealthCheckRecord, Incident


class Store(Protocol):
    """Durable storage for health checks and incidents. Every call may raise."""

    async def insert_health_check(self, record: HealthCheckRecord) -> None: ...

    async def insert_incident(self, descriptor: CheckDescriptor, start_time: float, details: str) -> Incident: ...

    async def update_incident_end_time(self, incident_id: str, end_time: float) -> Incident | None: ...

    async def get_open_incident(self, descriptor: CheckDescriptor) -> Incident | None: ...

    async def get_all_open_incidents(self, tenant_id: str | None = None) -> list[Incident]: ...

    async def list_incidents(self, tenant_id: str | None = None, *, limit: int = 50) -> list[Incident]: ...

    async def prune_before(self, before_ts: float) -> int: ...
