"""Read-only HTTP boundary over a running orchestrator."""

from __future__ import annotations

import time
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .metrics import InMemoryMetrics
from .orchestrator import MonitorOrchestrator


def create_app(orchestrator: MonitorOrchestrator, *, manage_lifecycle: bool = False) -> FastAPI:
    app = FastAPI(title="Tenant Health Monitor", version="0.1.0")
    app.state.orchestrator = orchestrator

    if manage_lifecycle:

        @app.on_event("startup")
        async def _startup() -> None:
            await orchestrator.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            await orchestrator.aclose()

    @app.get("/health")
    async def health() -> JSONResponse:
        healthy = orchestrator.is_healthy()
        body = {
            "ok": healthy,
            "ts": time.time(),
            "last_check_time": orchestrator.get_last_check_time(),
            "interval_seconds": orchestrator.config.interval_seconds,
        }
        return JSONResponse(body, status_code=200 if healthy else 503)

    @app.get("/status")
    async def status_all() -> dict[str, Any]:
        return {"tenants": orchestrator.status_summary()}

    @app.get("/status/{tenant_id}")
    async def status_tenant(tenant_id: str) -> dict[str, Any]:
        summary = orchestrator.status_summary()
        if tenant_id not in summary:
            raise HTTPException(status_code=404, detail="tenant_not_found")
        return {"tenant_id": tenant_id, **summary[tenant_id]}

    @app.get("/incidents")
    async def incidents(tenant_id: Optional[str] = None, limit: int = 50) -> dict[str, Any]:
        if tenant_id is not None and orchestrator.config.tenant(tenant_id) is None:
            raise HTTPException(status_code=404, detail="tenant_not_found")
        if limit < 1 or limit > 1000:
            raise HTTPException(status_code=400, detail="invalid_limit")
        rows = await orchestrator.ledger.recent_incidents(tenant_id, limit=limit)
        return {"incidents": [incident.to_dict() for incident in rows]}

    @app.get("/metrics/summary")
    async def metrics_summary() -> dict[str, Any]:
        metrics = orchestrator.metrics
        if not isinstance(metrics, InMemoryMetrics):
            return {"checks": [], "status": [], "incidents": [], "latency": []}
        return metrics.summary()

    return app
