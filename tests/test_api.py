from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from health_monitor.alerting import AlertGovernor
from health_monitor.api import create_app
from health_monitor.config import MonitorConfig, TenantConfig
from health_monitor.metrics import InMemoryMetrics
from health_monitor.models import ProbeOutcome, Status
from health_monitor.orchestrator import MonitorOrchestrator
from health_monitor.persistence import SqliteStore


@pytest.fixture()
def orchestrator(tmp_path: Path, prober, notifier, timers, clock) -> MonitorOrchestrator:
    config = MonitorConfig(
        interval_seconds=60,
        tenants=[
            TenantConfig(id="acme", label="Acme Corp", base_url="https://acme.example.com", access_token="tok"),
            TenantConfig(id="globex", base_url="https://globex.example.com", access_token="tok"),
        ],
    )
    store = SqliteStore(str(tmp_path / "monitor.db"))
    orch = MonitorOrchestrator(
        config,
        store=store,
        probe=prober,
        governor=AlertGovernor(config.alerting, notifier, timers=timers, clock=clock),
        metrics=InMemoryMetrics(),
        clock=clock,
    )
    yield orch
    store.close()


def test_health_is_503_until_every_tenant_has_cycled(orchestrator, clock) -> None:
    client = TestClient(create_app(orchestrator))

    r = client.get("/health")
    assert r.status_code == 503
    assert r.json()["ok"] is False
    assert r.json()["last_check_time"] is None

    asyncio.run(orchestrator.run_all())
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["last_check_time"] == clock.now
    assert body["interval_seconds"] == 60

    clock.advance(500)
    assert client.get("/health").status_code == 503


def test_status_endpoints(orchestrator, prober) -> None:
    prober.script(
        "acme::api-read",
        ProbeOutcome(status=Status.DOWN, latency_ms=30.0, http_status=502, error_message="HTTP 502", reason="http_5xx"),
    )
    asyncio.run(orchestrator.run_all())
    client = TestClient(create_app(orchestrator))

    all_tenants = client.get("/status").json()["tenants"]
    assert set(all_tenants) == {"acme", "globex"}
    assert all_tenants["acme"]["label"] == "Acme Corp"

    acme = client.get("/status/acme").json()
    assert acme["tenant_id"] == "acme"
    assert acme["checks"]["api-read"]["status"] == "down"
    assert acme["checks"]["api-read"]["flapping"] is False
    assert acme["checks"]["web"]["status"] == "up"

    r = client.get("/status/ghost")
    assert r.status_code == 404
    assert r.json()["detail"] == "tenant_not_found"


def test_incidents_and_metrics(orchestrator, prober) -> None:
    prober.script(
        "globex::web",
        ProbeOutcome(status=Status.DOWN, latency_ms=None, error_message="connection refused", reason="connect_error"),
    )
    asyncio.run(orchestrator.run_all())
    client = TestClient(create_app(orchestrator))

    incidents = client.get("/incidents").json()["incidents"]
    assert [(i["tenant_id"], i["check_kind"], i["end_time"]) for i in incidents] == [("globex", "web", None)]
    assert client.get("/incidents", params={"tenant_id": "acme"}).json() == {"incidents": []}
    assert client.get("/incidents", params={"tenant_id": "ghost"}).status_code == 404
    assert client.get("/incidents", params={"limit": 0}).status_code == 400

    summary = client.get("/metrics/summary").json()
    assert {"check_kind": "web", "tenant_id": "globex", "count": 1} in summary["incidents"]
    gauges = {(g["tenant_id"], g["check_kind"]): g["value"] for g in summary["status"]}
    assert gauges[("globex", "web")] == 0.0
    assert gauges[("acme", "web")] == 1.0
