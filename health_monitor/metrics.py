"""In-process metrics for checks and incidents."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Any, Deque, Protocol

from .models import CheckKind, Status


STATUS_GAUGE: dict[Status, float] = {
    Status.UP: 1.0,
    Status.WARNING: 0.5,
    Status.DOWN: 0.0,
}


class MetricsRecorder(Protocol):
    def record_check(self, kind: CheckKind, tenant_id: str, status: Status, latency_ms: float | None) -> None: ...

    def record_incident(self, kind: CheckKind, tenant_id: str) -> None: ...


class InMemoryMetrics:
    """Counters, a status gauge and a bounded latency sample per (kind, tenant)."""

    def __init__(self, *, max_latency_samples: int = 500):
        self._lock = threading.Lock()
        self._max_samples = max(1, int(max_latency_samples))
        self.checks_total: dict[tuple[str, str, str], int] = defaultdict(int)
        self.status_gauge: dict[tuple[str, str], float] = {}
        self.incidents_total: dict[tuple[str, str], int] = defaultdict(int)
        self._latencies: dict[tuple[str, str], Deque[float]] = {}

    def record_check(self, kind: CheckKind, tenant_id: str, status: Status, latency_ms: float | None) -> None:
        key = (kind.value, tenant_id)
        with self._lock:
            self.checks_total[(kind.value, tenant_id, status.value)] += 1
            if status in STATUS_GAUGE:
                self.status_gauge[key] = STATUS_GAUGE[status]
            if latency_ms is not None:
                samples = self._latencies.setdefault(key, deque(maxlen=self._max_samples))
                samples.append(float(latency_ms))

    def record_incident(self, kind: CheckKind, tenant_id: str) -> None:
        with self._lock:
            self.incidents_total[(kind.value, tenant_id)] += 1

    def latency_samples(self, kind: CheckKind, tenant_id: str) -> list[float]:
        with self._lock:
            return list(self._latencies.get((kind.value, tenant_id), ()))

    def summary(self) -> dict[str, Any]:
        with self._lock:
            checks = [
                {"check_kind": k, "tenant_id": t, "status": s, "count": n}
                for (k, t, s), n in sorted(self.checks_total.items())
            ]
            gauges = [
                {"check_kind": k, "tenant_id": t, "value": v}
                for (k, t), v in sorted(self.status_gauge.items())
            ]
            incidents = [
                {"check_kind": k, "tenant_id": t, "count": n}
                for (k, t), n in sorted(self.incidents_total.items())
            ]
            latency = []
            for (k, t), samples in sorted(self._latencies.items()):
                if not samples:
                    continue
                latency.append(
                    {
                        "check_kind": k,
                        "tenant_id": t,
                        "samples": len(samples),
                        "mean_ms": round(sum(samples) / len(samples), 3),
                        "max_ms": round(max(samples), 3),
                    }
                )
        return {"checks": checks, "status": gauges, "incidents": incidents, "latency": latency}
