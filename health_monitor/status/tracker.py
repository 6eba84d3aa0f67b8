"""Current status per descriptor and outcome classification."""

from __future__ import annotations

import asyncio
import ssl
import time
from typing import Callable, Iterable

import httpx

from ..models import CheckDescriptor, CheckKind, ProbeOutcome, Status, StatusRecord, Transition


def classify_http_status(status_code: int, kind: CheckKind | None = None) -> tuple[Status, str]:
    """Map an HTTP status code to (status, reason).

    2xx/3xx are up, 4xx are reachable-but-rejected warnings, 5xx are down.
    The web kind answers 401 on its login page, which counts as up.
    """
    code = int(status_code)
    if code == 401 and kind == CheckKind.WEB:
        return Status.UP, "login_page"
    if code >= 500:
        return Status.DOWN, "http_5xx"
    if code == 429:
        return Status.WARNING, "rate_limited"
    if code == 401:
        return Status.WARNING, "auth_error"
    if code >= 400:
        return Status.WARNING, "http_4xx"
    return Status.UP, "ok"


def classify_exception(exc: BaseException) -> tuple[str, str]:
    """Return (reason, error_code) for a transport-level failure. Always down."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout", "ETIMEDOUT"
    if isinstance(exc, ssl.SSLError) or "ssl" in str(exc).lower() or "certificate" in str(exc).lower():
        return "tls_error", "ETLS"
    if isinstance(exc, httpx.ConnectError):
        msg = str(exc).lower()
        if "name or service not known" in msg or "nodename nor servname" in msg or "getaddrinfo" in msg:
            return "dns_error", "ENOTFOUND"
        return "connect_error", "ECONNREFUSED"
    if isinstance(exc, httpx.RequestError):
        return "network_error", type(exc).__name__
    return "runtime_error", type(exc).__name__


class StatusTracker:
    """Holds exactly one StatusRecord per descriptor.

    apply() is the only mutator. It never raises and has no side effects other
    than overwriting the record.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: dict[CheckDescriptor, StatusRecord] = {}

    def register(self, descriptor: CheckDescriptor) -> StatusRecord:
        record = self._records.get(descriptor)
        if record is None:
            record = StatusRecord(status=Status.UNKNOWN, since=self._clock())
            self._records[descriptor] = record
        return record

    def register_all(self, descriptors: Iterable[CheckDescriptor]) -> None:
        for descriptor in descriptors:
            self.register(descriptor)

    def apply(self, descriptor: CheckDescriptor, outcome: ProbeOutcome) -> Transition:
        current = self.register(descriptor)
        now = self._clock()
        # Clock steps backwards must not make last_checked_at go backwards.
        if current.last_checked_at is not None and now < current.last_checked_at:
            now = current.last_checked_at

        status = outcome.status if isinstance(outcome.status, Status) else Status.DOWN
        since = current.since if current.status == status and current.since is not None else now

        self._records[descriptor] = StatusRecord(
            status=status,
            latency_ms=outcome.latency_ms,
            last_checked_at=now,
            last_error=outcome.error_message,
            http_status=outcome.http_status,
            reason=outcome.reason,
            since=since,
        )
        return Transition(descriptor=descriptor, previous=current.status, new=status, at=now)

    def get(self, descriptor: CheckDescriptor) -> StatusRecord | None:
        return self._records.get(descriptor)

    def status_of(self, descriptor: CheckDescriptor) -> Status:
        record = self._records.get(descriptor)
        return record.status if record is not None else Status.UNKNOWN

    def snapshot(self, tenant_id: str) -> dict[CheckKind, StatusRecord]:
        return {d.kind: r for d, r in self._records.items() if d.tenant_id == tenant_id}

    def descriptors(self, tenant_id: str | None = None) -> list[CheckDescriptor]:
        return [d for d in self._records if tenant_id is None or d.tenant_id == tenant_id]

    def last_check_time(self, tenant_id: str | None = None) -> float | None:
        times = [
            r.last_checked_at
            for d, r in self._records.items()
            if r.last_checked_at is not None and (tenant_id is None or d.tenant_id == tenant_id)
        ]
        return max(times) if times else None
