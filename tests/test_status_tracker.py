from __future__ import annotations

import asyncio

import httpx
import pytest

from health_monitor.models import CheckDescriptor, CheckKind, ProbeOutcome, Status
from health_monitor.status import StatusTracker, classify_exception, classify_http_status


API = CheckDescriptor(tenant_id="acme", kind=CheckKind.API_READ)


def test_new_descriptor_starts_unknown(clock) -> None:
    tracker = StatusTracker(clock=clock)
    record = tracker.register(API)
    assert record.status == Status.UNKNOWN
    assert record.last_checked_at is None
    assert tracker.status_of(CheckDescriptor("nobody", CheckKind.WEB)) == Status.UNKNOWN


def test_apply_overwrites_record_with_outcome_fields(clock) -> None:
    tracker = StatusTracker(clock=clock)
    outcome = ProbeOutcome(
        status=Status.WARNING,
        latency_ms=321.5,
        http_status=429,
        error_message="HTTP 429",
        reason="rate_limited",
    )

    transition = tracker.apply(API, outcome)
    record = tracker.get(API)

    assert transition.previous == Status.UNKNOWN
    assert transition.new == Status.WARNING
    assert transition.changed
    assert record is not None
    assert record.status == outcome.status
    assert record.latency_ms == outcome.latency_ms
    assert record.http_status == outcome.http_status
    assert record.last_error == outcome.error_message
    assert record.reason == outcome.reason
    assert record.last_checked_at == clock.now


def test_last_checked_at_never_goes_backwards(clock) -> None:
    tracker = StatusTracker(clock=clock)
    tracker.apply(API, ProbeOutcome(status=Status.UP, latency_ms=10.0))
    first = tracker.get(API).last_checked_at

    clock.advance(-30)
    tracker.apply(API, ProbeOutcome(status=Status.UP, latency_ms=11.0))
    assert tracker.get(API).last_checked_at >= first

    clock.advance(60)
    tracker.apply(API, ProbeOutcome(status=Status.UP, latency_ms=12.0))
    assert tracker.get(API).last_checked_at > first


def test_since_is_kept_while_status_unchanged(clock) -> None:
    tracker = StatusTracker(clock=clock)
    tracker.apply(API, ProbeOutcome.down("http_5xx", "HTTP 503"))
    entered = tracker.get(API).since
    clock.advance(60)
    transition = tracker.apply(API, ProbeOutcome.down("http_5xx", "HTTP 503"))
    assert not transition.changed
    assert tracker.get(API).since == entered

    clock.advance(60)
    tracker.apply(API, ProbeOutcome(status=Status.UP))
    assert tracker.get(API).since == clock.now
    assert tracker.get(API).last_error is None


def test_snapshot_and_last_check_time_are_per_tenant(clock) -> None:
    tracker = StatusTracker(clock=clock)
    other = CheckDescriptor(tenant_id="globex", kind=CheckKind.WEB)
    tracker.register_all([API, other])
    tracker.apply(API, ProbeOutcome(status=Status.UP))
    clock.advance(5)
    tracker.apply(other, ProbeOutcome(status=Status.DOWN))

    assert set(tracker.snapshot("acme")) == {CheckKind.API_READ}
    assert tracker.last_check_time("acme") == clock.now - 5
    assert tracker.last_check_time() == clock.now
    assert tracker.descriptors("globex") == [other]


@pytest.mark.parametrize(
    ("code", "kind", "expected"),
    [
        (200, CheckKind.API_READ, Status.UP),
        (204, CheckKind.API_WRITE, Status.UP),
        (302, CheckKind.WEB, Status.UP),
        (401, CheckKind.WEB, Status.UP),
        (401, CheckKind.API_READ, Status.WARNING),
        (403, CheckKind.API_READ, Status.WARNING),
        (429, CheckKind.API_READ, Status.WARNING),
        (500, CheckKind.API_READ, Status.DOWN),
        (503, CheckKind.WEB, Status.DOWN),
    ],
)
def test_classify_http_status(code: int, kind: CheckKind, expected: Status) -> None:
    status, _reason = classify_http_status(code, kind)
    assert status == expected


def test_classify_exception() -> None:
    assert classify_exception(httpx.ConnectTimeout("slow")) == ("timeout", "ETIMEDOUT")
    assert classify_exception(asyncio.TimeoutError()) == ("timeout", "ETIMEDOUT")
    assert classify_exception(httpx.ConnectError("[Errno -2] Name or service not known"))[0] == "dns_error"
    assert classify_exception(httpx.ConnectError("[Errno 111] Connection refused"))[0] == "connect_error"
    assert classify_exception(httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED]"))[0] == "tls_error"
    assert classify_exception(httpx.ReadError("reset"))[0] == "network_error"
    assert classify_exception(RuntimeError("boom")) == ("runtime_error", "RuntimeError")
