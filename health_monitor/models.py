"""Core data types shared by the tracker, ledger, governor and orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import ConfigurationError


class CheckKind(str, Enum):
    API_READ = "api-read"
    API_WRITE = "api-write"
    WEB = "web"
    WEBHOOK_REGISTRY = "webhook-registry"
    PIPELINE = "pipeline"


class Status(str, Enum):
    UNKNOWN = "unknown"
    UP = "up"
    WARNING = "warning"
    DOWN = "down"


CHECK_KIND_LABELS: dict[CheckKind, str] = {
    CheckKind.API_READ: "API (read)",
    CheckKind.API_WRITE: "API (write)",
    CheckKind.WEB: "Web interface",
    CheckKind.WEBHOOK_REGISTRY: "Webhooks",
    CheckKind.PIPELINE: "Digital pipeline",
}


def parse_check_kind(value: Any) -> CheckKind:
    if isinstance(value, CheckKind):
        return value
    try:
        return CheckKind(str(value).strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"Unknown check kind: {value!r}") from exc


@dataclass(frozen=True)
class CheckDescriptor:
    tenant_id: str
    kind: CheckKind

    def __post_init__(self) -> None:
        tenant = str(self.tenant_id or "").strip()
        if not tenant:
            raise ConfigurationError("CheckDescriptor requires a tenant_id")
        object.__setattr__(self, "tenant_id", tenant)
        object.__setattr__(self, "kind", parse_check_kind(self.kind))

    @property
    def key(self) -> str:
        return f"{self.tenant_id}::{self.kind.value}"

    @property
    def label(self) -> str:
        return CHECK_KIND_LABELS.get(self.kind, self.kind.value)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class ProbeOutcome:
    status: Status
    latency_ms: float | None = None
    http_status: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_payload: Any = None
    reason: str = "ok"

    @classmethod
    def down(cls, reason: str, message: str, *, latency_ms: float | None = None, error_code: str | None = None) -> ProbeOutcome:
        return cls(
            status=Status.DOWN,
            latency_ms=latency_ms,
            error_code=error_code,
            error_message=message,
            reason=reason,
        )


@dataclass(frozen=True)
class StatusRecord:
    status: Status = Status.UNKNOWN
    latency_ms: float | None = None
    last_checked_at: float | None = None
    last_error: str | None = None
    http_status: int | None = None
    reason: str | None = None
    since: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "last_checked_at": self.last_checked_at,
            "last_error": self.last_error,
            "http_status": self.http_status,
            "reason": self.reason,
            "since": self.since,
        }


@dataclass(frozen=True)
class Transition:
    descriptor: CheckDescriptor
    previous: Status
    new: Status
    at: float

    @property
    def changed(self) -> bool:
        return self.previous != self.new


@dataclass(frozen=True)
class Incident:
    id: str
    descriptor: CheckDescriptor
    start_time: float
    end_time: float | None = None
    duration_ms: float | None = None
    details: str = ""
    # Set on the instance returned by the ledger when it created the row.
    opened: bool = field(default=False, compare=False)

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def closed_at(self, end_time: float) -> Incident:
        end = max(float(end_time), float(self.start_time))
        return replace(
            self,
            end_time=end,
            duration_ms=round((end - float(self.start_time)) * 1000.0, 3),
            opened=False,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.descriptor.tenant_id,
            "check_kind": self.descriptor.kind.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "details": self.details,
        }


@dataclass(frozen=True)
class HealthCheckRecord:
    descriptor: CheckDescriptor
    status: Status
    checked_at: float
    latency_ms: float | None = None
    http_status: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    error_payload: Any = None
