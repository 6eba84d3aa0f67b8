"""Alert message types and rendering."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from ..models import CheckDescriptor


logger = structlog.get_logger(__name__)


class AlertKind(str, Enum):
    DOWN = "down"
    ESCALATION = "escalation"
    REMINDER = "reminder"
    RECOVERED = "recovered"
    UNSTABLE = "unstable"
    WARNING = "warning"
    WARNING_RESOLVED = "warning_resolved"
    SLA = "sla"


_COLORS: dict[AlertKind, str] = {
    AlertKind.DOWN: "#d62728",
    AlertKind.ESCALATION: "#8b0000",
    AlertKind.REMINDER: "#d62728",
    AlertKind.RECOVERED: "#2ca02c",
    AlertKind.UNSTABLE: "#ff7f0e",
    AlertKind.WARNING: "#ffbf00",
    AlertKind.WARNING_RESOLVED: "#2ca02c",
    AlertKind.SLA: "#ff7f0e",
}

_ICONS: dict[AlertKind, str] = {
    AlertKind.DOWN: "🔴",
    AlertKind.ESCALATION: "🚨",
    AlertKind.REMINDER: "⏰",
    AlertKind.RECOVERED: "✅",
    AlertKind.UNSTABLE: "⚠️",
    AlertKind.WARNING: "🟡",
    AlertKind.WARNING_RESOLVED: "✅",
    AlertKind.SLA: "🐢",
}


def load_timezone(name: str | None):
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except ZoneInfoNotFoundError:
        logger.warning("Timezone not found, falling back to UTC", tz=cleaned)
        return timezone.utc


def format_downtime(seconds: float | None) -> str:
    total = max(0, int(seconds or 0))
    minutes, secs = divmod(total, 60)
    if minutes:
        return f"{minutes} min {secs} sec"
    return f"{secs} sec"


def format_timestamp(ts: float, tz_name: str | None = None) -> str:
    tz = load_timezone(tz_name)
    return datetime.fromtimestamp(float(ts), tz=tz).strftime("%Y-%m-%d %H:%M:%S %Z")


def _format_ms(value: Any) -> str:
    try:
        if value is None:
            return "n/a"
        return f"{int(round(float(value)))}ms"
    except (TypeError, ValueError):
        return "n/a"


@dataclass(frozen=True)
class AlertMessage:
    """One notification decided by the governor.

    Rendering is deferred to the dispatcher, which knows the tenant's label
    and reporting timezone.
    """

    kind: AlertKind
    descriptor: CheckDescriptor
    created_at: float
    error: str | None = None
    downtime_seconds: float | None = None
    latency_ms: float | None = None
    threshold_ms: float | None = None
    transitions: int | None = None

    @property
    def color(self) -> str:
        return _COLORS[self.kind]

    def title(self, label: str) -> str:
        icon = _ICONS[self.kind]
        service = self.descriptor.label
        if self.kind == AlertKind.DOWN:
            return f"{icon} [{label}] {service} is DOWN"
        if self.kind == AlertKind.ESCALATION:
            return f"{icon} [{label}] {service} still DOWN ({format_downtime(self.downtime_seconds)})"
        if self.kind == AlertKind.REMINDER:
            return f"{icon} [{label}] {service} remains DOWN ({format_downtime(self.downtime_seconds)})"
        if self.kind == AlertKind.RECOVERED:
            return f"{icon} [{label}] {service} recovered (downtime: {format_downtime(self.downtime_seconds)})"
        if self.kind == AlertKind.UNSTABLE:
            return f"{icon} [{label}] {service} is unstable"
        if self.kind == AlertKind.WARNING:
            return f"{icon} [{label}] {service} is degraded"
        if self.kind == AlertKind.WARNING_RESOLVED:
            return f"{icon} [{label}] {service} warning resolved"
        return f"{icon} [{label}] {service} is slow"

    def fields(self, tz_name: str | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = [
            {"short": True, "title": "Tenant", "value": self.descriptor.tenant_id},
            {"short": True, "title": "Check", "value": self.descriptor.kind.value},
            {"short": False, "title": "Time", "value": format_timestamp(self.created_at, tz_name)},
        ]
        if self.error:
            out.append({"short": False, "title": "Error", "value": self.error[:500]})
        if self.downtime_seconds is not None:
            out.append({"short": True, "title": "Downtime", "value": format_downtime(self.downtime_seconds)})
        if self.latency_ms is not None:
            out.append({"short": True, "title": "Mean latency", "value": _format_ms(self.latency_ms)})
        if self.threshold_ms is not None:
            out.append({"short": True, "title": "Threshold", "value": _format_ms(self.threshold_ms)})
        if self.transitions is not None:
            out.append({"short": True, "title": "Status changes", "value": str(self.transitions)})
        return out

    def render_text(self, *, label: str, tz_name: str | None = None, mentions: str = "") -> str:
        lines = [f"{self.title(label)} - {format_timestamp(self.created_at, tz_name)}"]
        if self.kind == AlertKind.UNSTABLE and self.transitions is not None:
            lines.append(f"{self.transitions} status changes inside the flap window; further notices are paused.")
        if self.kind == AlertKind.SLA:
            lines.append(f"Mean latency {_format_ms(self.latency_ms)} >= threshold {_format_ms(self.threshold_ms)}")
        if self.error:
            lines.append(f"Error: {self.error.strip()[:500]}")
        if mentions:
            lines.append(mentions.strip())
        return "\n".join(lines).strip()
