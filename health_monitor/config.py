"""Configuration management for the health monitor."""

from __future__ import annotations

import os
import re
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .models import CheckKind, parse_check_kind


TENANT_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

DEFAULT_CONFIG_PATH = "config/monitor.yaml"

DEFAULT_LATENCY_THRESHOLDS_MS: dict[str, float] = {
    CheckKind.API_READ.value: 2000.0,
    CheckKind.API_WRITE.value: 2000.0,
    CheckKind.WEB.value: 2000.0,
    CheckKind.WEBHOOK_REGISTRY.value: 2000.0,
}


class CheckTarget(BaseModel):
    """How to probe one check kind for a tenant."""
    path: Optional[str] = Field(default=None, description="Path appended to the tenant base_url")
    url: Optional[str] = Field(default=None, description="Absolute URL, overrides path")
    method: str = Field(default="GET", description="HTTP method")
    requires_auth: bool = Field(default=False, description="Send the tenant bearer token")
    json_body: Optional[Dict[str, Any]] = Field(default=None, description="JSON payload for write probes")

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return str(value or "GET").strip().upper()


DEFAULT_CHECK_TARGETS: dict[CheckKind, CheckTarget] = {
    CheckKind.API_READ: CheckTarget(path="/api/v4/leads?page=1&limit=1", requires_auth=True),
    CheckKind.WEB: CheckTarget(path="/"),
    CheckKind.WEBHOOK_REGISTRY: CheckTarget(path="/api/v4/webhooks", requires_auth=True),
}


class ChannelOverride(BaseModel):
    """Per-tenant notification settings; unset fields fall back to the defaults."""
    webhook_url: Optional[str] = None
    webhook_channel: Optional[str] = None
    webhook_username: Optional[str] = None
    mentions: Optional[str] = None
    email_recipients: Optional[list[str]] = None
    timezone: Optional[str] = None


class ChannelDefaults(BaseModel):
    """Global notification defaults."""
    webhook_url: Optional[str] = Field(default=None, description="Chat webhook URL")
    webhook_channel: str = Field(default="service-alerts", description="Chat channel name")
    webhook_username: str = Field(default="Health Monitor", description="Chat username")
    mentions: str = Field(default="", description="Mentions appended to chat messages")
    email_recipients: list[str] = Field(default_factory=list, description="Default email recipients")
    timezone: str = Field(default="UTC", description="Reporting timezone for timestamps")
    dashboard_url: str = Field(default="http://localhost:5173", description="Link included in emails")


class SmtpConfig(BaseModel):
    """SMTP transport settings."""
    host: Optional[str] = Field(default=None, description="SMTP host; email disabled when unset")
    port: int = Field(default=587, description="SMTP port")
    use_tls: bool = Field(default=True, description="Issue STARTTLS")
    use_ssl: bool = Field(default=False, description="Connect with implicit TLS")
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: str = Field(default="noreply@health-monitor.local", description="Sender address")
    timeout_seconds: float = Field(default=15.0, description="SMTP socket timeout")


class AlertingConfig(BaseModel):
    """Alert governor tuning."""
    short_downtime_seconds: float = Field(default=120.0, description="Debounce before the first DOWN notice")
    long_downtime_seconds: float = Field(default=600.0, description="Total downtime before escalation")
    reminder_interval_seconds: float = Field(default=600.0, description="Repeat interval after escalation")
    flap_window_seconds: float = Field(default=300.0, description="Sliding window for flap detection")
    flap_threshold: int = Field(default=3, description="Status changes allowed inside the window")
    flap_history_size: int = Field(default=50, description="Bound on stored transition timestamps")
    warning_sustain_seconds: float = Field(default=120.0, description="Debounce before a WARNING notice")
    warning_cooldown_seconds: float = Field(default=300.0, description="Minimum gap between WARNING notices")
    sla_window_size: int = Field(default=5, description="Latency ring buffer size")
    sla_min_samples: int = Field(default=5, description="Samples required before evaluating the mean")
    sla_cooldown_seconds: float = Field(default=900.0, description="Minimum gap between SLA notices")
    latency_thresholds_ms: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_LATENCY_THRESHOLDS_MS),
        description="Per-kind SLA warning threshold; kinds without one are not evaluated",
    )
    dispatch_timeout_seconds: float = Field(default=15.0, description="Per-channel send timeout")
    max_inflight_dispatches: int = Field(default=50, description="Bound on concurrent dispatches")

    @field_validator("flap_threshold", "sla_window_size", "sla_min_samples", "max_inflight_dispatches", "flap_history_size")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, int(value))

    @field_validator("latency_thresholds_ms")
    @classmethod
    def _known_kinds(cls, value: Dict[str, float]) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for raw_kind, threshold in (value or {}).items():
            kind = parse_check_kind(raw_kind)
            if threshold is None:
                continue
            out[kind.value] = float(threshold)
        return out

    def latency_threshold_for(self, kind: CheckKind) -> float | None:
        return self.latency_thresholds_ms.get(kind.value)


class StatusRulesConfig(BaseModel):
    """Rules applied to a probe's status before it is recorded."""
    warning_escalation_threshold: int = Field(
        default=3, description="Warnings inside the window that are recorded as down; 0 disables"
    )
    warning_escalation_window_seconds: float = Field(default=900.0, description="Sliding window for repeated warnings")
    recovery_success_threshold: int = Field(
        default=2, description="Consecutive up results required before a down check is recorded as up"
    )

    @field_validator("warning_escalation_threshold")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        return max(0, int(value))

    @field_validator("recovery_success_threshold")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, int(value))


class TenantConfig(BaseModel):
    """One monitored tenant account."""
    id: str
    label: Optional[str] = None
    base_url: str
    access_token: Optional[str] = Field(default=None, description="Static credential used as a fallback")
    checks: Dict[str, CheckTarget] = Field(default_factory=dict)
    notifications: ChannelOverride = Field(default_factory=ChannelOverride)

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        tenant_id = str(value or "").strip()
        if not TENANT_ID_PATTERN.match(tenant_id):
            raise ValueError(f"tenant id {value!r} must match {TENANT_ID_PATTERN.pattern}")
        return tenant_id

    @field_validator("base_url")
    @classmethod
    def _valid_base_url(cls, value: str) -> str:
        base = str(value or "").strip().rstrip("/")
        if not base.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be http(s): {value!r}")
        return base

    @field_validator("checks")
    @classmethod
    def _valid_checks(cls, value: Dict[str, CheckTarget]) -> Dict[str, CheckTarget]:
        return {parse_check_kind(kind).value: target for kind, target in (value or {}).items()}

    @property
    def display_label(self) -> str:
        return self.label or self.id

    def check_targets(self) -> dict[CheckKind, CheckTarget]:
        if not self.checks:
            return dict(DEFAULT_CHECK_TARGETS)
        return {CheckKind(kind): target for kind, target in self.checks.items()}


class MonitorConfig(BaseModel):
    """Main configuration for the health monitor."""

    log_level: str = Field(default="INFO", description="Logging level")
    interval_seconds: float = Field(default=60.0, description="Seconds between cycles per tenant")
    probe_timeout_seconds: float = Field(default=10.0, description="Hard timeout per probe")
    retention_days: float = Field(default=30.0, description="Days of persisted history to keep")
    database_path: str = Field(default="data/health-monitor.db", description="SQLite database file")
    sweep_hour: int = Field(default=3, description="Hour of day (reporting timezone) for the daily sweep")

    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    status_rules: StatusRulesConfig = Field(default_factory=StatusRulesConfig)
    channels: ChannelDefaults = Field(default_factory=ChannelDefaults)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    tenants: list[TenantConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_tenants(self) -> MonitorConfig:
        seen: set[str] = set()
        for tenant in self.tenants:
            if tenant.id in seen:
                raise ValueError(f"duplicate tenant id: {tenant.id}")
            seen.add(tenant.id)
        return self

    def tenant(self, tenant_id: str) -> TenantConfig | None:
        for tenant in self.tenants:
            if tenant.id == tenant_id:
                return tenant
        return None


def _env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(config_data: dict[str, Any]) -> dict[str, Any]:
    top_level = {
        "log_level": os.getenv("LOG_LEVEL"),
        "interval_seconds": os.getenv("CHECK_INTERVAL_SECONDS"),
        "probe_timeout_seconds": os.getenv("PROBE_TIMEOUT_SECONDS"),
        "database_path": os.getenv("MONITOR_DB_PATH"),
    }
    for key, value in top_level.items():
        if value is not None:
            config_data[key] = value

    channels = dict(config_data.get("channels") or {})
    channel_overrides = {
        "webhook_url": os.getenv("WEBHOOK_URL"),
        "webhook_channel": os.getenv("WEBHOOK_CHANNEL"),
        "mentions": os.getenv("WEBHOOK_MENTIONS"),
        "timezone": os.getenv("REPORT_TIMEZONE"),
        "dashboard_url": os.getenv("DASHBOARD_URL"),
    }
    for key, value in channel_overrides.items():
        if value is not None:
            channels[key] = value
    email_to = os.getenv("EMAIL_TO")
    if email_to is not None:
        channels["email_recipients"] = _env_list(email_to)
    config_data["channels"] = channels

    smtp = dict(config_data.get("smtp") or {})
    smtp_overrides = {
        "host": os.getenv("SMTP_HOST"),
        "port": os.getenv("SMTP_PORT"),
        "username": os.getenv("SMTP_USER"),
        "password": os.getenv("SMTP_PASS"),
        "from_address": os.getenv("EMAIL_FROM"),
    }
    for key, value in smtp_overrides.items():
        if value is not None:
            smtp[key] = value
    smtp_secure = os.getenv("SMTP_SECURE")
    if smtp_secure is not None:
        smtp["use_ssl"] = smtp_secure.lower() in ("true", "1", "yes")
    config_data["smtp"] = smtp

    return config_data


def load_config(config_path: Optional[str] = None) -> MonitorConfig:
    """Load configuration from file and environment variables.

    Raises ConfigurationError when the file or the merged values are invalid;
    callers treat that as fatal at startup.
    """
    if config_path is None:
        config_path = os.getenv("MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}

    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {config_path}")

    config_data = _apply_env_overrides(config_data)

    try:
        return MonitorConfig(**config_data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid monitor configuration: {exc}") from exc
