"""Fan a message out to every channel configured for a tenant."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Optional

import httpx
import structlog

from ..alerting.messages import AlertMessage
from ..config import ChannelDefaults, MonitorConfig, TenantConfig
from ..models import CheckDescriptor
from .email import SmtpMailer, render_email_html
from .webhook import build_webhook_payload, post_webhook


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChannelConfig:
    """Resolved per-tenant channel settings. Not persisted."""
    label: str
    timezone: str = "UTC"
    webhook_url: Optional[str] = None
    webhook_channel: str = "service-alerts"
    webhook_username: str = "Health Monitor"
    mentions: str = ""
    email_recipients: tuple[str, ...] = field(default_factory=tuple)
    dashboard_url: Optional[str] = None


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    ok: bool
    error: Optional[str] = None
    elapsed_ms: Optional[float] = None


def resolve_channel_config(defaults: ChannelDefaults, tenant: TenantConfig | None, tenant_id: str) -> ChannelConfig:
    override = tenant.notifications if tenant is not None else None

    def pick(name: str):
        value = getattr(override, name, None) if override is not None else None
        return value if value is not None else getattr(defaults, name)

    return ChannelConfig(
        label=tenant.display_label if tenant is not None else tenant_id,
        timezone=pick("timezone"),
        webhook_url=pick("webhook_url"),
        webhook_channel=pick("webhook_channel"),
        webhook_username=pick("webhook_username"),
        mentions=pick("mentions") or "",
        email_recipients=tuple(pick("email_recipients") or ()),
        dashboard_url=defaults.dashboard_url,
    )


class ChannelDispatcher:
    """Sends each message to all configured channels concurrently.

    One channel's failure never blocks or fails the others; failures come back
    as ChannelResult entries and are logged here.
    """

    def __init__(
        self,
        config: MonitorConfig,
        *,
        client: httpx.AsyncClient | None = None,
        mailer: SmtpMailer | None = None,
    ):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._mailer = mailer if mailer is not None else SmtpMailer(config.smtp)
        self._timeout = float(config.alerting.dispatch_timeout_seconds)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def channel_config(self, tenant_id: str) -> ChannelConfig:
        return resolve_channel_config(self.config.channels, self.config.tenant(tenant_id), tenant_id)

    async def _run_channel(self, name: str, send: Awaitable[object]) -> ChannelResult:
        started = time.perf_counter()
        try:
            await asyncio.wait_for(send, timeout=self._timeout)
        except asyncio.TimeoutError:
            return ChannelResult(channel=name, ok=False, error=f"timed out after {self._timeout:g}s")
        except Exception as exc:
            return ChannelResult(channel=name, ok=False, error=str(exc) or type(exc).__name__)
        return ChannelResult(channel=name, ok=True, elapsed_ms=(time.perf_counter() - started) * 1000.0)

    async def send(self, descriptor: CheckDescriptor, message: AlertMessage) -> list[ChannelResult]:
        cfg = self.channel_config(descriptor.tenant_id)
        sends: list[tuple[str, Awaitable[object]]] = []

        if cfg.webhook_url:
            payload = build_webhook_payload(
                message,
                channel=cfg.webhook_channel,
                username=cfg.webhook_username,
                label=cfg.label,
                tz_name=cfg.timezone,
                mentions=cfg.mentions,
            )
            sends.append(("webhook", post_webhook(self._http(), cfg.webhook_url, payload, timeout=self._timeout)))

        if cfg.email_recipients and self._mailer.enabled:
            html_body = render_email_html(message, label=cfg.label, tz_name=cfg.timezone, dashboard_url=cfg.dashboard_url)
            text_body = message.render_text(label=cfg.label, tz_name=cfg.timezone)
            sends.append(
                ("email", self._mailer.send_mail(cfg.email_recipients, message.title(cfg.label), html_body, text_body))
            )

        if not sends:
            logger.debug("No notification channels configured", descriptor=descriptor.key, kind=message.kind.value)
            return []

        results = await asyncio.gather(*(self._run_channel(name, coro) for name, coro in sends))
        for result in results:
            if result.ok:
                logger.info("Alert delivered", descriptor=descriptor.key, kind=message.kind.value, channel=result.channel)
            else:
                logger.warning(
                    "alert_dispatch_failed",
                    descriptor=descriptor.key,
                    kind=message.kind.value,
                    channel=result.channel,
                    error=result.error,
                )
        return list(results)
