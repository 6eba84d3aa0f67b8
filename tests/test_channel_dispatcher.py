from __future__ import annotations

import asyncio
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import httpx
import pytest

from health_monitor.alerting import AlertKind, AlertMessage
from health_monitor.config import ChannelDefaults, ChannelOverride, MonitorConfig, TenantConfig
from health_monitor.errors import DispatchError
from health_monitor.models import CheckDescriptor, CheckKind
from health_monitor.notifications import ChannelDispatcher, resolve_channel_config


RECEIVED: list[dict[str, Any]] = []


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length)
        if self.path == "/hooks/ok":
            RECEIVED.append(json.loads(body.decode("utf-8")))
            status = 200
        else:
            status = 500
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()


@pytest.fixture(scope="module")
def hook_base_url() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


class _FakeMailer:
    def __init__(self, *, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.sent: list[tuple[tuple[str, ...], str]] = []

    @property
    def enabled(self) -> bool:
        return True

    async def send_mail(self, to, subject, html_body, text_body=None) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DispatchError("email", "550 mailbox unavailable")
        self.sent.append((tuple(to), subject))
        return "msg-1"


def _config(webhook_url: str | None, *, timeout: float = 5.0) -> MonitorConfig:
    return MonitorConfig(
        alerting={"dispatch_timeout_seconds": timeout},
        channels=ChannelDefaults(webhook_url=webhook_url, email_recipients=["ops@example.com"], timezone="UTC"),
        tenants=[
            TenantConfig(
                id="acme",
                label="Acme Corp",
                base_url="https://acme.example.com",
                notifications=ChannelOverride(webhook_channel="acme-alerts", timezone="Europe/Moscow"),
            )
        ],
    )


def _message() -> AlertMessage:
    return AlertMessage(
        kind=AlertKind.DOWN,
        descriptor=CheckDescriptor(tenant_id="acme", kind=CheckKind.API_READ),
        created_at=1_700_000_000.0,
        error="HTTP 503 from https://acme.example.com/api/v4/leads",
    )


def test_channel_config_falls_back_to_defaults() -> None:
    cfg = _config("https://hooks.example.com/x")
    resolved = resolve_channel_config(cfg.channels, cfg.tenant("acme"), "acme")
    assert resolved.label == "Acme Corp"
    assert resolved.webhook_channel == "acme-alerts"
    assert resolved.timezone == "Europe/Moscow"
    assert resolved.webhook_url == "https://hooks.example.com/x"
    assert resolved.email_recipients == ("ops@example.com",)

    unknown = resolve_channel_config(cfg.channels, None, "ghost")
    assert unknown.label == "ghost"
    assert unknown.webhook_channel == "service-alerts"


@pytest.mark.asyncio
async def test_webhook_payload_shape(hook_base_url: str) -> None:
    RECEIVED.clear()
    async with httpx.AsyncClient() as client:
        dispatcher = ChannelDispatcher(_config(f"{hook_base_url}/hooks/ok"), client=client, mailer=_FakeMailer())
        results = await dispatcher.send(_message().descriptor, _message())

    assert {r.channel: r.ok for r in results} == {"webhook": True, "email": True}
    assert len(RECEIVED) == 1
    payload = RECEIVED[0]
    assert set(payload) == {"channel", "username", "text", "attachments"}
    assert payload["channel"] == "acme-alerts"
    assert "[Acme Corp]" in payload["text"]
    attachment = payload["attachments"][0]
    assert set(attachment) == {"color", "title", "text", "fields"}
    assert {f["title"] for f in attachment["fields"]} >= {"Tenant", "Check", "Time", "Error"}


@pytest.mark.asyncio
async def test_failed_webhook_does_not_block_email(hook_base_url: str) -> None:
    mailer = _FakeMailer()
    async with httpx.AsyncClient() as client:
        dispatcher = ChannelDispatcher(_config(f"{hook_base_url}/hooks/broken"), client=client, mailer=mailer)
        results = await dispatcher.send(_message().descriptor, _message())

    by_channel = {r.channel: r for r in results}
    assert by_channel["webhook"].ok is False
    assert "HTTP 500" in (by_channel["webhook"].error or "")
    assert by_channel["email"].ok is True
    assert mailer.sent and mailer.sent[0][0] == ("ops@example.com",)


@pytest.mark.asyncio
async def test_slow_or_failing_email_does_not_block_webhook(hook_base_url: str) -> None:
    RECEIVED.clear()
    async with httpx.AsyncClient() as client:
        slow = ChannelDispatcher(
            _config(f"{hook_base_url}/hooks/ok", timeout=0.2), client=client, mailer=_FakeMailer(delay=5.0)
        )
        results = await slow.send(_message().descriptor, _message())
        by_channel = {r.channel: r for r in results}
        assert by_channel["webhook"].ok is True
        assert by_channel["email"].ok is False
        assert "timed out" in (by_channel["email"].error or "")

        failing = ChannelDispatcher(_config(f"{hook_base_url}/hooks/ok"), client=client, mailer=_FakeMailer(fail=True))
        results = await failing.send(_message().descriptor, _message())
        by_channel = {r.channel: r for r in results}
        assert by_channel["webhook"].ok is True
        assert "550" in (by_channel["email"].error or "")

    assert len(RECEIVED) == 2


@pytest.mark.asyncio
async def test_malformed_webhook_target_is_a_channel_failure() -> None:
    dispatcher = ChannelDispatcher(_config("not-a-url"), mailer=_FakeMailer())
    try:
        results = await dispatcher.send(_message().descriptor, _message())
    finally:
        await dispatcher.aclose()
    by_channel = {r.channel: r for r in results}
    assert by_channel["webhook"].ok is False
    assert by_channel["email"].ok is True


@pytest.mark.asyncio
async def test_no_channels_configured_returns_empty() -> None:
    cfg = MonitorConfig(tenants=[TenantConfig(id="acme", base_url="https://acme.example.com")])
    dispatcher = ChannelDispatcher(cfg)
    assert await dispatcher.send(_message().descriptor, _message()) == []
