from __future__ import annotations

import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from health_monitor.config import CheckTarget, MonitorConfig, TenantConfig
from health_monitor.models import CheckDescriptor, CheckKind, Status
from health_monitor.probes import HttpProbe


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _reply(self, status: int, body: str, content_type: str = "application/json") -> None:
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self) -> None:  # noqa: N802
        if self.path.startswith("/api/v4/leads"):
            if self.headers.get("Authorization") == "Bearer good-token":
                self._reply(200, json.dumps({"_embedded": {"leads": []}}))
            else:
                self._reply(401, json.dumps({"title": "Unauthorized"}))
            return
        if self.path == "/":
            self._reply(401, "<html>login</html>", "text/html")
            return
        if self.path == "/limited":
            self._reply(429, json.dumps({"detail": "too many requests"}))
            return
        if self.path == "/broken":
            self._reply(503, "maintenance", "text/plain")
            return
        if self.path == "/slow":
            time.sleep(1.0)
            self._reply(200, "{}")
            return
        self._reply(404, "{}")

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length) or b"{}")
        self._reply(201 if body.get("name") else 400, "{}")


@pytest.fixture(scope="module")
def base_url() -> str:
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


def _config(base_url: str, checks: dict[str, CheckTarget] | None = None) -> MonitorConfig:
    return MonitorConfig(tenants=[TenantConfig(id="acme", base_url=base_url, checks=checks or {})])


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.mark.asyncio
async def test_authenticated_read_is_up(base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        probe = HttpProbe(_config(base_url), client=client)
        outcome = await probe.probe(
            CheckDescriptor("acme", CheckKind.API_READ), timeout_seconds=5.0, access_token="good-token"
        )
    assert outcome.status == Status.UP
    assert outcome.http_status == 200
    assert outcome.latency_ms is not None and outcome.latency_ms >= 0
    assert outcome.error_message is None


@pytest.mark.asyncio
async def test_rejected_token_is_warning_with_payload(base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        probe = HttpProbe(_config(base_url), client=client)
        outcome = await probe.probe(
            CheckDescriptor("acme", CheckKind.API_READ), timeout_seconds=5.0, access_token="stale-token"
        )
    assert outcome.status == Status.WARNING
    assert outcome.reason == "auth_error"
    assert outcome.error_payload == {"title": "Unauthorized"}
    assert "stale-token" not in (outcome.error_message or "")
    # Query string is stripped from the diagnostic.
    assert "limit=1" not in (outcome.error_message or "")


@pytest.mark.asyncio
async def test_web_login_page_counts_as_up(base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        probe = HttpProbe(_config(base_url), client=client)
        outcome = await probe.probe(CheckDescriptor("acme", CheckKind.WEB), timeout_seconds=5.0)
    assert outcome.status == Status.UP
    assert outcome.reason == "login_page"


@pytest.mark.asyncio
async def test_custom_targets_map_status_codes(base_url: str) -> None:
    checks = {
        "webhook-registry": CheckTarget(path="/limited"),
        "pipeline": CheckTarget(path="/broken"),
        "api-write": CheckTarget(path="/leads", method="post", json_body={"name": "probe"}),
    }
    async with httpx.AsyncClient() as client:
        probe = HttpProbe(_config(base_url, checks), client=client)
        limited = await probe.probe(CheckDescriptor("acme", CheckKind.WEBHOOK_REGISTRY), timeout_seconds=5.0)
        broken = await probe.probe(CheckDescriptor("acme", CheckKind.PIPELINE), timeout_seconds=5.0)
        write = await probe.probe(CheckDescriptor("acme", CheckKind.API_WRITE), timeout_seconds=5.0)

    assert (limited.status, limited.reason) == (Status.WARNING, "rate_limited")
    assert (broken.status, broken.reason) == (Status.DOWN, "http_5xx")
    assert broken.error_payload == "maintenance"
    assert write.status == Status.UP
    assert write.http_status == 201


@pytest.mark.asyncio
async def test_timeout_and_refused_connection_are_down(base_url: str) -> None:
    checks = {"web": CheckTarget(path="/slow")}
    async with httpx.AsyncClient() as client:
        slow = await HttpProbe(_config(base_url, checks), client=client).probe(
            CheckDescriptor("acme", CheckKind.WEB), timeout_seconds=0.2
        )
        refused = await HttpProbe(_config(f"http://127.0.0.1:{_free_port()}"), client=client).probe(
            CheckDescriptor("acme", CheckKind.WEB), timeout_seconds=2.0
        )

    assert (slow.status, slow.reason, slow.error_code) == (Status.DOWN, "timeout", "ETIMEDOUT")
    assert refused.status == Status.DOWN
    assert refused.reason == "connect_error"


@pytest.mark.asyncio
async def test_missing_token_or_target_never_raises(base_url: str) -> None:
    probe = HttpProbe(_config(base_url))
    try:
        no_token = await probe.probe(CheckDescriptor("acme", CheckKind.API_READ), timeout_seconds=1.0)
        unconfigured = await probe.probe(CheckDescriptor("acme", CheckKind.PIPELINE), timeout_seconds=1.0)
        unknown = await probe.probe(CheckDescriptor("ghost", CheckKind.WEB), timeout_seconds=1.0)
    finally:
        await probe.aclose()

    assert (no_token.status, no_token.reason) == (Status.DOWN, "credential_unavailable")
    assert (unconfigured.status, unconfigured.reason) == (Status.DOWN, "not_configured")
    assert (unknown.status, unknown.reason) == (Status.DOWN, "unknown_tenant")
