from __future__ import annotations

import time
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from ..config import CheckTarget, MonitorConfig
from ..models import CheckDescriptor, ProbeOutcome, Status
from ..status.tracker import classify_exception, classify_http_status


logger = structlog.get_logger(__name__)

MAX_ERROR_PAYLOAD_CHARS = 2000


def _safe_url(url: str) -> str:
    """Drop the query string so tokens and filters never reach logs."""
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def _error_payload(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        text = resp.text or ""
        return text[:MAX_ERROR_PAYLOAD_CHARS] if text else None


def build_url(base_url: str, target: CheckTarget) -> str:
    if target.url:
        return target.url
    path = target.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    return base_url.rstrip("/") + path


class HttpProbe:
    """HTTP probe for every check kind, driven by per-tenant CheckTargets."""

    def __init__(self, config: MonitorConfig, *, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True, headers={"User-Agent": "tenant-health-monitor"})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def target_for(self, descriptor: CheckDescriptor) -> CheckTarget | None:
        tenant = self.config.tenant(descriptor.tenant_id)
        if tenant is None:
            return None
        return tenant.check_targets().get(descriptor.kind)

    async def probe(
        self,
        descriptor: CheckDescriptor,
        *,
        timeout_seconds: float,
        access_token: str | None = None,
    ) -> ProbeOutcome:
        try:
            return await self._probe(descriptor, timeout_seconds=timeout_seconds, access_token=access_token)
        except Exception as exc:
            logger.error("Probe raised unexpectedly", descriptor=descriptor.key, error=str(exc))
            return ProbeOutcome.down("runtime_error", f"{type(exc).__name__}: {exc}", error_code=type(exc).__name__)

    async def _probe(
        self,
        descriptor: CheckDescriptor,
        *,
        timeout_seconds: float,
        access_token: str | None,
    ) -> ProbeOutcome:
        tenant = self.config.tenant(descriptor.tenant_id)
        if tenant is None:
            return ProbeOutcome.down("unknown_tenant", f"tenant {descriptor.tenant_id!r} is not configured")
        target = tenant.check_targets().get(descriptor.kind)
        if target is None:
            return ProbeOutcome.down("not_configured", f"no target configured for {descriptor.kind.value}")
        if target.requires_auth and not access_token:
            return ProbeOutcome.down("credential_unavailable", "no access token available", error_code="ENOAUTH")

        url = build_url(tenant.base_url, target)
        headers: dict[str, str] = {}
        if target.requires_auth and access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        started = time.perf_counter()
        try:
            resp = await self._http().request(
                target.method,
                url,
                headers=headers,
                json=target.json_body,
                timeout=timeout_seconds,
            )
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            reason, code = classify_exception(e)
            message = f"{type(e).__name__}: {e}"
            if access_token:
                message = message.replace(access_token, "<redacted>")
            logger.debug("Probe transport failure", descriptor=descriptor.key, url=_safe_url(url), reason=reason)
            return ProbeOutcome.down(reason, message, latency_ms=round(elapsed_ms, 3), error_code=code)

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        status, reason = classify_http_status(resp.status_code, descriptor.kind)
        if status == Status.UP:
            return ProbeOutcome(
                status=status,
                latency_ms=elapsed_ms,
                http_status=resp.status_code,
                reason=reason,
            )
        return ProbeOutcome(
            status=status,
            latency_ms=elapsed_ms,
            http_status=resp.status_code,
            error_code=f"HTTP_{resp.status_code}",
            error_message=f"HTTP {resp.status_code} from {_safe_url(url)}",
            error_payload=_error_payload(resp),
            reason=reason,
        )
