from __future__ import annotations

from typing import Any

import httpx

from ..alerting.messages import AlertMessage
from ..errors import DispatchError


def build_webhook_payload(
    message: AlertMessage,
    *,
    channel: str,
    username: str,
    label: str,
    tz_name: str | None = None,
    mentions: str = "",
) -> dict[str, Any]:
    title = message.title(label)
    return {
        "channel": channel,
        "username": username,
        "text": message.render_text(label=label, tz_name=tz_name, mentions=mentions),
        "attachments": [
            {
                "color": message.color,
                "title": title,
                "text": message.error or "",
                "fields": message.fields(tz_name),
            }
        ],
    }


def _redact(text: str, url: str) -> str:
    return text.replace(url, "<webhook-url>") if url else text


async def post_webhook(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    timeout: float = 15.0,
) -> int:
    """POST the payload; raises DispatchError on a malformed target, transport error or non-2xx."""
    target = str(url or "").strip()
    if not target.startswith(("http://", "https://")):
        raise DispatchError("webhook", "malformed webhook url")
    try:
        resp = await client.post(target, json=payload, timeout=timeout)
    except httpx.HTTPError as e:
        raise DispatchError("webhook", _redact(f"{type(e).__name__}: {e}", target)) from e
    if resp.status_code < 200 or resp.status_code >= 300:
        body = (resp.text or "")[:200]
        raise DispatchError("webhook", f"HTTP {resp.status_code}: {body}")
    return resp.status_code
