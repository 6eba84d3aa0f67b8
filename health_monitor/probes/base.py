from __future__ import annotations

from typing import Protocol

from ..models import CheckDescriptor, ProbeOutcome


class Prober(Protocol):
    """One bounded health check. Must never raise; failures are down outcomes."""

    async def probe(
        self,
        descriptor: CheckDescriptor,
        *,
        timeout_seconds: float,
        access_token: str | None = None,
    ) -> ProbeOutcome: ...
