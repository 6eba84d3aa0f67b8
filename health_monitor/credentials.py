from __future__ import annotations

from typing import Protocol

from .config import MonitorConfig
from .errors import CredentialError


class CredentialProvider(Protocol):
    async def get_access_token(self, tenant_id: str) -> str: ...


class StaticCredentialProvider:
    """Serves the access tokens written in configuration."""

    def __init__(self, config: MonitorConfig):
        self.config = config

    async def get_access_token(self, tenant_id: str) -> str:
        tenant = self.config.tenant(tenant_id)
        if tenant is None:
            raise CredentialError(f"unknown tenant: {tenant_id}")
        if not tenant.access_token:
            raise CredentialError(f"no access token configured for tenant: {tenant_id}")
        return tenant.access_token
