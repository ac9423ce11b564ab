"""Secret and credential resolution.

Provider credentials are resolved once at startup. The default resolver
reads environment variables (the CLI loads ``.env`` files first); the
managed-identity token provider fetches bearer tokens for cloud backends
that run without an API key.
"""

from __future__ import annotations

import os
import re
import time
from typing import Protocol

import httpx

from shellgate.utils.logging import get_logger

log = get_logger(__name__)

COGNITIVE_SERVICES_RESOURCE = "https://cognitiveservices.azure.com"
_IMDS_ENDPOINT = "http://169.254.169.254/metadata/identity/oauth2/token"


class SecretResolver(Protocol):
    async def resolve(self, name: str) -> str | None:
        """Wert des Secrets ``name`` oder None."""
        ...


def _env_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_").upper()


class EnvSecretResolver:
    """Resolves secret names from environment variables.

    ``azure-openai-key`` is looked up as ``AZURE_OPENAI_KEY`` (and with the
    optional prefix, e.g. ``SHELLGATE_SECRET_AZURE_OPENAI_KEY``, first).
    """

    def __init__(self, prefix: str = "SHELLGATE_SECRET_") -> None:
        self._prefix = prefix

    async def resolve(self, name: str) -> str | None:
        env_name = _env_name(name)
        for candidate in (f"{self._prefix}{env_name}", env_name):
            value = os.environ.get(candidate)
            if value:
                log.debug("secret_resolved", name=name, source=candidate)
                return value
        log.warning("secret_not_found", name=name)
        return None


class ManagedIdentityTokenProvider:
    """Bearer tokens from the platform's managed identity endpoint.

    Uses ``IDENTITY_ENDPOINT``/``IDENTITY_HEADER`` when the hosting platform
    provides them, otherwise the instance metadata service. Tokens are cached
    until five minutes before expiry.
    """

    def __init__(
        self,
        resource: str = COGNITIVE_SERVICES_RESOURCE,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._resource = resource
        self._client = client
        self._token: str | None = None
        self._expires_on = 0.0

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=5.0),
                trust_env=False,
            )
        return self._client

    async def __call__(self) -> str:
        if self._token and time.time() < self._expires_on - 300:
            return self._token

        client = await self._ensure_client()
        identity_endpoint = os.environ.get("IDENTITY_ENDPOINT")
        if identity_endpoint:
            resp = await client.get(
                identity_endpoint,
                params={"api-version": "2019-08-01", "resource": self._resource},
                headers={"X-IDENTITY-HEADER": os.environ.get("IDENTITY_HEADER", "")},
            )
        else:
            resp = await client.get(
                _IMDS_ENDPOINT,
                params={"api-version": "2018-02-01", "resource": self._resource},
                headers={"Metadata": "true"},
            )
        resp.raise_for_status()
        data = resp.json()
        self._token = data["access_token"]
        self._expires_on = float(data.get("expires_on", time.time() + 3600))
        log.info("managed_identity_token_acquired", resource=self._resource)
        return self._token

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
