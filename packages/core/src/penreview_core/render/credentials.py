"""Bearer credential for the rendering service.

Two auth modes:
  - API key: static, never refreshed.
  - GitHub Actions OIDC: short-lived ID token, re-acquired on a fixed
    interval shorter than its lifetime so long poll loops never send an
    expired token.

The holder is shared by every document pipeline. Each authenticated call
awaits ``ensure_fresh()`` and puts the returned token into its own request
headers, so a refresh only affects requests built after it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable

import httpx

from penreview_core.errors import ConfigError, ServiceError

logger = logging.getLogger(__name__)

# ID tokens issued to Actions live for about 5 minutes.
TOKEN_REFRESH_SECONDS = 4 * 60

DEFAULT_AUDIENCE = "pencil.remotestate.com"

TokenProvider = Callable[[], Awaitable[str]]


class ServiceCredential:
    def __init__(
        self,
        provider: TokenProvider | None = None,
        token: str | None = None,
        refresh_interval: float | None = TOKEN_REFRESH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if provider is None and token is None:
            raise ValueError("ServiceCredential needs either a token or a provider")
        self._provider = provider
        self._token = token
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._acquired_at = clock() if token is not None else None
        # Concurrent callers that find the token stale share one refresh.
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0

    @classmethod
    def from_api_key(cls, api_key: str) -> ServiceCredential:
        return cls(token=api_key, refresh_interval=None)

    @property
    def is_stale(self) -> bool:
        if self._token is None or self._acquired_at is None:
            return True
        if self._provider is None or self._refresh_interval is None:
            return False
        return self._clock() - self._acquired_at >= self._refresh_interval

    async def ensure_fresh(self) -> str:
        """Return a usable token, re-acquiring it first if it is stale."""
        if self.is_stale:
            async with self._refresh_lock:
                if self.is_stale:
                    await self._refresh()
        return self._token  # type: ignore[return-value]

    async def _refresh(self) -> None:
        if self._provider is None:
            raise ServiceError("Render service token expired and no token provider is configured")
        logger.info("Refreshing render service token")
        token = await self._provider()
        self._token = token
        self._acquired_at = self._clock()
        self.refresh_count += 1


def actions_id_token_provider(
    audience: str = DEFAULT_AUDIENCE,
    http_client: httpx.AsyncClient | None = None,
) -> TokenProvider:
    """Build a provider that requests a GitHub Actions OIDC token.

    Requires ``permissions: id-token: write`` in the workflow, which makes
    the runner export ACTIONS_ID_TOKEN_REQUEST_URL/TOKEN.
    """
    request_url = os.environ.get("ACTIONS_ID_TOKEN_REQUEST_URL")
    request_token = os.environ.get("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
    if not request_url or not request_token:
        raise ConfigError(
            "No render service API key configured and no GitHub OIDC token available. "
            'Set PENREVIEW_SERVICE_API_KEY or grant the workflow "permissions: id-token: write".'
        )

    async def fetch() -> str:
        client = http_client or httpx.AsyncClient(timeout=30.0)
        try:
            resp = await client.get(
                request_url,
                params={"audience": audience},
                headers={"Authorization": f"bearer {request_token}"},
            )
        except httpx.HTTPError as e:
            raise ServiceError(f"Could not request OIDC token: {e}") from e
        finally:
            if http_client is None:
                await client.aclose()
        if resp.status_code != 200:
            raise ServiceError(f"OIDC token request returned {resp.status_code}", resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ServiceError(f"OIDC token response is not valid JSON: {e}") from e
        value = data.get("value") if isinstance(data, dict) else None
        if not value:
            raise ServiceError("OIDC token response did not contain a token")
        return value

    return fetch


def build_credential(config: dict) -> ServiceCredential:
    """API key when configured, otherwise the Actions OIDC token."""
    api_key = config.get("service_api_key")
    if api_key:
        logger.info("Render service: using API key authentication")
        return ServiceCredential.from_api_key(api_key)
    logger.info("Render service: using GitHub OIDC authentication")
    provider = actions_id_token_provider(config.get("service_audience") or DEFAULT_AUDIENCE)
    refresh = config.get("token_refresh_seconds", TOKEN_REFRESH_SECONDS)
    return ServiceCredential(provider=provider, refresh_interval=refresh)
