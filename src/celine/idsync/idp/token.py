"""OAuth client-credentials token cache.

One cached bearer token per cache instance, shared by every outbound IdP
call. Concurrent callers on a cold or expired cache share a single token
exchange.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx
from cachetools import TLRUCache

from celine.idsync.config import IdpSettings
from celine.idsync.idp.errors import ErrorKind, IdpError, IdpResult

logger = logging.getLogger(__name__)

_TOKEN_KEY = "token_data"


@dataclass(frozen=True)
class CachedToken:
    """OAuth token information."""

    access_token: str
    expires_at: float  # on the cache timer's clock


def _token_ttu(_key: str, token: CachedToken, _now: float) -> float:
    return token.expires_at


class TokenCache:
    """Obtains and caches a client-credentials bearer token."""

    def __init__(
        self,
        settings: IdpSettings,
        http_client: httpx.AsyncClient | None = None,
        timer=time.monotonic,
    ):
        self._settings = settings
        self._http = http_client
        self._timer = timer
        self._cache: TLRUCache[str, CachedToken] = TLRUCache(
            maxsize=1, ttu=_token_ttu, timer=timer
        )
        self._lock = asyncio.Lock()
        self._exchanges = 0

    @property
    def exchanges(self) -> int:
        """Number of token exchanges issued so far."""
        return self._exchanges

    def bind(self, http_client: httpx.AsyncClient) -> None:
        """Use the given HTTP client for token exchanges."""
        self._http = http_client

    def peek(self) -> CachedToken | None:
        """Return the cached token without refreshing it."""
        return self._cache.get(_TOKEN_KEY)

    async def get_token(self) -> IdpResult[str]:
        """Return a valid access token, exchanging credentials if needed."""
        cached = self._cache.get(_TOKEN_KEY)
        if cached is not None:
            return IdpResult.success(cached.access_token)

        async with self._lock:
            # Another caller may have refreshed while we waited.
            cached = self._cache.get(_TOKEN_KEY)
            if cached is not None:
                return IdpResult.success(cached.access_token)

            result = await self._exchange()
            if result.ok:
                self._cache[_TOKEN_KEY] = result.data
                return IdpResult.success(result.data.access_token)
            return IdpResult.failure(result.error)

    async def _exchange(self) -> IdpResult[CachedToken]:
        """Perform the client credentials exchange."""
        if not self._settings.has_client_credentials:
            return IdpResult.failure(
                IdpError(
                    "No client credentials configured (CELINE_IDP_CLIENT_ID / "
                    "CELINE_IDP_CLIENT_SECRET)",
                    kind=ErrorKind.CONFIG,
                )
            )
        if self._http is None:
            return IdpResult.failure(
                IdpError("Token cache has no HTTP client bound", kind=ErrorKind.CONFIG)
            )

        token_url = self._settings.resolved_token_endpoint
        data = {
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "scope": self._settings.scope,
            "grant_type": "client_credentials",
        }

        logger.debug("Requesting client credentials token: %s", self._settings.client_id)
        self._exchanges += 1

        try:
            response = await self._http.post(token_url, data=data)
        except httpx.TimeoutException as e:
            return IdpResult.failure(
                IdpError(f"Token request timed out: {e}", kind=ErrorKind.AUTH)
            )
        except httpx.HTTPError as e:
            return IdpResult.failure(
                IdpError(f"Token request failed: {e}", kind=ErrorKind.AUTH)
            )

        if response.status_code != 200:
            logger.warning(
                "Client credentials exchange rejected status=%s", response.status_code
            )
            return IdpResult.failure(
                IdpError(
                    f"Client credentials authentication failed: {response.text}",
                    kind=ErrorKind.AUTH,
                    status_code=response.status_code,
                )
            )

        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 300))
        except (ValueError, KeyError, TypeError) as e:
            return IdpResult.failure(
                IdpError(f"Malformed token response: {e}", kind=ErrorKind.AUTH)
            )
        if not access_token:
            return IdpResult.failure(
                IdpError("Token response carried no access_token", kind=ErrorKind.AUTH)
            )

        # Short-lived tokens keep at least half their lifetime so they still cache.
        lifetime = max(expires_in - self._settings.token_expiry_margin, expires_in / 2)
        token = CachedToken(
            access_token=access_token,
            expires_at=self._timer() + lifetime,
        )
        logger.info("Authenticated as service client: %s", self._settings.client_id)
        return IdpResult.success(token)
