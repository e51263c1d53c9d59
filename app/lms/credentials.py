"""Bearer-token cache for the LMS platform.

Exchanges the long-lived account credentials for a short-lived access
token via the password grant, keeps it in process memory, and renews it
on expiry or when the gateway reports a 401.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from app.lms.errors import AuthenticationFailed

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth2/token"


@dataclass(frozen=True)
class Credential:
    client_id: str
    client_secret: str = field(repr=False)
    username: str
    password: str = field(repr=False)
    scope: str = "api"

    @classmethod
    def from_settings(cls, lms_settings) -> "Credential":
        return cls(
            client_id=lms_settings.client_id,
            client_secret=lms_settings.client_secret,
            username=lms_settings.username,
            password=lms_settings.password,
            scope=lms_settings.scope,
        )


@dataclass(frozen=True)
class CachedToken:
    token: str = field(repr=False)
    expires_at: float

    def valid_at(self, now: float) -> bool:
        return now < self.expires_at


class CredentialCache:
    """
    Single-flight token cache.

    Concurrent callers that find the cache empty or expired queue on one
    lock; the first performs the exchange and the rest reuse its result.
    """

    def __init__(
        self,
        credential: Credential,
        client: httpx.AsyncClient,
        ttl_fallback: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credential = credential
        self._client = client
        self._ttl_fallback = ttl_fallback
        self._clock = clock
        self._cached: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[CachedToken]:
        return self._cached

    async def get_token(self) -> str:
        cached = self._cached
        if cached and cached.valid_at(self._clock()):
            return cached.token

        async with self._lock:
            # Another caller may have renewed while we waited
            cached = self._cached
            if cached and cached.valid_at(self._clock()):
                return cached.token

            self._cached = None
            self._cached = await self._exchange()
            return self._cached.token

    def invalidate(self, token: Optional[str] = None) -> None:
        """
        Drop the cached token. When `token` is given, only drop it if it is
        still the cached one, so a late 401 does not discard a fresh renewal.
        """
        if self._cached is None:
            return
        if token is not None and self._cached.token != token:
            return
        logger.info("Invalidating cached LMS access token")
        self._cached = None

    async def _exchange(self) -> CachedToken:
        cred = self.credential
        data = {
            "grant_type": "password",
            "client_id": cred.client_id,
            "client_secret": cred.client_secret,
            "scope": cred.scope,
            "username": cred.username,
            "password": cred.password,
        }
        logger.info(f"Requesting LMS access token for client '{cred.client_id}'")
        try:
            resp = await self._client.post(TOKEN_PATH, data=data)
        except httpx.HTTPError as e:
            raise AuthenticationFailed(f"Token request failed: {type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            logger.error(f"Token request rejected with status {resp.status_code}")
            raise AuthenticationFailed(f"Token request rejected ({resp.status_code})", resp.status_code)

        try:
            payload = resp.json()
        except ValueError as e:
            raise AuthenticationFailed("Token endpoint returned a non-JSON body", resp.status_code) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthenticationFailed("No access token received", resp.status_code)

        ttl = self._ttl_from(payload.get("expires_in"))
        logger.info(f"LMS access token acquired (ttl={ttl}s)")
        return CachedToken(token=access_token, expires_at=self._clock() + ttl)

    def _ttl_from(self, expires_in) -> int:
        try:
            ttl = int(expires_in)
        except (TypeError, ValueError):
            return self._ttl_fallback
        return ttl if ttl > 0 else self._ttl_fallback
