"""Authenticated HTTP gateway to the LMS REST API.

Every remote call in the application goes through `RemoteGateway.call`,
which owns the retry policy in one place:

- 401: invalidate the cached token and retry exactly once
- 429/502/503/504, timeouts and transport errors: retry with
  exponential backoff up to `max_retries` times
- any other non-2xx status: returned as a `RemoteError` value
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from app.lms.credentials import CredentialCache
from app.lms.errors import GatewayUnavailable, ProtocolError, RemoteError

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})

JSON = Union[Dict[str, Any], List[Any]]


class RemoteGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.credentials = credentials
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    async def call(
        self,
        method: str,
        path: str,
        body: Optional[JSON] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Union[JSON, RemoteError]:
        """
        Issue one authenticated call. Returns the decoded JSON body on 2xx,
        otherwise a RemoteError. Raises AuthenticationFailed when no token
        can be obtained and GatewayUnavailable when the transport fails on
        every attempt.
        """
        method = method.upper()
        attempt = 0
        token_refreshed = False

        while True:
            token = await self.credentials.get_token()
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            try:
                resp = await self._client.request(method, path, json=body, params=params, headers=headers)
            except httpx.TimeoutException as e:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.warning(f"{method} {path} timed out, retrying ({attempt}/{self.max_retries})")
                    await self._backoff(attempt)
                    continue
                logger.error(f"{method} {path} timed out after {attempt + 1} attempt(s)")
                return RemoteError("timeout", str(e), path)
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.warning(f"{method} {path} transport error ({type(e).__name__}), retrying ({attempt}/{self.max_retries})")
                    await self._backoff(attempt)
                    continue
                raise GatewayUnavailable(f"{method} {path} failed: {type(e).__name__}: {e}") from e

            if resp.status_code == 401 and not token_refreshed:
                token_refreshed = True
                logger.info(f"{method} {path} returned 401, renewing token and retrying once")
                self.credentials.invalidate(token)
                continue

            if resp.status_code in TRANSIENT_STATUSES and attempt < self.max_retries:
                attempt += 1
                logger.warning(f"{method} {path} returned {resp.status_code}, retrying ({attempt}/{self.max_retries})")
                await self._backoff(attempt)
                continue

            if not resp.is_success:
                logger.info(f"{method} {path} -> {resp.status_code}")
                return RemoteError(resp.status_code, resp.text, path)

            return self._decode(resp, path)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Union[JSON, RemoteError]:
        return await self.call("GET", path, params=params)

    async def post(self, path: str, body: Optional[JSON] = None) -> Union[JSON, RemoteError]:
        return await self.call("POST", path, body=body)

    async def delete(self, path: str, body: Optional[JSON] = None) -> Union[JSON, RemoteError]:
        return await self.call("DELETE", path, body=body)

    async def list_items(self, path: str, params: Optional[Dict[str, Any]] = None) -> Union[List[Dict[str, Any]], RemoteError]:
        """GET a collection and unwrap the `{data: {items: [...]}}` envelope."""
        result = await self.get(path, params=params)
        if isinstance(result, RemoteError):
            return result
        data = result.get("data") if isinstance(result, dict) else None
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        if not isinstance(data, dict):
            return []
        items = data.get("items") or []
        return [item for item in items if isinstance(item, dict)]

    async def _backoff(self, attempt: int) -> None:
        if self.retry_backoff > 0:
            await self._sleep(self.retry_backoff * (2 ** (attempt - 1)))

    @staticmethod
    def _decode(resp: httpx.Response, path: str) -> Union[JSON, RemoteError]:
        if not resp.content or not resp.content.strip():
            return {}
        try:
            return resp.json()
        except ValueError:
            logger.error(f"Non-JSON success body from {path}")
            return ProtocolError(resp.text, path)
