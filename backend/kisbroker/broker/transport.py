"""
HTTP transport for the KIS Open API.

Owns the aiohttp session and turns every response into either a decoded
payload or a classified BrokerError. It knows nothing about tokens,
quotas or retries; BrokerRestClient layers those on top.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from kisbroker.core.constants import MSG_TRY_AGAIN, MSG_UNAUTHORIZED, RESPONSE_SUCCESS
from kisbroker.core.exceptions import (
    AmbiguousOutcomeError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class KisTransport:
    """Async HTTP session bound to one KIS host."""

    def __init__(
        self,
        base_url: str,
        connect_timeout: float = 5.0,
        read_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=None, connect=connect_timeout, sock_read=read_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self):
        """Open the HTTP session."""
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            logger.info(f"KIS transport connected to {self.base_url}")

    async def close(self):
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
            logger.info("KIS transport closed")

    @property
    def connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def send(
        self,
        method: str,
        path: str,
        *,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        mutating: bool = False,
    ) -> Dict[str, Any]:
        """
        Perform one HTTP exchange.

        Args:
            method: HTTP method
            path: Endpoint path below the host
            headers: Request headers (never logged)
            params: Query parameters
            json_body: JSON request body
            mutating: True for calls that change broker state; failures after
                the request may have reached the broker become AmbiguousOutcomeError

        Returns:
            Decoded JSON payload of a successful response

        Raises:
            TransientError: Safe to retry (connect failure, read failure on a read-only call, 5xx)
            RateLimitedError: Broker refused the call for quota reasons
            UnauthorizedError: Access token rejected
            NotFoundError: HTTP 404
            ValidationError: Broker business rejection or other 4xx
            AmbiguousOutcomeError: Mutating call whose effect is unknown
        """
        if not self._session:
            raise RuntimeError("Transport not connected. Use async context manager.")

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(
                method, url, headers=headers, params=params, json=json_body
            ) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    payload = None
        except (aiohttp.ClientConnectorError, aiohttp.ConnectionTimeoutError) as exc:
            # The request never left this host.
            logger.warning(f"Connection to {path} failed: {exc}")
            raise TransientError(f"Connection failed: {exc}", code="CONNECTION_ERROR") from exc
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            code = "TIMEOUT" if isinstance(exc, asyncio.TimeoutError) else "CONNECTION_LOST"
            if mutating:
                logger.error(f"{method} {path} outcome unknown: {exc!r}")
                raise AmbiguousOutcomeError(
                    f"No complete response from broker for {path}: {exc!r}",
                    details={"transport_error": code},
                ) from exc
            logger.warning(f"{method} {path} failed: {exc!r}")
            raise TransientError(f"Request failed: {exc!r}", code=code) from exc

        return self._unwrap(path, status, payload, mutating)

    def _unwrap(self, path: str, status: int, payload: Any, mutating: bool) -> Dict[str, Any]:
        """Map an HTTP status plus broker envelope to a payload or an error."""
        if isinstance(payload, dict) and "rt_cd" in payload:
            rt_cd = str(payload.get("rt_cd"))
            msg_cd = payload.get("msg_cd") or ""
            message = (payload.get("msg1") or "").strip() or f"broker returned rt_cd={rt_cd}"
            if rt_cd == RESPONSE_SUCCESS:
                return payload
            if msg_cd in MSG_TRY_AGAIN:
                raise RateLimitedError(message, code=msg_cd)
            if msg_cd in MSG_UNAUTHORIZED:
                raise UnauthorizedError(message, code=msg_cd)
            raise ValidationError(message, code=msg_cd or None, details={"rt_cd": rt_cd})

        if status in (401, 403):
            raise UnauthorizedError(self._error_text(payload, status), code=self._error_code(payload))
        if status == 429:
            raise RateLimitedError(self._error_text(payload, status), code=self._error_code(payload))
        if status == 404:
            raise NotFoundError(f"Broker endpoint or resource not found: {path}")
        if status >= 500:
            if mutating:
                raise AmbiguousOutcomeError(
                    f"Broker returned HTTP {status} for {path} without a result",
                    details={"http_status": status},
                )
            raise TransientError(f"Broker returned HTTP {status}", code=f"HTTP_{status}")
        if status >= 400:
            raise ValidationError(self._error_text(payload, status), code=self._error_code(payload))
        if not isinstance(payload, dict):
            if mutating:
                raise AmbiguousOutcomeError(
                    f"Unreadable response body from {path}",
                    details={"http_status": status},
                )
            raise TransientError(f"Unreadable response body from {path}", code="BAD_RESPONSE")
        return payload

    @staticmethod
    def _error_code(payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            return payload.get("error_code") or payload.get("msg_cd")
        return None

    @staticmethod
    def _error_text(payload: Any, status: int) -> str:
        if isinstance(payload, dict):
            text = payload.get("error_description") or payload.get("msg1")
            if text:
                return str(text).strip()
        return f"HTTP {status}"
