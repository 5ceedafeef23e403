"""
Access token lifecycle.

The TokenManager owns the single live broker access token. A refresh is
single-flight: concurrent callers that find the token missing or close
to expiry all await the same refresh task, so the broker sees one
issuance request.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, SecretStr

from kisbroker.core.exceptions import BrokerError
from kisbroker.observability.metrics import token_refreshes_total

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenGrant(BaseModel):
    """What the issuance endpoint hands back."""
    value: SecretStr
    token_type: str = "Bearer"
    lifetime_seconds: Optional[int] = None


class AccessToken(BaseModel):
    """A live access token. The value never appears in repr or logs."""
    model_config = ConfigDict(frozen=True)

    value: SecretStr
    token_type: str = "Bearer"
    issued_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        """True while the token stays valid for at least `margin` beyond `now`."""
        return now + margin < self.expires_at

    @property
    def authorization(self) -> str:
        """Value for the authorization header."""
        return f"{self.token_type} {self.value.get_secret_value()}"


class TokenManager:
    """
    Acquires, caches and refreshes the broker access token.

    Usage:
        manager = TokenManager(issuer=auth_api.issue_access_token)
        token = await manager.get_valid_token()
    """

    def __init__(
        self,
        issuer: Callable[[], Awaitable[TokenGrant]],
        lifetime_seconds: int = 28800,
        refresh_margin_seconds: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            issuer: Coroutine that requests a new token from the broker
            lifetime_seconds: Lifetime used when the broker does not advertise one
            refresh_margin_seconds: Minimum remaining validity a returned token must have
            clock: Source of the current UTC time
        """
        self._issuer = issuer
        self._lifetime = lifetime_seconds
        self._margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def current(self) -> Optional[AccessToken]:
        """Cached token, valid or not."""
        return self._token

    async def get_valid_token(self) -> AccessToken:
        """
        Return a token valid for at least the refresh margin.

        Raises:
            AuthenticationError: The broker refused to issue a token
        """
        token = self._token
        if token is not None and token.is_valid(self._clock(), self._margin):
            return token
        return await self._refresh_shared()

    def invalidate(self, stale: Optional[AccessToken] = None) -> None:
        """
        Drop the cached token.

        With `stale` given, the cache is only cleared if it still holds that
        token, so a rejection reported late cannot discard a newer token.
        """
        if stale is None or self._token == stale:
            self._token = None

    async def force_refresh(self, stale: Optional[AccessToken] = None) -> AccessToken:
        """Discard `stale` (or the current token) and return a fresh one."""
        self.invalidate(stale)
        return await self.get_valid_token()

    async def _refresh_shared(self) -> AccessToken:
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._refresh())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        # shield: a cancelled waiter must not cancel the refresh other callers share
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> AccessToken:
        issued_at = self._clock()
        try:
            grant = await self._issuer()
        except BrokerError as exc:
            self._token = None
            token_refreshes_total.labels("failure").inc()
            logger.error(f"Access token refresh failed: {exc.code}")
            raise

        lifetime = grant.lifetime_seconds or self._lifetime
        token = AccessToken(
            value=grant.value,
            token_type=grant.token_type,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=lifetime),
        )
        self._token = token
        token_refreshes_total.labels("success").inc()
        logger.info(f"Access token issued, valid until {token.expires_at.isoformat()}")
        return token
