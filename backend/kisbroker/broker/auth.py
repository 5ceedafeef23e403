"""Credential exchange: access tokens for REST, approval keys for streaming."""

import logging
from typing import Optional

from pydantic import SecretStr

from kisbroker.broker.transport import KisTransport
from kisbroker.config import Settings
from kisbroker.core.constants import (
    APPROVAL_PATH,
    CONTENT_TYPE_JSON,
    HEADER_CONTENT_TYPE,
    TOKEN_PATH,
)
from kisbroker.core.exceptions import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from kisbroker.core.retry import RetryExecutor
from kisbroker.core.token_manager import TokenGrant

logger = logging.getLogger(__name__)


class KisAuthApi:
    """
    Issues broker credentials from the app key and secret.

    Transient failures are retried through the shared RetryExecutor and
    surface as ExternalApiError once exhausted. A refusal by the broker
    surfaces as AuthenticationError and is never retried.
    """

    def __init__(self, settings: Settings, transport: KisTransport, retry: Optional[RetryExecutor] = None):
        self.settings = settings
        self._transport = transport
        self._retry = retry or RetryExecutor()

    async def issue_access_token(self) -> TokenGrant:
        """Request a new REST access token."""
        body = {
            "grant_type": "client_credentials",
            "appkey": self.settings.kis_app_key,
            "appsecret": self.settings.kis_app_secret,
        }
        payload = await self._post("issue_access_token", TOKEN_PATH, body)

        token = payload.get("access_token")
        if not token:
            raise AuthenticationError("Token response did not contain an access token")

        lifetime = payload.get("expires_in")
        return TokenGrant(
            value=token,
            token_type=payload.get("token_type") or "Bearer",
            lifetime_seconds=int(lifetime) if lifetime else None,
        )

    async def issue_approval_key(self) -> SecretStr:
        """Request the approval key used for the realtime handshake."""
        body = {
            "grant_type": "client_credentials",
            "appkey": self.settings.kis_app_key,
            "secretkey": self.settings.kis_app_secret,
        }
        payload = await self._post("issue_approval_key", APPROVAL_PATH, body)

        key = payload.get("approval_key")
        if not key:
            raise AuthenticationError("Approval response did not contain an approval key")
        logger.info("Realtime approval key issued")
        return SecretStr(key)

    async def _post(self, name: str, path: str, body: dict) -> dict:
        async def attempt():
            return await self._transport.send(
                "POST",
                path,
                headers={HEADER_CONTENT_TYPE: CONTENT_TYPE_JSON},
                json_body=body,
            )

        try:
            return await self._retry.execute(attempt, name=name)
        except (ValidationError, NotFoundError) as exc:
            logger.error(f"{name} rejected by broker: {exc.code}")
            raise AuthenticationError(f"Credential request rejected: {exc.message}", code=exc.code) from exc
