"""Shared infrastructure: quotas, retries, token lifecycle, errors."""

from kisbroker.core.exceptions import (
    AmbiguousOutcomeError,
    AuthenticationError,
    BrokerError,
    BusinessErrorKind,
    BusinessRuleError,
    ErrorKind,
    ErrorResponse,
    ExternalApiError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from kisbroker.core.market_hours import KrxMarketClock
from kisbroker.core.rate_limiter import RateLimiter
from kisbroker.core.retry import RetryExecutor, RetryPolicy
from kisbroker.core.token_manager import AccessToken, TokenGrant, TokenManager

__all__ = [
    "AmbiguousOutcomeError",
    "AuthenticationError",
    "BrokerError",
    "BusinessErrorKind",
    "BusinessRuleError",
    "ErrorKind",
    "ErrorResponse",
    "ExternalApiError",
    "InvalidTransitionError",
    "NotFoundError",
    "RateLimitedError",
    "ValidationError",
    "KrxMarketClock",
    "RateLimiter",
    "RetryExecutor",
    "RetryPolicy",
    "AccessToken",
    "TokenGrant",
    "TokenManager",
]
