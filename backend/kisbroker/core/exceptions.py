"""
Error taxonomy for the broker integration layer.

Every error that crosses a component boundary is a BrokerError carrying
a stable machine-readable kind and code plus a human message. Raw
transport exceptions (aiohttp, asyncio timeouts) are wrapped before they
leave the REST client.

TransientError and UnauthorizedError are internal classifications used
by the retry executor; callers of the REST client never see them.
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorKind(str, enum.Enum):
    """Machine-readable error kinds."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    NOT_FOUND = "RESOURCE_NOT_FOUND"
    AMBIGUOUS_OUTCOME = "AMBIGUOUS_OUTCOME"
    BUSINESS_ERROR = "BUSINESS_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class BusinessErrorKind(str, enum.Enum):
    """Pre-submission rule violations."""
    INVALID_QUANTITY = "INVALID_QUANTITY"
    QUANTITY_EXCEEDED = "QUANTITY_EXCEEDED"
    MARKET_CLOSED = "MARKET_CLOSED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ORDER_ERROR = "ORDER_ERROR"


class FieldError(BaseModel):
    """A single rejected field."""
    field: str
    rejected_value: Any = None
    message: str


class ErrorResponse(BaseModel):
    """Uniform error payload handed to callers and the audit layer."""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: int
    error: str
    error_code: str
    message: str
    validation_errors: list[FieldError] = Field(default_factory=list)


class BrokerError(Exception):
    """Base class for every classified failure."""

    kind: ErrorKind = ErrorKind.EXTERNAL_API_ERROR
    status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind.value
        self.details = details or {}

    def to_response(self) -> ErrorResponse:
        """Convert to the uniform error payload."""
        errors = [FieldError(**e) for e in self.details.get("validation_errors", [])]
        return ErrorResponse(
            status=self.status,
            error=self.kind.value,
            error_code=self.code,
            message=self.message,
            validation_errors=errors,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.code}: {self.message}>"


class ValidationError(BrokerError):
    """Malformed or out-of-policy request, or a broker business rejection. Never retried."""
    kind = ErrorKind.VALIDATION_ERROR
    status = 400


class AuthenticationError(BrokerError):
    """Token issuance failed, or the broker still rejects a freshly issued token."""
    kind = ErrorKind.AUTHENTICATION_ERROR
    status = 401


class RateLimitedError(BrokerError):
    """Broker reported a quota breach. Retried internally, not expected to surface."""
    kind = ErrorKind.RATE_LIMITED
    status = 429


class ExternalApiError(BrokerError):
    """Network or broker-side failure after retries were exhausted. Retryable by the caller."""
    kind = ErrorKind.EXTERNAL_API_ERROR
    status = 502


class NotFoundError(BrokerError):
    """Requested resource does not exist."""
    kind = ErrorKind.NOT_FOUND
    status = 404

    @classmethod
    def resource(cls, resource_name: str, field_name: str, field_value: Any) -> "NotFoundError":
        return cls(f"{resource_name} not found with {field_name} : '{field_value}'")


class AmbiguousOutcomeError(BrokerError):
    """A mutating call whose result is unknown. Must be reconciled by a status query."""
    kind = ErrorKind.AMBIGUOUS_OUTCOME
    status = 504


class InvalidTransitionError(BrokerError):
    """Requested order state change is not allowed from the current state."""
    kind = ErrorKind.INVALID_TRANSITION
    status = 409


class BusinessRuleError(BrokerError):
    """Local pre-submission rule violation (funds, quantity, market hours)."""
    kind = ErrorKind.BUSINESS_ERROR
    status = 400

    def __init__(self, message: str, business_kind: BusinessErrorKind, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=business_kind.value, details=details)
        self.business_kind = business_kind

    @classmethod
    def invalid_quantity(cls, quantity: int) -> "BusinessRuleError":
        return cls(
            f"Order quantity must be positive, got {quantity}.",
            BusinessErrorKind.INVALID_QUANTITY,
            {"quantity": quantity},
        )

    @classmethod
    def quantity_exceeded(cls, max_quantity: int) -> "BusinessRuleError":
        return cls(
            f"Order quantity exceeds the maximum allowed quantity ({max_quantity}).",
            BusinessErrorKind.QUANTITY_EXCEEDED,
            {"max_quantity": max_quantity},
        )

    @classmethod
    def market_closed(cls) -> "BusinessRuleError":
        return cls("The market is not open for trading.", BusinessErrorKind.MARKET_CLOSED)

    @classmethod
    def insufficient_funds(cls, required: Decimal, actual: Decimal) -> "BusinessRuleError":
        return cls(
            f"Insufficient account balance. Required: {required:.2f}, available: {actual:.2f}",
            BusinessErrorKind.INSUFFICIENT_FUNDS,
            {"required": str(required), "available": str(actual)},
        )

    @classmethod
    def insufficient_position(cls, required: int, actual: int) -> "BusinessRuleError":
        return cls(
            f"Insufficient position to sell. Required: {required}, available: {actual}",
            BusinessErrorKind.INSUFFICIENT_FUNDS,
            {"required": required, "available": actual},
        )


# ============================================================================
# Internal classifications (consumed by RetryExecutor)
# ============================================================================

class TransientError(BrokerError):
    """Timeout, connection failure, 5xx or an explicit broker 'try again'."""
    kind = ErrorKind.EXTERNAL_API_ERROR
    status = 503


class UnauthorizedError(BrokerError):
    """The broker rejected the access token presented with a request."""
    kind = ErrorKind.AUTHENTICATION_ERROR
    status = 401
