"""
Bounded retry for single outbound broker calls.

Only classified-transient failures are retried. Validation errors,
business rejections, not-found and ambiguous outcomes propagate on the
first occurrence. An unauthorized response triggers exactly one token
refresh through the caller-supplied hook before the call is repeated.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp
from aiohttp_retry import ExponentialRetry

from kisbroker.core.exceptions import (
    AuthenticationError,
    BrokerError,
    ExternalApiError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from kisbroker.observability.metrics import broker_retries_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Attempt ceiling and delay schedule.

    Backed by aiohttp_retry's ExponentialRetry; a factor of 1.0 gives a
    fixed delay between attempts.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 1.0,
        backoff_factor: float = 1.0,
        max_delay: float = 10.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.options = ExponentialRetry(
            attempts=max_attempts,
            start_timeout=delay,
            max_timeout=max_delay,
            factor=backoff_factor,
        )

    @property
    def max_attempts(self) -> int:
        return self.options.attempts

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given 1-based attempt failed."""
        return self.options.get_timeout(attempt - 1)


def classify_transport_error(exc: BaseException) -> Optional[TransientError]:
    """Wrap raw transport failures that are safe to retry; None for anything else."""
    if isinstance(exc, asyncio.TimeoutError):
        return TransientError("Request timed out", code="TIMEOUT")
    if isinstance(exc, aiohttp.ClientConnectionError):
        return TransientError(f"Connection failed: {exc}", code="CONNECTION_ERROR")
    return None


class RetryExecutor:
    """Runs an operation with bounded retries on transient failures."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "broker_call",
        on_unauthorized: Optional[Callable[[UnauthorizedError], Awaitable[None]]] = None,
    ) -> T:
        """
        Run `operation`, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            name: Operation name for logs and metrics
            on_unauthorized: Hook that discards the rejected token; called on every
                rejection, but the call is repeated after at most one of them

        Returns:
            The operation's result

        Raises:
            AuthenticationError: Token rejected again after one refresh
            ExternalApiError: Transient failures exhausted every attempt
            BrokerError: Any non-transient failure, unchanged
        """
        max_attempts = self.policy.max_attempts
        refreshed = False
        last_error: Optional[BrokerError] = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except UnauthorizedError as exc:
                if refreshed or on_unauthorized is None or attempt == max_attempts:
                    if on_unauthorized is not None:
                        await on_unauthorized(exc)
                    raise AuthenticationError(
                        f"Broker rejected the access token: {exc.message}",
                        code=exc.code,
                    ) from exc
                refreshed = True
                broker_retries_total.labels(name, "unauthorized").inc()
                logger.warning(
                    f"{name}: access token rejected, refreshing before retry",
                    extra={"operation": name, "attempt": attempt},
                )
                await on_unauthorized(exc)
                last_error = exc
                continue
            except (TransientError, RateLimitedError) as exc:
                last_error = exc
            except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as exc:
                last_error = classify_transport_error(exc)

            if attempt < max_attempts:
                delay = self.policy.delay(attempt)
                broker_retries_total.labels(name, last_error.code).inc()
                logger.warning(
                    f"{name}: attempt {attempt}/{max_attempts} failed ({last_error.code}), "
                    f"retrying in {delay:.2f}s",
                    extra={"operation": name, "attempt": attempt},
                )
                await self._sleep(delay)

        logger.error(f"{name}: giving up after {max_attempts} attempts: {last_error.message}")
        raise ExternalApiError(
            f"{name} failed after {max_attempts} attempts: {last_error.message}",
            details={"attempts": max_attempts, "last_error_code": last_error.code},
        ) from last_error
