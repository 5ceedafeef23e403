"""
Composition root and command-line entry point for kisbroker.

Usage:
    kisbroker check
    kisbroker quote 005930
    kisbroker balance
    kisbroker stream 005930 000660 [--limit N]
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from kisbroker.broker.auth import KisAuthApi
from kisbroker.broker.rest_client import BrokerRestClient
from kisbroker.broker.transport import KisTransport
from kisbroker.config import Settings, get_settings, validate_trading_policy
from kisbroker.core.exceptions import BrokerError
from kisbroker.core.market_hours import KrxMarketClock
from kisbroker.core.rate_limiter import RateLimiter
from kisbroker.core.retry import RetryExecutor, RetryPolicy
from kisbroker.core.token_manager import TokenManager
from kisbroker.execution.coordinator import OrderLifecycleCoordinator
from kisbroker.observability.logging_config import get_logger, setup_logging
from kisbroker.realtime.feed import FeedStatusEvent, RealtimeFeedClient
from kisbroker.risk.providers import BalanceFundsProvider, LastPriceCache
from kisbroker.risk.validator import OrderValidator

logger = get_logger(__name__)


class TradingStack:
    """
    One account's worth of wired components.

    The token manager and rate limiter are shared by every REST call made
    through this stack, so quota and token state are process-wide for the
    account.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.transport = KisTransport(
            settings.base_url,
            connect_timeout=settings.http_connect_timeout_seconds,
            read_timeout=settings.http_read_timeout_seconds,
        )
        self.retry = RetryExecutor(RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            delay=settings.retry_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay_seconds,
        ))
        self.auth = KisAuthApi(settings, self.transport, self.retry)
        self.tokens = TokenManager(
            self.auth.issue_access_token,
            lifetime_seconds=settings.token_lifetime_seconds,
            refresh_margin_seconds=settings.token_refresh_margin_seconds,
        )
        self.rate_limiter = RateLimiter(
            per_second=settings.rate_limit_per_second,
            per_minute=settings.rate_limit_per_minute,
        )
        self.client = BrokerRestClient(settings, self.transport, self.tokens, self.rate_limiter, self.retry)

        self.prices = LastPriceCache()
        self.feed = RealtimeFeedClient(settings, self.auth, tick_listeners=[self.prices.update])
        self.market_clock = KrxMarketClock(
            settings.market_timezone,
            open_time=settings.market_open,
            close_time=settings.market_close,
        )
        self.funds = BalanceFundsProvider(self.client)
        self.validator = OrderValidator(settings, self.market_clock, self.funds, self.prices)
        self.coordinator = OrderLifecycleCoordinator(self.client, self.validator, settings)
        self.coordinator.add_listener(self.funds.on_order_update)

    async def __aenter__(self):
        await self.transport.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.feed.close()
        await self.transport.close()


# ============================================================================
# Commands
# ============================================================================

async def run_check(stack: TradingStack) -> int:
    """Validate configuration and prove the credentials by issuing a token."""
    problems = validate_trading_policy(stack.settings)
    for problem in problems:
        print(f"FAIL  {problem}")
    if problems:
        return 1

    token = await stack.tokens.get_valid_token()
    print("PASS  policy constants")
    print(f"PASS  access token issued, valid until {token.expires_at.isoformat()}")
    print(f"      environment: {'virtual' if stack.settings.kis_virtual else 'real'} ({stack.settings.base_url})")
    return 0


async def run_quote(stack: TradingStack, instrument: str) -> int:
    quote = await stack.client.get_quote(instrument)
    print(quote.model_dump_json(indent=2))
    return 0


async def run_balance(stack: TradingStack) -> int:
    balance = await stack.funds.refresh()
    print(balance.model_dump_json(indent=2))
    return 0


async def run_stream(stack: TradingStack, instruments: List[str], limit: Optional[int] = None) -> int:
    for instrument in instruments:
        await stack.feed.subscribe(instrument, channel="cli")
    await stack.feed.start()

    received = 0
    async for event in stack.feed.events("cli"):
        if isinstance(event, FeedStatusEvent):
            print(f"feed {event.state.value}: {event.reason}", file=sys.stderr)
            return 1
        print(f"{event.timestamp:%H:%M:%S} {event.instrument} {event.price} x{event.volume}")
        received += 1
        if limit is not None and received >= limit:
            break
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kisbroker",
        description="Korea Investment & Securities Open API client",
    )
    parser.add_argument("--virtual", action="store_true", help="Use the mock-trading environment")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="Validate configuration and credentials")

    quote = sub.add_parser("quote", help="Print the current quote for an instrument")
    quote.add_argument("instrument", help="Six-digit stock code, e.g. 005930")

    sub.add_parser("balance", help="Print account cash and holdings")

    stream = sub.add_parser("stream", help="Print realtime executions")
    stream.add_argument("instruments", nargs="+", help="Stock codes to subscribe")
    stream.add_argument("--limit", type=int, default=None, help="Stop after N ticks")
    return parser


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    async with TradingStack(settings) as stack:
        if args.command == "check":
            return await run_check(stack)
        if args.command == "quote":
            return await run_quote(stack, args.instrument)
        if args.command == "balance":
            return await run_balance(stack)
        if args.command == "stream":
            return await run_stream(stack, args.instruments, args.limit)
    raise ValueError(f"unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.virtual:
        settings = settings.model_copy(update={"kis_virtual": True})

    setup_logging(log_level=args.log_level or settings.log_level, log_format=settings.log_format)

    try:
        return asyncio.run(run_command(args, settings))
    except BrokerError as exc:
        logger.error(f"{args.command} failed: {exc.code} - {exc.message}")
        print(exc.to_response().model_dump_json(indent=2), file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
