"""
Global pytest configuration and fixtures for kisbroker testing.

Everything runs in memory: HTTP is replaced by AsyncMock transports, the
WebSocket by scripted fake sockets, and time by injected clock and sleep
callables, so no test touches the network or sleeps for real.
"""
import asyncio
import json
from collections import deque, namedtuple
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from pydantic import SecretStr

from kisbroker.config import Settings
from kisbroker.core.token_manager import TokenGrant
from kisbroker.models import BrokerOrderResult, OrderOutcome


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as unit test (fast, no dependencies)"
    )


# ============================================================================
# Time
# ============================================================================

class FakeClock:
    """Monotonic seconds, advanced explicitly or by FakeSleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays and advances the paired clock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(0)


class UtcClock:
    """Wall clock for components that work in aware UTC datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until `predicate()` holds."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0)
    await asyncio.wait_for(poll(), timeout)


# ============================================================================
# WebSocket
# ============================================================================

FakeMessage = namedtuple("FakeMessage", "type data extra")


def text_frame(data: str) -> FakeMessage:
    return FakeMessage(aiohttp.WSMsgType.TEXT, data, None)


def tick_record(code: str, hhmmss: str, price: int, trade_volume: int, accumulated: int) -> List[str]:
    fields = ["0"] * 46
    fields[0] = code
    fields[1] = hhmmss
    fields[2] = str(price)
    fields[12] = str(trade_volume)
    fields[13] = str(accumulated)
    return fields


def tick_frame(*records: List[str]) -> str:
    """H0STCNT0 data frame carrying the given records."""
    payload = "^".join(field for record in records for field in record)
    return f"0|H0STCNT0|{len(records):03d}|{payload}"


class FakeWebSocket:
    """
    Scripted stand-in for aiohttp's ClientWebSocketResponse.

    Delivers queued frames, then reports the socket closed, unless
    `hold_open` is set, in which case it waits for push() or close().
    """

    def __init__(self, frames=(), hold_open: bool = False):
        self.frames = deque(text_frame(f) if isinstance(f, str) else f for f in frames)
        self.hold_open = hold_open
        self.closed = False
        self.sent: List[str] = []
        self._wake = asyncio.Event()

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def receive(self):
        while True:
            await asyncio.sleep(0)
            if self.frames:
                return self.frames.popleft()
            if self.closed or not self.hold_open:
                self.closed = True
                return FakeMessage(aiohttp.WSMsgType.CLOSED, None, None)
            self._wake.clear()
            await self._wake.wait()

    def push(self, frame: str) -> None:
        self.frames.append(text_frame(frame))
        self._wake.set()

    async def close(self) -> None:
        self.closed = True
        self._wake.set()

    def exception(self):
        return None

    def subscription_requests(self) -> List[tuple]:
        """(tr_type, tr_key) of every subscription message sent."""
        requests = []
        for raw in self.sent:
            message = json.loads(raw)
            if "body" in message and "input" in message["body"]:
                requests.append((message["header"]["tr_type"], message["body"]["input"]["tr_key"]))
        return requests


# ============================================================================
# Collaborator fakes
# ============================================================================

class FakeMarketClock:
    def __init__(self, open_: bool = True):
        self.open = open_

    def is_market_open(self, instrument: str, at: Optional[datetime] = None) -> bool:
        return self.open


class FakeFunds:
    def __init__(self, cash: Decimal = Decimal("10000000"), positions: Optional[Dict[str, int]] = None):
        self.cash = cash
        self.positions = positions or {}
        self.calls = 0

    async def available_cash(self) -> Decimal:
        self.calls += 1
        return self.cash

    async def available_quantity(self, instrument: str) -> int:
        self.calls += 1
        return self.positions.get(instrument, 0)


class FakePrices:
    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices = prices or {}

    def reference_price(self, instrument: str) -> Optional[Decimal]:
        return self.prices.get(instrument)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        kis_app_key="test-app-key",
        kis_app_secret="test-app-secret",
        kis_account_number="12345678",
        kis_account_product_code="01",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def utc_clock():
    # Wednesday 2024-01-17 10:00 KST
    return UtcClock(datetime(2024, 1, 17, 1, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_auth():
    auth = MagicMock()
    auth.issue_access_token = AsyncMock(return_value=TokenGrant(value="token-1", lifetime_seconds=86400))
    auth.issue_approval_key = AsyncMock(return_value=SecretStr("approval-key"))
    return auth


@pytest.fixture
def broker_client():
    """Broker REST client double with accepting defaults."""
    client = MagicMock()
    client.submit_order = AsyncMock(return_value=BrokerOrderResult(
        outcome=OrderOutcome.ACCEPTED,
        broker_order_id="0000012345",
        branch_code="91252",
        order_time="100001",
    ))
    client.cancel_order = AsyncMock(return_value=BrokerOrderResult(
        outcome=OrderOutcome.ACCEPTED,
        broker_order_id="0000012346",
        branch_code="91252",
    ))
    client.get_order_status = AsyncMock()
    client.find_order = AsyncMock(return_value=None)
    client.get_account_balance = AsyncMock()
    return client
