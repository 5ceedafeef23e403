"""
Collaborators the order validator consults.

The validator never talks to the broker directly. Market hours, funds
and reference prices come from these providers, so validation can run
against fakes and checking an order costs no REST call.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Protocol

from kisbroker.broker.rest_client import BrokerRestClient
from kisbroker.core.exceptions import BrokerError
from kisbroker.models import AccountBalance, Order, OrderStatus, TickEvent

logger = logging.getLogger(__name__)


class MarketClock(Protocol):
    def is_market_open(self, instrument: str, at: Optional[datetime] = None) -> bool:
        ...


class FundsProvider(Protocol):
    async def available_cash(self) -> Decimal:
        ...

    async def available_quantity(self, instrument: str) -> int:
        ...


class ReferencePriceProvider(Protocol):
    def reference_price(self, instrument: str) -> Optional[Decimal]:
        ...


class BalanceFundsProvider:
    """
    Funds from the last account balance snapshot.

    Checks read the snapshot only, so validating an order never spends
    REST quota. The snapshot is taken by refresh(): once at startup, and
    again from `on_order_update` (register it as a coordinator listener)
    whenever an order's fills or reservations change the account. Before
    the first refresh no cash and no positions are available.
    """

    REFRESH_ON = frozenset({
        OrderStatus.ACCEPTED,
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    })

    def __init__(self, client: BrokerRestClient):
        self.client = client
        self._balance: Optional[AccountBalance] = None

    @property
    def snapshot(self) -> Optional[AccountBalance]:
        return self._balance

    async def refresh(self) -> AccountBalance:
        """Take a new snapshot from the broker."""
        self._balance = await self.client.get_account_balance()
        logger.info(
            f"Account snapshot: {self._balance.available_cash} cash, "
            f"{len(self._balance.holdings)} holdings"
        )
        return self._balance

    async def available_cash(self) -> Decimal:
        if self._balance is None:
            logger.warning("No account snapshot yet; no cash available")
            return Decimal("0")
        return self._balance.available_cash

    async def available_quantity(self, instrument: str) -> int:
        if self._balance is None:
            logger.warning("No account snapshot yet; no positions available")
            return 0
        holding = self._balance.holding(instrument)
        return holding.orderable_quantity if holding else 0

    async def on_order_update(self, order: Order, previous: Optional[OrderStatus]) -> None:
        if order.status not in self.REFRESH_ON:
            return
        try:
            await self.refresh()
        except BrokerError as exc:
            logger.warning(
                f"Account snapshot refresh after order {order.id} failed: {exc.code} - {exc.message}",
                extra={"order_id": order.id},
            )

class LastPriceCache:
    """
    Last traded price per instrument.

    Register `update` as a feed tick listener; the cache then serves as
    the reference price for MARKET orders.
    """

    def __init__(self):
        self._prices: Dict[str, Decimal] = {}
        self._updated: Dict[str, datetime] = {}

    def update(self, tick: TickEvent) -> None:
        self._prices[tick.instrument] = tick.price
        self._updated[tick.instrument] = tick.timestamp

    def set_price(self, instrument: str, price: Decimal, at: Optional[datetime] = None) -> None:
        """Seed a price, e.g. from a REST quote before the feed delivers."""
        self._prices[instrument] = price
        if at is not None:
            self._updated[instrument] = at

    def reference_price(self, instrument: str) -> Optional[Decimal]:
        return self._prices.get(instrument)

    def updated_at(self, instrument: str) -> Optional[datetime]:
        return self._updated.get(instrument)
