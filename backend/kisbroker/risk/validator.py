"""Pre-submission order validation."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from kisbroker.config import Settings
from kisbroker.core.exceptions import BusinessRuleError, ValidationError
from kisbroker.models import OrderDirection, OrderRequest
from kisbroker.observability.metrics import order_validation_failures_total
from kisbroker.risk.providers import FundsProvider, MarketClock, ReferencePriceProvider

logger = logging.getLogger(__name__)


def required_cash(quantity: int, price: Decimal, fee_rate: Decimal) -> Decimal:
    """Cash a BUY needs: notional plus commission."""
    return Decimal(quantity) * price * (Decimal("1") + fee_rate)


def estimated_proceeds(quantity: int, price: Decimal, fee_rate: Decimal, tax_rate: Decimal) -> Decimal:
    """Cash a SELL returns: notional less commission and transaction tax."""
    return Decimal(quantity) * price * (Decimal("1") - fee_rate - tax_rate)


class OrderValidator:
    """
    Gatekeeper in front of the broker.

    Checks run in a fixed order and the first failure rejects the
    request. Nothing here calls the broker's order endpoints.
    """

    def __init__(
        self,
        settings: Settings,
        market_clock: MarketClock,
        funds: FundsProvider,
        prices: Optional[ReferencePriceProvider] = None,
    ):
        self.settings = settings
        self.market_clock = market_clock
        self.funds = funds
        self.prices = prices

    async def validate(self, request: OrderRequest, at: Optional[datetime] = None) -> Optional[Decimal]:
        """
        Validate an order request.

        Args:
            request: The order to check
            at: Evaluation time for the market-hours check (default: now)

        Returns:
            Estimated cash amount: required cash for a BUY, proceeds for a SELL
            (None for a SELL with no known price)

        Raises:
            BusinessRuleError: A rule was violated (kind in `business_kind`)
            ValidationError: No price is available to size a MARKET order
        """
        try:
            return await self._run_checks(request, at)
        except BusinessRuleError as exc:
            order_validation_failures_total.labels(exc.business_kind.value).inc()
            logger.warning(
                f"Order rejected before submission: {exc.code} - {exc.message}",
                extra={"instrument": request.instrument},
            )
            raise

    async def _run_checks(self, request: OrderRequest, at: Optional[datetime]) -> Optional[Decimal]:
        # CHECK 1: Quantity
        if request.quantity <= 0:
            raise BusinessRuleError.invalid_quantity(request.quantity)

        max_quantity = self.settings.max_quantity_for(request.strategy_id)
        if request.quantity > max_quantity:
            raise BusinessRuleError.quantity_exceeded(max_quantity)

        # CHECK 2: Market session
        if not self.market_clock.is_market_open(request.instrument, at):
            raise BusinessRuleError.market_closed()

        # CHECK 3: Funds / position
        if request.direction == OrderDirection.BUY:
            price = self._reference_price(request)
            required = required_cash(request.quantity, price, self.settings.fee_rate)
            available = await self.funds.available_cash()
            if available < required:
                raise BusinessRuleError.insufficient_funds(required, available)
            return required

        held = await self.funds.available_quantity(request.instrument)
        if held < request.quantity:
            raise BusinessRuleError.insufficient_position(request.quantity, held)
        price = request.price if request.price is not None else self._lookup_price(request.instrument)
        if price is None:
            return None
        return estimated_proceeds(request.quantity, price, self.settings.fee_rate, self.settings.tax_rate)

    def _lookup_price(self, instrument: str) -> Optional[Decimal]:
        return self.prices.reference_price(instrument) if self.prices else None

    def _reference_price(self, request: OrderRequest) -> Decimal:
        if request.price is not None:
            return request.price
        price = self._lookup_price(request.instrument)
        if price is None:
            raise ValidationError(
                f"No reference price for {request.instrument}; a MARKET order cannot be sized",
                code="NO_REFERENCE_PRICE",
            )
        return price
