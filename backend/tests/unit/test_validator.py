from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeFunds, FakeMarketClock, FakePrices
from kisbroker.core.exceptions import BusinessErrorKind, BusinessRuleError, ExternalApiError, ValidationError
from kisbroker.core.market_hours import KrxMarketClock
from kisbroker.models import (
    AccountBalance,
    Holding,
    Order,
    OrderDirection,
    OrderRequest,
    OrderStatus,
    OrderType,
    TickEvent,
)
from kisbroker.risk.providers import BalanceFundsProvider, LastPriceCache
from kisbroker.risk.validator import OrderValidator, estimated_proceeds, required_cash


def buy(quantity=10, price="70000", **kwargs):
    return OrderRequest(
        instrument="005930",
        direction=OrderDirection.BUY,
        order_type=OrderType.LIMIT,
        quantity=quantity,
        price=Decimal(price),
        **kwargs,
    )


def sell(quantity=5, price=None):
    if price is None:
        return OrderRequest(instrument="005930", direction=OrderDirection.SELL, quantity=quantity)
    return OrderRequest(
        instrument="005930",
        direction=OrderDirection.SELL,
        order_type=OrderType.LIMIT,
        quantity=quantity,
        price=Decimal(price),
    )


@pytest.fixture
def funds():
    return FakeFunds(cash=Decimal("1000000"), positions={"005930": 8})


@pytest.fixture
def market():
    return FakeMarketClock(open_=True)


@pytest.fixture
def prices():
    return FakePrices({"005930": Decimal("71000")})


@pytest.fixture
def validator(settings, market, funds, prices):
    return OrderValidator(settings, market, funds, prices)


class TestCashArithmetic:
    def test_required_cash_includes_fee(self):
        assert required_cash(10, Decimal("70000"), Decimal("0.00015")) == Decimal("700105.00000")

    def test_proceeds_deduct_fee_and_tax(self):
        assert estimated_proceeds(10, Decimal("70000"), Decimal("0.00015"), Decimal("0.0023")) == Decimal("698285.00000")


class TestOrderValidator:
    @pytest.mark.asyncio
    async def test_buy_within_funds(self, validator):
        required = await validator.validate(buy(quantity=10))

        assert required == Decimal("700105.00000")

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, validator, funds):
        funds.cash = Decimal("700000")

        with pytest.raises(BusinessRuleError) as exc_info:
            await validator.validate(buy(quantity=10))

        assert exc_info.value.business_kind == BusinessErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.details["available"] == "700000"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -3])
    async def test_non_positive_quantity(self, validator, funds, quantity):
        with pytest.raises(BusinessRuleError) as exc_info:
            await validator.validate(buy(quantity=quantity))

        assert exc_info.value.business_kind == BusinessErrorKind.INVALID_QUANTITY
        assert funds.calls == 0

    @pytest.mark.asyncio
    async def test_quantity_ceiling(self, validator, funds):
        await validator.validate(buy(quantity=10))

        with pytest.raises(BusinessRuleError) as exc_info:
            await validator.validate(buy(quantity=11))

        assert exc_info.value.business_kind == BusinessErrorKind.QUANTITY_EXCEEDED
        assert exc_info.value.details["max_quantity"] == 10

    @pytest.mark.asyncio
    async def test_per_strategy_ceiling(self, settings, market, funds, prices):
        tuned = settings.model_copy(update={"strategy_max_quantity": {"scalper": 3}})
        validator = OrderValidator(tuned, market, funds, prices)

        with pytest.raises(BusinessRuleError) as exc_info:
            await validator.validate(buy(quantity=4, strategy_id="scalper"))

        assert exc_info.value.details["max_quantity"] == 3
        await validator.validate(buy(quantity=4, strategy_id="swing"))

    @pytest.mark.asyncio
    async def test_market_closed(self, validator, market, funds):
        market.open = False

        with pytest.raises(BusinessRuleError) as exc_info:
            await validator.validate(buy())

        assert exc_info.value.business_kind == BusinessErrorKind.MARKET_CLOSED
        assert funds.calls == 0

    @pytest.mark.asyncio
    async def test_market_order_sized_from_reference_price(self, validator):
        request = OrderRequest(instrument="005930", direction=OrderDirection.BUY, quantity=2)

        required = await validator.validate(request)

        assert required == required_cash(2, Decimal("71000"), Decimal("0.00015"))

    @pytest.mark.asyncio
    async def test_market_buy_without_reference_price(self, settings, market, funds):
        validator = OrderValidator(settings, market, funds, FakePrices())
        request = OrderRequest(instrument="005930", direction=OrderDirection.BUY, quantity=2)

        with pytest.raises(ValidationError) as exc_info:
            await validator.validate(request)

        assert exc_info.value.code == "NO_REFERENCE_PRICE"

    @pytest.mark.asyncio
    async def test_sell_within_position(self, validator):
        proceeds = await validator.validate(sell(quantity=5, price="72000"))

        assert proceeds == estimated_proceeds(5, Decimal("72000"), Decimal("0.00015"), Decimal("0.0023"))

    @pytest.mark.asyncio
    async def test_sell_position_shortfall(self, validator):
        with pytest.raises(BusinessRuleError) as exc_info:
            await validator.validate(sell(quantity=9))

        assert exc_info.value.business_kind == BusinessErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.details == {"required": 9, "available": 8}

    @pytest.mark.asyncio
    async def test_market_sell_without_price_still_allowed(self, settings, market, funds):
        validator = OrderValidator(settings, market, funds)

        assert await validator.validate(sell(quantity=5)) is None


class TestKrxMarketClock:
    @pytest.fixture
    def market_clock(self):
        return KrxMarketClock(holidays=[date(2024, 2, 9)])

    @pytest.mark.parametrize("utc_hour, utc_minute, expected", [
        (23, 59, False),   # 08:59 KST
        (0, 0, True),      # 09:00 KST
        (6, 29, True),     # 15:29 KST
        (6, 30, False),    # 15:30 KST
    ])
    def test_session_bounds(self, market_clock, utc_hour, utc_minute, expected):
        day = 16 if utc_hour == 23 else 17
        at = datetime(2024, 1, day, utc_hour, utc_minute, tzinfo=timezone.utc)

        assert market_clock.is_market_open("005930", at) is expected

    def test_weekend_closed(self, market_clock):
        assert not market_clock.is_market_open("005930", datetime(2024, 1, 20, 1, 0, tzinfo=timezone.utc))

    def test_holiday_closed(self, market_clock):
        assert not market_clock.is_market_open("005930", datetime(2024, 2, 9, 1, 0, tzinfo=timezone.utc))

    def test_naive_time_treated_as_utc(self, market_clock):
        assert market_clock.is_market_open("005930", datetime(2024, 1, 17, 1, 0))


class TestProviders:
    @pytest.fixture
    def balance_client(self):
        client = MagicMock()
        client.get_account_balance = AsyncMock(return_value=AccountBalance(
            deposit=Decimal("5000000"),
            available_cash=Decimal("4800000"),
            total_evaluation=Decimal("5872500"),
            holdings=[Holding(instrument="005930", quantity=15, orderable_quantity=12, average_price=Decimal("70100"))],
        ))
        return client

    @pytest.mark.asyncio
    async def test_balance_funds_provider_reads_snapshot(self, balance_client):
        provider = BalanceFundsProvider(balance_client)
        await provider.refresh()

        assert await provider.available_cash() == Decimal("4800000")
        assert await provider.available_quantity("005930") == 12
        assert await provider.available_quantity("000660") == 0
        assert balance_client.get_account_balance.await_count == 1

    @pytest.mark.asyncio
    async def test_balance_funds_provider_empty_before_refresh(self, balance_client):
        provider = BalanceFundsProvider(balance_client)

        assert provider.snapshot is None
        assert await provider.available_cash() == Decimal("0")
        assert await provider.available_quantity("005930") == 0
        balance_client.get_account_balance.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, refreshes", [
        (OrderStatus.SUBMITTED, 0),
        (OrderStatus.REJECTED, 0),
        (OrderStatus.ACCEPTED, 1),
        (OrderStatus.FILLED, 1),
        (OrderStatus.CANCELLED, 1),
    ])
    async def test_snapshot_follows_order_updates(self, balance_client, status, refreshes):
        provider = BalanceFundsProvider(balance_client)
        order = Order(instrument="005930", direction=OrderDirection.BUY, order_type=OrderType.MARKET, quantity=1)
        order.status = status

        await provider.on_order_update(order, OrderStatus.SUBMITTED)

        assert balance_client.get_account_balance.await_count == refreshes

    @pytest.mark.asyncio
    async def test_failed_snapshot_refresh_keeps_previous(self, balance_client):
        provider = BalanceFundsProvider(balance_client)
        await provider.refresh()
        balance_client.get_account_balance.side_effect = ExternalApiError("down")
        order = Order(instrument="005930", direction=OrderDirection.BUY, order_type=OrderType.MARKET, quantity=1)
        order.status = OrderStatus.FILLED

        await provider.on_order_update(order, OrderStatus.ACCEPTED)

        assert await provider.available_cash() == Decimal("4800000")

    def test_last_price_cache(self):
        cache = LastPriceCache()
        stamp = datetime(2024, 1, 17, 10, 0, 1, tzinfo=timezone.utc)

        cache.update(TickEvent(
            instrument="005930",
            price=Decimal("71500"),
            volume=3,
            timestamp=stamp,
            trade_date=date(2024, 1, 17),
            sequence=100,
        ))

        assert cache.reference_price("005930") == Decimal("71500")
        assert cache.updated_at("005930") == stamp
        assert cache.reference_price("000660") is None
