"""
Unit tests for BrokerRestClient.

The transport is an AsyncMock returning canned broker envelopes; token
manager, rate limiter and retry executor are the real components driven
by fake time.
"""
import asyncio
from datetime import date, datetime, time, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeSleep
from kisbroker.broker.rest_client import BrokerRestClient
from kisbroker.core.constants import CANCEL_PATH, ORDER_PATH
from kisbroker.core.exceptions import (
    AmbiguousOutcomeError,
    AuthenticationError,
    ExternalApiError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)
from kisbroker.core.rate_limiter import RateLimiter
from kisbroker.core.retry import RetryExecutor, RetryPolicy
from kisbroker.core.token_manager import TokenGrant, TokenManager
from kisbroker.models import OrderDirection, OrderOutcome, OrderRequest, OrderStatus, OrderType


def envelope(**sections):
    return {"rt_cd": "0", "msg_cd": "MCA00000", "msg1": "정상처리 되었습니다.", **sections}


def order_accepted(odno="0000012345"):
    return envelope(output={"KRX_FWDG_ORD_ORGNO": "91252", "ODNO": odno, "ORD_TMD": "100001"})


def execution_row(odno, instrument="005930", side="02", qty="10", filled="0", time_="100001", **extra):
    row = {
        "ord_dt": "20240117",
        "ord_gno_brno": "91252",
        "odno": odno,
        "pdno": instrument,
        "sll_buy_dvsn_cd": side,
        "ord_qty": qty,
        "tot_ccld_qty": filled,
        "rmn_qty": str(int(qty) - int(filled)),
        "rjct_qty": "0",
        "cncl_yn": "N",
        "avg_prvs": "0",
        "ord_tmd": time_,
    }
    row.update(extra)
    return row


@pytest.fixture
def transport():
    transport = MagicMock()
    transport.send = AsyncMock()
    return transport


@pytest.fixture
def issuer():
    return AsyncMock(side_effect=[
        TokenGrant(value="token-1", lifetime_seconds=86400),
        TokenGrant(value="token-2", lifetime_seconds=86400),
    ])


@pytest.fixture
def retry_sleep():
    return FakeSleep()


@pytest.fixture
def client(settings, transport, issuer, clock, fake_sleep, retry_sleep):
    return BrokerRestClient(
        settings,
        transport,
        TokenManager(issuer),
        RateLimiter(per_second=5, per_minute=100, clock=clock, sleep=fake_sleep),
        RetryExecutor(RetryPolicy(max_attempts=3, delay=1.0), sleep=retry_sleep),
    )


@pytest.fixture
def buy_request():
    return OrderRequest(
        instrument="005930",
        direction=OrderDirection.BUY,
        order_type=OrderType.LIMIT,
        quantity=10,
        price=Decimal("71000"),
    )


def sent_headers(transport, index=0):
    return transport.send.await_args_list[index].kwargs["headers"]


class TestQuotations:
    @pytest.mark.asyncio
    async def test_get_quote(self, client, transport):
        transport.send.return_value = envelope(output={
            "stck_prpr": "71500",
            "prdy_vrss": "-500",
            "prdy_ctrt": "-0.69",
            "stck_oprc": "72000",
            "stck_hgpr": "72300",
            "stck_lwpr": "71200",
            "acml_vol": "10234567",
        })

        quote = await client.get_quote("005930")

        assert quote.price == Decimal("71500")
        assert quote.change == Decimal("-500")
        assert quote.volume == 10234567
        headers = sent_headers(transport)
        assert headers["tr_id"] == "FHKST01010100"
        assert headers["authorization"] == "Bearer token-1"
        assert headers["appkey"] == "test-app-key"
        assert transport.send.await_args.kwargs["params"]["FID_INPUT_ISCD"] == "005930"

    @pytest.mark.asyncio
    async def test_quote_without_price_is_not_found(self, client, transport):
        transport.send.return_value = envelope(output={"stck_prpr": ""})

        with pytest.raises(NotFoundError):
            await client.get_quote("999999")

    @pytest.mark.asyncio
    async def test_daily_candles_chronological_and_invalid_rows_skipped(self, client, transport):
        transport.send.return_value = envelope(output=[
            {"stck_bsop_date": "20240117", "stck_oprc": "71000", "stck_hgpr": "72000",
             "stck_lwpr": "70500", "stck_clpr": "71500", "acml_vol": "900"},
            {"stck_bsop_date": "20240116", "stck_oprc": "70000"},
            {"stck_bsop_date": "20240115", "stck_oprc": "70000", "stck_hgpr": "71000",
             "stck_lwpr": "69500", "stck_clpr": "70800", "acml_vol": "800"},
        ])

        candles = await client.get_daily_candles("005930")

        assert [c.timestamp.day for c in candles] == [15, 17]
        assert candles[1].close == Decimal("71500")
        assert transport.send.await_args.kwargs["params"]["FID_ORG_ADJ_PRC"] == "0"

    @pytest.mark.asyncio
    async def test_minute_candles(self, client, transport):
        transport.send.return_value = envelope(output1={}, output2=[
            {"stck_bsop_date": "20240117", "stck_cntg_hour": "100200", "stck_prpr": "71600",
             "stck_oprc": "71500", "stck_hgpr": "71700", "stck_lwpr": "71400", "cntg_vol": "120"},
            {"stck_bsop_date": "20240117", "stck_cntg_hour": "100100", "stck_prpr": "71500",
             "stck_oprc": "71400", "stck_hgpr": "71600", "stck_lwpr": "71300", "cntg_vol": "80"},
        ])

        candles = await client.get_minute_candles("005930", until=time(10, 2))

        assert [c.timestamp.minute for c in candles] == [1, 2]
        assert candles[1].volume == 120
        assert transport.send.await_args.kwargs["params"]["FID_INPUT_HOUR_1"] == "100200"


class TestAccount:
    @pytest.mark.asyncio
    async def test_get_account_balance(self, client, transport):
        transport.send.return_value = envelope(
            output1=[
                {"pdno": "005930", "prdt_name": "삼성전자", "hldg_qty": "15", "ord_psbl_qty": "12",
                 "pchs_avg_pric": "70100.5", "prpr": "71500", "evlu_amt": "1072500"},
                {"pdno": "000660", "prdt_name": "SK하이닉스", "hldg_qty": "0", "ord_psbl_qty": "0"},
            ],
            output2=[{"dnca_tot_amt": "5000000", "prvs_rcdl_excc_amt": "4800000", "tot_evlu_amt": "5872500"}],
        )

        balance = await client.get_account_balance()

        assert balance.available_cash == Decimal("4800000")
        assert balance.deposit == Decimal("5000000")
        assert len(balance.holdings) == 1
        assert balance.holding("005930").orderable_quantity == 12
        params = transport.send.await_args.kwargs["params"]
        assert params["CANO"] == "12345678"
        assert params["ACNT_PRDT_CD"] == "01"

    @pytest.mark.asyncio
    async def test_virtual_environment_uses_v_prefixed_tr_id(self, settings, transport, issuer, clock, fake_sleep):
        virtual = settings.model_copy(update={"kis_virtual": True})
        client = BrokerRestClient(
            virtual, transport, TokenManager(issuer),
            RateLimiter(clock=clock, sleep=fake_sleep),
        )
        transport.send.return_value = envelope(output1=[], output2=[{}])

        await client.get_account_balance()

        assert sent_headers(transport)["tr_id"] == "VTTC8434R"


class TestSubmitOrder:
    @pytest.mark.asyncio
    async def test_accepted(self, client, transport, buy_request):
        transport.send.return_value = order_accepted()

        result = await client.submit_order(buy_request)

        assert result.outcome == OrderOutcome.ACCEPTED
        assert result.broker_order_id == "0000012345"
        assert result.branch_code == "91252"
        call = transport.send.await_args
        assert call.args == ("POST", ORDER_PATH)
        assert call.kwargs["mutating"] is True
        assert call.kwargs["json_body"]["ORD_DVSN"] == "00"
        assert call.kwargs["json_body"]["ORD_UNPR"] == "71000"
        assert call.kwargs["json_body"]["ORD_QTY"] == "10"
        assert sent_headers(transport)["tr_id"] == "TTTC0802U"

    @pytest.mark.asyncio
    async def test_market_sell_sends_zero_price(self, client, transport):
        transport.send.return_value = order_accepted()
        request = OrderRequest(instrument="005930", direction=OrderDirection.SELL, quantity=3)

        await client.submit_order(request)

        body = transport.send.await_args.kwargs["json_body"]
        assert body["ORD_DVSN"] == "01"
        assert body["ORD_UNPR"] == "0"
        assert sent_headers(transport)["tr_id"] == "TTTC0801U"

    @pytest.mark.asyncio
    async def test_broker_rejection_propagates_without_retry(self, client, transport, buy_request):
        transport.send.side_effect = ValidationError("주문가능금액을 초과 했습니다", code="APBK0952")

        with pytest.raises(ValidationError):
            await client.submit_order(buy_request)

        assert transport.send.await_count == 1

    @pytest.mark.asyncio
    async def test_ambiguous_transport_failure_is_not_retried(self, client, transport, buy_request):
        transport.send.side_effect = AmbiguousOutcomeError("connection lost after send")

        result = await client.submit_order(buy_request)

        assert result.outcome == OrderOutcome.AMBIGUOUS
        assert result.broker_order_id is None
        assert transport.send.await_count == 1

    @pytest.mark.asyncio
    async def test_connection_refused_is_retried(self, client, transport, buy_request, retry_sleep):
        transport.send.side_effect = [
            TransientError("refused", code="CONNECTION_ERROR"),
            order_accepted(),
        ]

        result = await client.submit_order(buy_request)

        assert result.outcome == OrderOutcome.ACCEPTED
        assert transport.send.await_count == 2
        assert retry_sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_token_once(self, client, transport, issuer, buy_request):
        transport.send.side_effect = [
            UnauthorizedError("기간이 만료된 token 입니다.", code="EGW00123"),
            order_accepted(),
        ]

        result = await client.submit_order(buy_request)

        assert result.outcome == OrderOutcome.ACCEPTED
        assert issuer.await_count == 2
        assert sent_headers(transport, 0)["authorization"] == "Bearer token-1"
        assert sent_headers(transport, 1)["authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_unauthorized_twice_is_authentication_error(self, client, transport, buy_request):
        transport.send.side_effect = UnauthorizedError("expired", code="EGW00123")

        with pytest.raises(AuthenticationError):
            await client.submit_order(buy_request)

        assert transport.send.await_count == 2
        assert client.token_manager.current is None

    @pytest.mark.asyncio
    async def test_timeout_before_dispatch_is_clean_failure(self, settings, transport, clock, fake_sleep, buy_request):
        async def never_issued():
            await asyncio.Event().wait()

        client = BrokerRestClient(
            settings, transport, TokenManager(never_issued),
            RateLimiter(clock=clock, sleep=fake_sleep),
        )

        with pytest.raises(ExternalApiError) as exc_info:
            await client.submit_order(buy_request, timeout=0.01)

        assert exc_info.value.code == "TIMEOUT"
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_after_dispatch_is_ambiguous(self, client, transport, buy_request):
        async def hang(*args, **kwargs):
            await asyncio.Event().wait()

        transport.send.side_effect = hang

        result = await client.submit_order(buy_request, timeout=0.01)

        assert result.outcome == OrderOutcome.AMBIGUOUS
        assert transport.send.await_count == 1


class TestCancelOrder:
    @pytest.mark.asyncio
    async def test_cancel_all_remaining(self, client, transport):
        transport.send.return_value = order_accepted("0000012399")

        result = await client.cancel_order("0000012345", "91252")

        assert result.outcome == OrderOutcome.ACCEPTED
        call = transport.send.await_args
        assert call.args == ("POST", CANCEL_PATH)
        body = call.kwargs["json_body"]
        assert body["ORGN_ODNO"] == "0000012345"
        assert body["KRX_FWDG_ORD_ORGNO"] == "91252"
        assert body["RVSE_CNCL_DVSN_CD"] == "02"
        assert body["QTY_ALL_ORD_YN"] == "Y"
        assert sent_headers(transport)["tr_id"] == "TTTC0803U"

    @pytest.mark.asyncio
    async def test_partial_cancel(self, client, transport):
        transport.send.return_value = order_accepted("0000012399")

        await client.cancel_order("0000012345", "91252", quantity=4)

        body = transport.send.await_args.kwargs["json_body"]
        assert body["QTY_ALL_ORD_YN"] == "N"
        assert body["ORD_QTY"] == "4"


class TestOrderQueries:
    @pytest.mark.asyncio
    async def test_get_order_status_ignores_leading_zeros(self, client, transport):
        transport.send.return_value = envelope(output1=[
            execution_row("12345", filled="4", avg_prvs="71000"),
        ])

        status = await client.get_order_status("0000012345", order_date=date(2024, 1, 17))

        assert status.status == OrderStatus.PARTIALLY_FILLED
        assert status.filled_quantity == 4
        assert status.remaining_quantity == 6
        assert status.average_fill_price == Decimal("71000")
        assert transport.send.await_args.kwargs["params"]["INQR_STRT_DT"] == "20240117"

    @pytest.mark.asyncio
    async def test_confirmed_cancel_quantity_parsed(self, client, transport):
        transport.send.return_value = envelope(output1=[
            execution_row("0000012345", filled="3", rmn_qty="0", cncl_cfrm_qty="7"),
        ])

        status = await client.get_order_status("0000012345", order_date=date(2024, 1, 17))

        assert status.cancelled_quantity == 7
        assert status.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_get_order_status_not_found(self, client, transport):
        transport.send.return_value = envelope(output1=[])

        with pytest.raises(NotFoundError):
            await client.get_order_status("0000099999", order_date=date(2024, 1, 17))

    @pytest.mark.asyncio
    async def test_find_order_returns_earliest_match_after_cutoff(self, client, transport, buy_request):
        transport.send.return_value = envelope(output1=[
            execution_row("0000000001", time_="095959"),
            execution_row("0000000003", time_="100105"),
            execution_row("0000000002", time_="100002"),
            execution_row("0000000004", qty="5", time_="100001"),
            execution_row("0000000005", side="01", time_="100001"),
        ])
        since = datetime(2024, 1, 17, 1, 0, 0, tzinfo=timezone.utc)

        match = await client.find_order(buy_request, since)

        assert match.broker_order_id == "0000000002"

    @pytest.mark.asyncio
    async def test_find_order_respects_exclusions(self, client, transport, buy_request):
        transport.send.return_value = envelope(output1=[execution_row("0000000002", time_="100002")])
        since = datetime(2024, 1, 17, 1, 0, 0, tzinfo=timezone.utc)

        assert await client.find_order(buy_request, since, exclude={"0000000002"}) is None
