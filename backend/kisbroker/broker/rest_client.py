"""
Typed REST client for the KIS domestic-stock API.

Every call follows the same path: obtain a valid token, pass quota
admission, send through the transport, map the broker envelope. The
whole sequence runs inside the RetryExecutor, so a retried call is
re-admitted by the rate limiter and picks up a refreshed token.
"""

import asyncio
import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from kisbroker.broker.transport import KisTransport
from kisbroker.config import Settings
from kisbroker.core.constants import (
    ACCOUNT_PATH,
    CANCEL_DIVISION,
    CANCEL_PATH,
    CONTENT_TYPE_JSON,
    DAILY_PRICE_PATH,
    HEADER_APP_KEY,
    HEADER_APP_SECRET,
    HEADER_AUTHORIZATION,
    HEADER_CONTENT_TYPE,
    HEADER_CUSTOMER_TYPE,
    HEADER_TR_ID,
    MARKET_DIVISION_STOCK,
    MINUTE_PRICE_PATH,
    ORDER_PATH,
    ORDER_STATUS_PATH,
    PRICE_PATH,
    OrderDivision,
    TrId,
)
from kisbroker.core.exceptions import (
    AmbiguousOutcomeError,
    BrokerError,
    ExternalApiError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from kisbroker.core.rate_limiter import RateLimiter
from kisbroker.core.retry import RetryExecutor
from kisbroker.core.token_manager import AccessToken, TokenManager
from kisbroker.models import (
    AccountBalance,
    BrokerOrderResult,
    BrokerOrderStatus,
    Candle,
    Holding,
    OrderDirection,
    OrderOutcome,
    OrderRequest,
    OrderType,
    Quote,
)
from kisbroker.observability.metrics import broker_requests_total

logger = logging.getLogger(__name__)

ORDER_DIVISIONS = {
    OrderType.LIMIT: OrderDivision.LIMIT,
    OrderType.MARKET: OrderDivision.MARKET,
    OrderType.CONDITIONAL: OrderDivision.CONDITIONAL,
}

# SLL_BUY_DVSN_CD values used by the executions inquiry
SIDE_CODES = {OrderDirection.SELL: "01", OrderDirection.BUY: "02"}
SIDE_BY_CODE = {code: side for side, code in SIDE_CODES.items()}


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None


def _int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(Decimal(str(value).strip()))


class _Dispatch:
    """Records whether a request of the current call may have reached the broker."""

    def __init__(self):
        self.dispatched = False


class BrokerRestClient:
    """
    REST operations against one KIS account.

    Read operations return typed models and raise BrokerError subclasses.
    Mutating operations (submit, cancel) return a BrokerOrderResult whose
    outcome is AMBIGUOUS when the request may have reached the broker but
    no result came back; the caller must reconcile such results with
    get_order_status or find_order before acting on them.
    """

    def __init__(
        self,
        settings: Settings,
        transport: KisTransport,
        token_manager: TokenManager,
        rate_limiter: RateLimiter,
        retry_executor: Optional[RetryExecutor] = None,
    ):
        self.settings = settings
        self.transport = transport
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter
        self.retry = retry_executor or RetryExecutor()
        self._zone = ZoneInfo(settings.market_timezone)

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    def _headers(self, token: AccessToken, tr_id: TrId) -> Dict[str, str]:
        return {
            HEADER_CONTENT_TYPE: CONTENT_TYPE_JSON,
            HEADER_AUTHORIZATION: token.authorization,
            HEADER_APP_KEY: self.settings.kis_app_key,
            HEADER_APP_SECRET: self.settings.kis_app_secret,
            HEADER_TR_ID: tr_id.for_environment(self.settings.kis_virtual),
            HEADER_CUSTOMER_TYPE: self.settings.kis_customer_type,
        }

    def _account_fields(self) -> Dict[str, str]:
        return {
            "CANO": self.settings.kis_account_number,
            "ACNT_PRDT_CD": self.settings.kis_account_product_code,
        }

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        tr_id: TrId,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        mutating: bool = False,
        dispatch: Optional[_Dispatch] = None,
    ) -> Dict[str, Any]:
        used: Dict[str, AccessToken] = {}

        async def attempt() -> Dict[str, Any]:
            token = await self.token_manager.get_valid_token()
            used["token"] = token
            await self.rate_limiter.admit()
            if dispatch is not None:
                dispatch.dispatched = True
            try:
                return await self.transport.send(
                    method,
                    path,
                    headers=self._headers(token, tr_id),
                    params=params,
                    json_body=body,
                    mutating=mutating,
                )
            except (TransientError, RateLimitedError, UnauthorizedError):
                # Refused or never connected: nothing reached the order book.
                if dispatch is not None:
                    dispatch.dispatched = False
                raise

        async def on_unauthorized(exc: UnauthorizedError) -> None:
            self.token_manager.invalidate(used.get("token"))

        try:
            payload = await self.retry.execute(attempt, name=operation, on_unauthorized=on_unauthorized)
        except BrokerError as exc:
            broker_requests_total.labels(operation, exc.kind.value).inc()
            raise
        broker_requests_total.labels(operation, "success").inc()
        return payload

    async def _mutate(
        self,
        operation: str,
        path: str,
        tr_id: TrId,
        body: Dict[str, Any],
        timeout: Optional[float],
    ) -> BrokerOrderResult:
        dispatch = _Dispatch()
        try:
            payload = await asyncio.wait_for(
                self._call(operation, "POST", path, tr_id, body=body, mutating=True, dispatch=dispatch),
                timeout,
            )
        except asyncio.TimeoutError:
            if not dispatch.dispatched:
                broker_requests_total.labels(operation, "timeout_before_dispatch").inc()
                raise ExternalApiError(
                    f"{operation} timed out before the request was sent",
                    code="TIMEOUT",
                )
            logger.error(f"{operation}: caller timeout after dispatch, outcome unknown")
            return BrokerOrderResult(
                outcome=OrderOutcome.AMBIGUOUS,
                message=f"{operation} timed out after the request was sent",
            )
        except AmbiguousOutcomeError as exc:
            return BrokerOrderResult(outcome=OrderOutcome.AMBIGUOUS, message=exc.message)

        output = payload.get("output") or {}
        return BrokerOrderResult(
            outcome=OrderOutcome.ACCEPTED,
            broker_order_id=output.get("ODNO"),
            branch_code=output.get("KRX_FWDG_ORD_ORGNO"),
            order_time=output.get("ORD_TMD"),
            message=(payload.get("msg1") or "").strip() or None,
            raw_response=payload,
        )

    # ------------------------------------------------------------------
    # Quotations
    # ------------------------------------------------------------------

    async def get_quote(self, instrument: str) -> Quote:
        """
        Fetch the current price snapshot.

        Raises:
            NotFoundError: The broker returned no price for the instrument
        """
        params = {
            "FID_COND_MRKT_DIV_CODE": MARKET_DIVISION_STOCK,
            "FID_INPUT_ISCD": instrument,
        }
        data = await self._call("get_quote", "GET", PRICE_PATH, TrId.PRICE, params=params)

        output = data.get("output") or {}
        if not output.get("stck_prpr"):
            raise NotFoundError.resource("Quote", "instrument", instrument)

        return Quote(
            instrument=instrument,
            price=_decimal(output["stck_prpr"]),
            change=_decimal(output.get("prdy_vrss")),
            change_rate=_decimal(output.get("prdy_ctrt")),
            open=_decimal(output.get("stck_oprc")),
            high=_decimal(output.get("stck_hgpr")),
            low=_decimal(output.get("stck_lwpr")),
            volume=_int(output.get("acml_vol")),
            timestamp=datetime.now(self._zone),
        )

    async def get_daily_candles(self, instrument: str, period: str = "D", adjusted: bool = True) -> List[Candle]:
        """
        Fetch recent daily (or weekly/monthly) candles.

        Args:
            instrument: Six-digit stock code
            period: "D", "W" or "M"
            adjusted: Use split-adjusted prices

        Returns:
            Candles in chronological order
        """
        params = {
            "FID_COND_MRKT_DIV_CODE": MARKET_DIVISION_STOCK,
            "FID_INPUT_ISCD": instrument,
            "FID_PERIOD_DIV_CODE": period,
            "FID_ORG_ADJ_PRC": "0" if adjusted else "1",
        }
        data = await self._call("get_daily_candles", "GET", DAILY_PRICE_PATH, TrId.DAILY_PRICE, params=params)

        candles = []
        for item in data.get("output") or []:
            try:
                day = datetime.strptime(item["stck_bsop_date"], "%Y%m%d")
                candles.append(Candle(
                    timestamp=day.replace(tzinfo=self._zone),
                    open=_decimal(item["stck_oprc"]),
                    high=_decimal(item["stck_hgpr"]),
                    low=_decimal(item["stck_lwpr"]),
                    close=_decimal(item["stck_clpr"]),
                    volume=_int(item.get("acml_vol")),
                ))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid candle data for {instrument}: {e}")

        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def get_minute_candles(self, instrument: str, until: Optional[time] = None) -> List[Candle]:
        """
        Fetch today's one-minute candles ending at `until` (local time).

        The broker returns at most 30 bars per call.
        """
        until = until or datetime.now(self._zone).time()
        params = {
            "FID_ETC_CLS_CODE": "",
            "FID_COND_MRKT_DIV_CODE": MARKET_DIVISION_STOCK,
            "FID_INPUT_ISCD": instrument,
            "FID_INPUT_HOUR_1": until.strftime("%H%M%S"),
            "FID_PW_DATA_INCU_YN": "N",
        }
        data = await self._call("get_minute_candles", "GET", MINUTE_PRICE_PATH, TrId.MINUTE_PRICE, params=params)

        candles = []
        for item in data.get("output2") or []:
            try:
                stamp = datetime.strptime(item["stck_bsop_date"] + item["stck_cntg_hour"], "%Y%m%d%H%M%S")
                candles.append(Candle(
                    timestamp=stamp.replace(tzinfo=self._zone),
                    open=_decimal(item["stck_oprc"]),
                    high=_decimal(item["stck_hgpr"]),
                    low=_decimal(item["stck_lwpr"]),
                    close=_decimal(item["stck_prpr"]),
                    volume=_int(item.get("cntg_vol")),
                ))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid minute candle for {instrument}: {e}")

        candles.sort(key=lambda c: c.timestamp)
        return candles

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_account_balance(self) -> AccountBalance:
        """Fetch cash and holdings for the configured account."""
        params = {
            **self._account_fields(),
            "AFHR_FLPR_YN": "N",
            "OFL_YN": "",
            "INQR_DVSN": "02",
            "UNPR_DVSN": "01",
            "FUND_STTL_ICLD_YN": "N",
            "FNCG_AMT_AUTO_RDPT_YN": "N",
            "PRCS_DVSN": "00",
            "CTX_AREA_FK100": "",
            "CTX_AREA_NK100": "",
        }
        data = await self._call("get_account_balance", "GET", ACCOUNT_PATH, TrId.ACCOUNT, params=params)

        holdings = []
        for item in data.get("output1") or []:
            quantity = _int(item.get("hldg_qty"))
            if quantity <= 0:
                continue
            holdings.append(Holding(
                instrument=item["pdno"],
                name=item.get("prdt_name", ""),
                quantity=quantity,
                orderable_quantity=_int(item.get("ord_psbl_qty")),
                average_price=_decimal(item.get("pchs_avg_pric")),
                current_price=_decimal(item.get("prpr")),
                evaluation_amount=_decimal(item.get("evlu_amt")),
            ))

        summary_rows = data.get("output2") or [{}]
        summary = summary_rows[0] if isinstance(summary_rows, list) else summary_rows
        return AccountBalance(
            deposit=_decimal(summary.get("dnca_tot_amt")),
            available_cash=_decimal(summary.get("prvs_rcdl_excc_amt")),
            total_evaluation=_decimal(summary.get("tot_evlu_amt")),
            holdings=holdings,
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(self, request: OrderRequest, timeout: Optional[float] = None) -> BrokerOrderResult:
        """
        Submit a cash order.

        Args:
            request: Validated order request
            timeout: Caller deadline in seconds, covering retries

        Returns:
            ACCEPTED result with the broker order id, or an AMBIGUOUS result

        Raises:
            ValidationError: Broker rejected the order
            ExternalApiError: The order definitely did not reach the broker
            AuthenticationError: No usable access token
        """
        tr_id = TrId.BUY_ORDER if request.direction == OrderDirection.BUY else TrId.SELL_ORDER
        price = "0" if request.order_type == OrderType.MARKET or request.price is None else str(int(request.price))
        body = {
            **self._account_fields(),
            "PDNO": request.instrument,
            "ORD_DVSN": ORDER_DIVISIONS[request.order_type].value,
            "ORD_QTY": str(request.quantity),
            "ORD_UNPR": price,
        }
        result = await self._mutate("submit_order", ORDER_PATH, tr_id, body, timeout)
        logger.info(
            f"Order submission {result.outcome.value}: {request.direction.value} "
            f"{request.instrument} x{request.quantity} -> {result.broker_order_id}",
            extra={"instrument": request.instrument},
        )
        return result

    async def cancel_order(
        self,
        broker_order_id: str,
        branch_code: Optional[str],
        quantity: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> BrokerOrderResult:
        """Cancel `quantity` shares of an open order, or all remaining when None."""
        body = {
            **self._account_fields(),
            "KRX_FWDG_ORD_ORGNO": branch_code or "",
            "ORGN_ODNO": broker_order_id,
            "ORD_DVSN": OrderDivision.LIMIT.value,
            "RVSE_CNCL_DVSN_CD": CANCEL_DIVISION,
            "ORD_QTY": str(quantity or 0),
            "ORD_UNPR": "0",
            "QTY_ALL_ORD_YN": "Y" if quantity is None else "N",
        }
        result = await self._mutate("cancel_order", CANCEL_PATH, TrId.CANCEL_ORDER, body, timeout)
        logger.info(f"Cancel of broker order {broker_order_id}: {result.outcome.value}")
        return result

    async def _inquire_orders(
        self,
        order_date: date,
        instrument: str = "",
        direction: Optional[OrderDirection] = None,
        broker_order_id: str = "",
    ) -> List[BrokerOrderStatus]:
        day = order_date.strftime("%Y%m%d")
        params = {
            **self._account_fields(),
            "INQR_STRT_DT": day,
            "INQR_END_DT": day,
            "SLL_BUY_DVSN_CD": SIDE_CODES.get(direction, "00"),
            "INQR_DVSN": "00",
            "PDNO": instrument,
            "CCLD_DVSN": "00",
            "ORD_GNO_BRNO": "",
            "ODNO": broker_order_id,
            "INQR_DVSN_3": "00",
            "INQR_DVSN_1": "",
            "CTX_AREA_FK100": "",
            "CTX_AREA_NK100": "",
        }
        data = await self._call("get_order_status", "GET", ORDER_STATUS_PATH, TrId.ORDER_STATUS, params=params)

        statuses = []
        for item in data.get("output1") or []:
            try:
                avg = _decimal(item.get("avg_prvs"))
                statuses.append(BrokerOrderStatus(
                    broker_order_id=item["odno"],
                    branch_code=item.get("ord_gno_brno") or None,
                    instrument=item["pdno"],
                    direction=SIDE_BY_CODE[item["sll_buy_dvsn_cd"]],
                    quantity=_int(item.get("ord_qty")),
                    filled_quantity=_int(item.get("tot_ccld_qty")),
                    remaining_quantity=_int(item.get("rmn_qty")),
                    rejected_quantity=_int(item.get("rjct_qty")),
                    cancelled_quantity=_int(item.get("cncl_cfrm_qty")),
                    cancelled=item.get("cncl_yn") == "Y",
                    average_fill_price=avg if avg > 0 else None,
                    order_date=datetime.strptime(item["ord_dt"], "%Y%m%d").date() if item.get("ord_dt") else order_date,
                    order_time=item.get("ord_tmd"),
                ))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable execution row: {e}")
        return statuses

    async def get_order_status(self, broker_order_id: str, order_date: Optional[date] = None) -> BrokerOrderStatus:
        """
        Look up one order by broker order id.

        Raises:
            NotFoundError: The broker has no such order on `order_date`
        """
        order_date = order_date or datetime.now(self._zone).date()
        for status in await self._inquire_orders(order_date, broker_order_id=broker_order_id):
            if status.broker_order_id.lstrip("0") == broker_order_id.lstrip("0"):
                return status
        raise NotFoundError.resource("Order", "broker_order_id", broker_order_id)

    async def find_order(
        self,
        request: OrderRequest,
        since: datetime,
        exclude: Optional[Set[str]] = None,
    ) -> Optional[BrokerOrderStatus]:
        """
        Find today's broker order matching an unresolved submission.

        Matches instrument, side and quantity among orders placed at or after
        `since`, skipping broker order ids in `exclude`. Returns the earliest
        match, or None when the broker has no such order.
        """
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        local_since = since.astimezone(self._zone)
        cutoff = local_since.strftime("%H%M%S")
        exclude = exclude or set()

        candidates = [
            s for s in await self._inquire_orders(local_since.date(), request.instrument, request.direction)
            if s.instrument == request.instrument
            and s.direction == request.direction
            and s.quantity == request.quantity
            and s.broker_order_id not in exclude
            and (s.order_time or "") >= cutoff
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda s: s.order_time or "")
        return candidates[0]
