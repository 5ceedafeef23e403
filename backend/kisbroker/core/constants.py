"""
Korea Investment & Securities (KIS) Open API constants.

Hosts, endpoint paths, header keys, transaction identifiers (TR IDs)
and broker message codes. Numeric policy (rate limits, retries,
timeouts) lives in Settings, not here.
"""

from enum import Enum

# Hosts
KIS_BASE_URL_REAL = "https://openapi.koreainvestment.com:9443"
KIS_BASE_URL_VIRTUAL = "https://openapivts.koreainvestment.com:29443"
KIS_REALTIME_URL_REAL = "ws://ops.koreainvestment.com:21000"
KIS_REALTIME_URL_VIRTUAL = "ws://ops.koreainvestment.com:31000"

# Endpoint paths
TOKEN_PATH = "/oauth2/tokenP"
APPROVAL_PATH = "/oauth2/Approval"
PRICE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-price"
DAILY_PRICE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-daily-price"
MINUTE_PRICE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-time-itemchartprice"
ACCOUNT_PATH = "/uapi/domestic-stock/v1/trading/inquire-balance"
ORDER_PATH = "/uapi/domestic-stock/v1/trading/order-cash"
CANCEL_PATH = "/uapi/domestic-stock/v1/trading/order-rvsecncl"
ORDER_STATUS_PATH = "/uapi/domestic-stock/v1/trading/inquire-daily-ccld"

# Header keys
HEADER_AUTHORIZATION = "authorization"
HEADER_APP_KEY = "appkey"
HEADER_APP_SECRET = "appsecret"
HEADER_TR_ID = "tr_id"
HEADER_CUSTOMER_TYPE = "custtype"
HEADER_CONTENT_TYPE = "content-type"

CONTENT_TYPE_JSON = "application/json; charset=utf-8"

# Market division code for KRX-listed stocks
MARKET_DIVISION_STOCK = "J"

# Broker response envelope
RESPONSE_SUCCESS = "0"

# Broker message codes with transport meaning
MSG_RATE_LIMITED = "EGW00201"          # requests per second exceeded
MSG_TOKEN_INVALID = "EGW00121"         # invalid token
MSG_TOKEN_EXPIRED = "EGW00123"         # expired token
MSG_TOKEN_ISSUE_LIMITED = "EGW00133"   # token issuance throttled (1 per minute)
MSG_TRY_AGAIN = frozenset({MSG_RATE_LIMITED, "EGW00202", "EGW00203"})
MSG_UNAUTHORIZED = frozenset({MSG_TOKEN_INVALID, MSG_TOKEN_EXPIRED})

# Cancel/modify division
CANCEL_DIVISION = "02"

# Realtime subscription request types
REALTIME_REGISTER = "1"
REALTIME_UNREGISTER = "2"
REALTIME_PINGPONG = "PINGPONG"
MSG_APPROVAL_INVALID = "OPSP0011"        # realtime approval key not found or expired



class TrId(str, Enum):
    """Transaction identifiers distinguishing operations on the same endpoint shape."""
    PRICE = "FHKST01010100"
    DAILY_PRICE = "FHKST01010400"
    MINUTE_PRICE = "FHKST03010200"
    ACCOUNT = "TTTC8434R"
    ORDER_STATUS = "TTTC8001R"
    BUY_ORDER = "TTTC0802U"
    SELL_ORDER = "TTTC0801U"
    CANCEL_ORDER = "TTTC0803U"
    REALTIME_PRICE = "H0STCNT0"

    def for_environment(self, virtual: bool) -> str:
        """
        TR ID to send for the given environment.

        Account and trading TR IDs carry a 'T' prefix in the real
        environment and a 'V' prefix in the mock-trading environment.
        Quotation TR IDs are shared.
        """
        if virtual and self.value.startswith("TTTC"):
            return "V" + self.value[1:]
        return self.value


class OrderDivision(str, Enum):
    """Broker order division codes (ORD_DVSN)."""
    LIMIT = "00"
    MARKET = "01"
    CONDITIONAL = "02"
