from kisbroker.models.order import (
    ALLOWED_TRANSITIONS,
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    Order,
    OrderDirection,
    OrderRequest,
    OrderStatus,
    OrderType,
    StatusChange,
    can_transition,
)
from kisbroker.models.market import Candle, Quote, TickEvent
from kisbroker.models.account import AccountBalance, Holding
from kisbroker.models.broker import BrokerOrderResult, BrokerOrderStatus, OrderOutcome

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "Order",
    "OrderDirection",
    "OrderRequest",
    "OrderStatus",
    "OrderType",
    "StatusChange",
    "can_transition",
    "Candle",
    "Quote",
    "TickEvent",
    "AccountBalance",
    "Holding",
    "BrokerOrderResult",
    "BrokerOrderStatus",
    "OrderOutcome",
]
