"""
Order model and lifecycle state machine.

State graph (terminal states marked *):

    CREATED -> SUBMITTED -> ACCEPTED -> PARTIALLY_FILLED -> FILLED*
    SUBMITTED | ACCEPTED | PARTIALLY_FILLED -> CANCELLED* | EXPIRED*
    SUBMITTED | ACCEPTED -> REJECTED*

PARTIALLY_FILLED may repeat as further fills arrive.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class OrderDirection(str, enum.Enum):
    """Order side (buy/sell)."""
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, enum.Enum):
    """Order types."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    CONDITIONAL = "CONDITIONAL"


class OrderStatus(str, enum.Enum):
    """Order lifecycle status."""
    CREATED = "CREATED"                    # Validated, not yet sent
    SUBMITTED = "SUBMITTED"                # Sent to broker
    ACCEPTED = "ACCEPTED"                  # Broker accepted
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"                      # Completely filled
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"                  # Broker rejected or never delivered
    EXPIRED = "EXPIRED"                    # Exceeded max order duration

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_cancellable(self) -> bool:
        return self in CANCELLABLE_STATUSES


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELLED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})

CANCELLABLE_STATUSES = frozenset({
    OrderStatus.SUBMITTED,
    OrderStatus.ACCEPTED,
    OrderStatus.PARTIALLY_FILLED,
})

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.SUBMITTED}),
    OrderStatus.SUBMITTED: frozenset({
        OrderStatus.ACCEPTED,
        OrderStatus.CANCELLED,
        OrderStatus.REJECTED,
        OrderStatus.EXPIRED,
    }),
    OrderStatus.ACCEPTED: frozenset({
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.REJECTED,
        OrderStatus.EXPIRED,
    }),
    OrderStatus.PARTIALLY_FILLED: frozenset({
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    }),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class OrderRequest(BaseModel):
    """What a strategy asks the coordinator to place."""
    instrument: str
    direction: OrderDirection
    order_type: OrderType = OrderType.MARKET
    quantity: int
    price: Optional[Decimal] = None
    strategy_id: Optional[str] = None

    @model_validator(mode="after")
    def check_price(self) -> "OrderRequest":
        if self.order_type != OrderType.MARKET and self.price is None:
            raise ValueError(f"{self.order_type.value} order requires a price")
        if self.price is not None and self.price <= 0:
            raise ValueError("price must be positive")
        return self


class StatusChange(BaseModel):
    """One applied transition."""
    status: OrderStatus
    at: datetime
    reason: Optional[str] = None


class Order(BaseModel):
    """
    An order owned by the lifecycle coordinator.

    Mutated only through the coordinator under the order's lock;
    callers receive copies.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    instrument: str
    direction: OrderDirection
    order_type: OrderType
    quantity: int
    price: Optional[Decimal] = None
    strategy_id: Optional[str] = None
    status: OrderStatus = OrderStatus.CREATED
    filled_quantity: int = 0
    average_fill_price: Optional[Decimal] = None
    broker_order_id: Optional[str] = None
    broker_branch_code: Optional[str] = None
    error_message: Optional[str] = None
    needs_reconciliation: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    submitted_at: Optional[datetime] = None
    last_updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    history: list[StatusChange] = Field(default_factory=list)

    @classmethod
    def from_request(cls, request: OrderRequest, now: datetime) -> "Order":
        order = cls(
            instrument=request.instrument,
            direction=request.direction,
            order_type=request.order_type,
            quantity=request.quantity,
            price=request.price,
            strategy_id=request.strategy_id,
            created_at=now,
            last_updated_at=now,
        )
        order.history.append(StatusChange(status=OrderStatus.CREATED, at=now))
        return order

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - self.filled_quantity

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.direction.value} {self.instrument} x{self.quantity} {self.status.value}>"
