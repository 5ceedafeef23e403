"""Results returned by the broker REST client for mutating and status calls."""

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from kisbroker.models.order import OrderDirection, OrderStatus


class OrderOutcome(str, enum.Enum):
    """How a mutating call ended."""
    ACCEPTED = "ACCEPTED"     # Broker confirmed receipt
    AMBIGUOUS = "AMBIGUOUS"   # Dispatched, result unknown; reconcile before acting


class BrokerOrderResult(BaseModel):
    """Result returned by broker after order submission or cancellation."""
    outcome: OrderOutcome
    broker_order_id: Optional[str] = None
    branch_code: Optional[str] = None
    order_time: Optional[str] = None
    message: Optional[str] = None
    raw_response: Optional[dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_ambiguous(self) -> bool:
        return self.outcome == OrderOutcome.AMBIGUOUS


class BrokerOrderStatus(BaseModel):
    """Order state as reported by the broker's daily executions inquiry."""
    broker_order_id: str
    branch_code: Optional[str] = None
    instrument: str
    direction: OrderDirection
    quantity: int
    filled_quantity: int
    remaining_quantity: int
    rejected_quantity: int = 0
    cancelled_quantity: int = 0
    cancelled: bool = False
    average_fill_price: Optional[Decimal] = None
    order_date: Optional[date] = None
    order_time: Optional[str] = None

    @property
    def status(self) -> OrderStatus:
        """Map the broker's counters onto the lifecycle vocabulary."""
        if self.cancelled:
            return OrderStatus.CANCELLED
        if self.filled_quantity >= self.quantity:
            return OrderStatus.FILLED
        if self.rejected_quantity > 0 and self.filled_quantity == 0:
            return OrderStatus.REJECTED
        if self.remaining_quantity == 0 or self.filled_quantity + self.cancelled_quantity >= self.quantity:
            # Nothing left open: the unfilled rest was cancelled, or refused after a partial fill
            return OrderStatus.CANCELLED
        if self.filled_quantity > 0:
            return OrderStatus.PARTIALLY_FILLED
        return OrderStatus.ACCEPTED
