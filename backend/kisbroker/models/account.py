"""Account balance and holdings."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class Holding(BaseModel):
    """One position held in the account."""
    instrument: str
    name: str = ""
    quantity: int
    orderable_quantity: int
    average_price: Decimal
    current_price: Optional[Decimal] = None
    evaluation_amount: Optional[Decimal] = None


class AccountBalance(BaseModel):
    """Account information from broker."""
    deposit: Decimal
    available_cash: Decimal
    total_evaluation: Decimal
    holdings: list[Holding] = Field(default_factory=list)
    currency: str = "KRW"
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def holding(self, instrument: str) -> Optional[Holding]:
        for h in self.holdings:
            if h.instrument == instrument:
                return h
        return None
