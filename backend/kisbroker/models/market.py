"""Market data value types: quotes, candles and realtime ticks."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Quote(BaseModel):
    """Current price snapshot for one instrument."""
    instrument: str
    price: Decimal
    change: Decimal
    change_rate: Decimal
    open: Decimal
    high: Decimal
    low: Decimal
    volume: int
    timestamp: datetime


class Candle(BaseModel):
    """One OHLCV bar."""
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int


class TickEvent(BaseModel):
    """
    One realtime execution tick.

    `sequence` is used for duplicate and stale detection only. It is
    compared per instrument within `trade_date`.
    """
    model_config = ConfigDict(frozen=True)

    instrument: str
    price: Decimal
    volume: int
    timestamp: datetime
    trade_date: date
    sequence: Optional[int] = None
