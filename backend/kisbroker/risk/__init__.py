"""Pre-submission risk checks and the providers they consult."""

from kisbroker.risk.providers import (
    BalanceFundsProvider,
    FundsProvider,
    LastPriceCache,
    MarketClock,
    ReferencePriceProvider,
)
from kisbroker.risk.validator import OrderValidator, estimated_proceeds, required_cash

__all__ = [
    "BalanceFundsProvider",
    "FundsProvider",
    "LastPriceCache",
    "MarketClock",
    "ReferencePriceProvider",
    "OrderValidator",
    "estimated_proceeds",
    "required_cash",
]
