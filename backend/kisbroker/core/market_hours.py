"""Default KRX trading-session calendar."""

from datetime import date, datetime, time, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo


class KrxMarketClock:
    """
    Regular-session clock for the Korea Exchange.

    Open on weekdays from `open_time` (inclusive) to `close_time`
    (exclusive), local time. Exchange holidays are supplied by the
    caller; this clock does not know the holiday calendar.
    """

    def __init__(
        self,
        timezone_name: str = "Asia/Seoul",
        open_time: time = time(9, 0),
        close_time: time = time(15, 30),
        holidays: Optional[Iterable[date]] = None,
    ):
        self.zone = ZoneInfo(timezone_name)
        self.open_time = open_time
        self.close_time = close_time
        self.holidays = set(holidays or ())

    def now(self) -> datetime:
        """Current local market time."""
        return datetime.now(self.zone)

    def to_local(self, at: datetime) -> datetime:
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return at.astimezone(self.zone)

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() < 5 and day not in self.holidays

    def is_market_open(self, instrument: str, at: Optional[datetime] = None) -> bool:
        local = self.to_local(at) if at is not None else self.now()
        if not self.is_trading_day(local.date()):
            return False
        return self.open_time <= local.time() < self.close_time
