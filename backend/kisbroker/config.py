"""
Application configuration for kisbroker.

Provides:
- Environment-aware settings
- Broker credentials and account identity
- Every numeric policy constant (rate limits, retries, timeouts, fees, risk)
"""

from decimal import Decimal
from datetime import time
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

from kisbroker.core.constants import (
    KIS_BASE_URL_REAL,
    KIS_BASE_URL_VIRTUAL,
    KIS_REALTIME_URL_REAL,
    KIS_REALTIME_URL_VIRTUAL,
)


class Settings(BaseSettings):
    # Environment
    app_env: str = "development"

    # Broker credentials
    kis_app_key: str = ""
    kis_app_secret: str = ""
    kis_account_number: str = ""       # CANO, first 8 digits of the account
    kis_account_product_code: str = "01"
    kis_customer_type: str = "P"       # P = individual, B = corporate
    kis_virtual: bool = False          # mock-trading environment

    # REST quotas
    rate_limit_per_second: int = 5
    rate_limit_per_minute: int = 100

    # Access token
    token_lifetime_seconds: int = 28800
    token_refresh_margin_seconds: int = 60

    # Retry policy
    retry_max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff_factor: float = 1.0  # 1.0 keeps the delay fixed
    retry_max_delay_seconds: float = 10.0

    # HTTP timeouts
    http_connect_timeout_seconds: float = 5.0
    http_read_timeout_seconds: float = 10.0

    # Realtime feed
    ws_connect_timeout_seconds: float = 10.0
    ws_reconnect_delay_seconds: float = 5.0
    ws_max_reconnect_attempts: int = 5
    ws_stable_seconds: float = 30.0
    feed_buffer_size: int = 1000

    # Trading policy
    fee_rate: Decimal = Decimal("0.00015")
    tax_rate: Decimal = Decimal("0.0023")
    max_order_quantity: int = 10
    strategy_max_quantity: dict[str, int] = {}
    max_order_duration_minutes: int = 60

    # Market session
    market_timezone: str = "Asia/Seoul"
    market_open: time = time(9, 0)
    market_close: time = time(15, 30)

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    @field_validator(
        "rate_limit_per_second",
        "rate_limit_per_minute",
        "retry_max_attempts",
        "token_lifetime_seconds",
        "feed_buffer_size",
        "max_order_quantity",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("kis_account_number")
    @classmethod
    def validate_account_number(cls, v: str) -> str:
        v = v.strip()
        if v and (len(v) != 8 or not v.isdigit()):
            raise ValueError("kis_account_number must be the 8-digit CANO")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env in ("production", "prod")

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.app_env in ("development", "dev", "")

    @property
    def base_url(self) -> str:
        """REST host for the configured trading environment."""
        return KIS_BASE_URL_VIRTUAL if self.kis_virtual else KIS_BASE_URL_REAL

    @property
    def realtime_url(self) -> str:
        """WebSocket host for the configured trading environment."""
        return KIS_REALTIME_URL_VIRTUAL if self.kis_virtual else KIS_REALTIME_URL_REAL

    def max_quantity_for(self, strategy_id: str | None) -> int:
        """Maximum quantity a single order of the given strategy may request."""
        if strategy_id and strategy_id in self.strategy_max_quantity:
            return self.strategy_max_quantity[strategy_id]
        return self.max_order_quantity

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars not defined in Settings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def validate_trading_policy(settings: Settings) -> list[str]:
    """
    Check the configured policy constants against sane ranges.

    Called on startup. Returns a list of problems; an empty list means
    the configuration is usable.
    """
    problems = []
    if not 1 <= settings.rate_limit_per_second <= 20:
        problems.append("rate_limit_per_second out of acceptable range (1-20)")
    if settings.rate_limit_per_minute < settings.rate_limit_per_second:
        problems.append("rate_limit_per_minute must be >= rate_limit_per_second")
    if not 1 <= settings.retry_max_attempts <= 10:
        problems.append("retry_max_attempts out of acceptable range (1-10)")
    if settings.token_refresh_margin_seconds >= settings.token_lifetime_seconds:
        problems.append("token_refresh_margin_seconds must be shorter than the token lifetime")
    if not Decimal("0") <= settings.fee_rate < Decimal("0.01"):
        problems.append("fee_rate out of acceptable range (0-1%)")
    if not Decimal("0") <= settings.tax_rate < Decimal("0.01"):
        problems.append("tax_rate out of acceptable range (0-1%)")
    if settings.market_open >= settings.market_close:
        problems.append("market_open must be before market_close")
    if settings.is_production:
        for name in ("kis_app_key", "kis_app_secret", "kis_account_number"):
            if not getattr(settings, name):
                problems.append(f"{name} must be set")
    return problems
