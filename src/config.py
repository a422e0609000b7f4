from __future__ import annotations

from decimal import Decimal
from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    p2p_proxy_url: str = "http://localhost:54321/functions/v1/bybit-proxy"
    p2p_proxy_api_key: str = ""
    forex_base_url: str = "https://api.freecurrencyapi.com/v1"
    forex_api_key: str = ""
    forex_currencies: tuple[str, ...] = ("EUR", "GBP", "CAD")
    comparison_url: str = "http://localhost:8080/api/comparison-rates"

    # Seconds throughout.
    p2p_cache_ttl: float = 30.0
    p2p_cooldown: float = 30.0
    p2p_timeout: float = 25.0
    p2p_constrained_timeout: float = 5.0
    p2p_retry_attempts: int = 2
    p2p_retry_delay: float = 2.0

    forex_cache_ttl: float = 1800.0
    forex_cooldown: float = 30.0
    forex_timeout: float = 5.0
    forex_constrained_timeout: float = 3.0

    comparison_cache_ttl: float = 300.0
    comparison_constrained_cache_ttl: float = 600.0
    comparison_cooldown: float = 30.0
    comparison_timeout: float = 10.0
    comparison_constrained_timeout: float = 3.0

    refresh_interval: float = 60.0

    transfer_fee: Decimal = Decimal("0.001")
    usd_margin_percent: Decimal = Decimal("2.5")
    other_currencies_margin_percent: Decimal = Decimal("3.0")

    database_url: str = "sqlite:///rate_history.db"
    throttle_state_path: str = ".cache/throttle_state.json"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
