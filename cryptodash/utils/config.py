from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    db_path: str = Field(default="data/cryptodash.db", description="SQLite database path")

    binance_base_url: str = Field(default="https://api.binance.com", description="Primary price feed base URL")
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3", description="Secondary price feed base URL")
    price_request_timeout: float = Field(default=10.0, description="Price feed request timeout in seconds")
    rate_limit_price_feed: float = Field(default=5.0, description="Price feed requests per second")
    price_cache_ttl_seconds: int = Field(default=86400, description="Max age of a cached price before it is ignored")
    quote_asset: str = Field(default="USDT", description="Quote asset used for primary feed symbols")

    next_step_scan_limit: int = Field(default=50, description="Step indices scanned for the next unexecuted step")
    default_schedule_steps: int = Field(default=10, description="Default rows in a projected schedule")
    max_schedule_steps: int = Field(default=50, description="Upper bound for requested schedule rows")

    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/cryptodash.log", description="Log file path; empty logs to stdout only")
    log_json: bool = Field(default=True, description="JSON log lines; false renders plain console output")

    host: str = Field(default="0.0.0.0", description="HTTP bind host")
    port: int = Field(default=5000, description="HTTP bind port")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    global _settings
    _settings = Settings()
    return _settings
