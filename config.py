"""
Kline Collector: Configuration
All tunable parameters in one place.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Tuple

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FETCH_ENDPOINTS = ("ohlc", "market_chart")


@dataclass(frozen=True)
class AssetConfig:
    """One supported asset. Never mutated after startup."""
    id: str                             # CoinGecko coin id, e.g. "bitcoin"
    symbol: str                         # Short code, e.g. "BTC"
    pair: str                           # Display pair, e.g. "BTC/USDT"
    table: str                          # Per-asset storage table

    def __post_init__(self):
        if not _TABLE_NAME.match(self.table):
            raise ValueError(f"Invalid table name for {self.symbol}: {self.table!r}")


DEFAULT_ASSETS: Tuple[AssetConfig, ...] = (
    AssetConfig(id="bitcoin", symbol="BTC", pair="BTC/USDT", table="btc_kline"),
    AssetConfig(id="ethereum", symbol="ETH", pair="ETH/USDT", table="eth_kline"),
    AssetConfig(id="solana", symbol="SOL", pair="SOL/USDT", table="sol_kline"),
    AssetConfig(id="binancecoin", symbol="BNB", pair="BNB/USDT", table="bnb_kline"),
)


@dataclass
class ProviderConfig:
    base_url: str = "https://api.coingecko.com/api/v3"
    api_key: str = ""                   # Sent as x-cg-pro-api-key when set
    vs_currency: str = "usd"
    lookback_days: int = 1              # Keep within 1-2 days
    endpoint: str = "ohlc"              # "ohlc" or "market_chart"
    request_timeout_sec: float = 10.0


@dataclass
class CollectorConfig:
    poll_interval_minutes: int = 15     # Aligned to the quarter-hour
    max_attempts: int = 3
    rate_limit_backoff_sec: float = 10.0
    timeout_backoff_sec: float = 15.0
    asset_pause_sec: float = 3.0        # Between assets, shared rate budget
    run_on_start: bool = False

    @property
    def period_sec(self) -> float:
        return self.poll_interval_minutes * 60.0


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    hourly_limit: int = 100
    fallback_limit: int = 200


@dataclass
class StorageConfig:
    db_path: str = "./data/klines.db"


@dataclass
class AppConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    assets: Tuple[AssetConfig, ...] = DEFAULT_ASSETS
    log_level: str = "INFO"

    def validate(self):
        """Raise ValueError on settings the collector cannot run with."""
        if not self.assets:
            raise ValueError("At least one asset must be configured")
        if not 1 <= self.provider.lookback_days <= 2:
            raise ValueError(
                f"LOOKBACK_DAYS must be 1 or 2, got {self.provider.lookback_days}"
            )
        if self.provider.endpoint not in FETCH_ENDPOINTS:
            raise ValueError(
                f"FETCH_ENDPOINT must be one of {FETCH_ENDPOINTS}, got {self.provider.endpoint!r}"
            )
        if self.provider.request_timeout_sec <= 0:
            raise ValueError("REQUEST_TIMEOUT_SEC must be positive")
        if self.collector.poll_interval_minutes <= 0:
            raise ValueError("POLL_INTERVAL_MINUTES must be positive")
        if self.collector.max_attempts < 1:
            raise ValueError("MAX_ATTEMPTS must be at least 1")
        symbols = [a.symbol.upper() for a in self.assets]
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"Duplicate asset symbols: {symbols}")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.provider.base_url = os.getenv("COINGECKO_BASE_URL", config.provider.base_url)
        config.provider.api_key = os.getenv("COINGECKO_API_KEY", "")
        config.provider.vs_currency = os.getenv("VS_CURRENCY", "usd")
        config.provider.lookback_days = int(os.getenv("LOOKBACK_DAYS", "1"))
        config.provider.endpoint = os.getenv("FETCH_ENDPOINT", "ohlc").lower()
        config.provider.request_timeout_sec = float(os.getenv("REQUEST_TIMEOUT_SEC", "10"))
        config.collector.poll_interval_minutes = int(os.getenv("POLL_INTERVAL_MINUTES", "15"))
        config.collector.max_attempts = int(os.getenv("MAX_ATTEMPTS", "3"))
        config.collector.rate_limit_backoff_sec = float(os.getenv("RATE_LIMIT_BACKOFF_SEC", "10"))
        config.collector.timeout_backoff_sec = float(os.getenv("TIMEOUT_BACKOFF_SEC", "15"))
        config.collector.asset_pause_sec = float(os.getenv("ASSET_PAUSE_SEC", "3"))
        config.collector.run_on_start = os.getenv("RUN_ON_START", "false").lower() == "true"
        config.server.host = os.getenv("HOST", "0.0.0.0")
        config.server.port = int(os.getenv("PORT", "3001"))
        config.storage.db_path = os.getenv("DB_PATH", "./data/klines.db")
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        return config
