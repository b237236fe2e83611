"""Pytest configuration and fixtures for kline collector testing."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

import pytest

from config import AssetConfig, CollectorConfig
from exchange.models import Kline
from storage.database import KlineStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def assets() -> Tuple[AssetConfig, ...]:
    """Three assets, BTC first as the primary."""
    return (
        AssetConfig(id="bitcoin", symbol="BTC", pair="BTC/USDT", table="btc_kline"),
        AssetConfig(id="ethereum", symbol="ETH", pair="ETH/USDT", table="eth_kline"),
        AssetConfig(id="solana", symbol="SOL", pair="SOL/USDT", table="sol_kline"),
    )


@pytest.fixture
def store(assets):
    """In-memory store with one table per asset."""
    db = KlineStore(":memory:")
    db.connect(a.table for a in assets)
    yield db
    db.close()


@pytest.fixture
def collector_config() -> CollectorConfig:
    return CollectorConfig(
        max_attempts=3,
        rate_limit_backoff_sec=10.0,
        timeout_backoff_sec=15.0,
        asset_pause_sec=3.0,
    )


@pytest.fixture
def make_kline() -> Callable[..., Kline]:
    """Factory for klines spaced 15 minutes apart from 2024-01-01 00:00 UTC."""
    def _make(i: int = 0, close: str = "100", pair: str = "BTC/USDT") -> Kline:
        c = Decimal(close)
        return Kline(
            timestamp=T0 + timedelta(minutes=15 * i),
            open=c - 1,
            high=c + 5,
            low=c - 5,
            close=c,
            volume=Decimal("12.5"),
            pair=pair,
        )
    return _make


class FakeSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float):
        self.calls.append(delay)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


class FakeClient:
    """Stands in for CoinGeckoClient. Plays back a script of klines or exceptions."""

    def __init__(self, script: Optional[list] = None, default=None):
        self.script = list(script or [])
        self.default = default
        self.calls: List[str] = []

    async def fetch_latest(self, coin_id: str, days: Optional[int] = None) -> Kline:
        self.calls.append(coin_id)
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, BaseException) or (
            isinstance(outcome, type) and issubclass(outcome, BaseException)
        ):
            raise outcome
        return outcome


@pytest.fixture
def fake_client_factory() -> Callable[..., FakeClient]:
    return FakeClient
