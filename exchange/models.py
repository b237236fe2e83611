"""
Data models for the Kline Collector.
Uses Decimal for all price and volume values, never floats.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict


class CollectOutcome(Enum):
    INSERTED = "INSERTED"
    DUPLICATE = "DUPLICATE"     # Already stored, counts as success
    EXHAUSTED = "EXHAUSTED"     # Retry budget used up on transient errors
    FAILED = "FAILED"           # Non-transient error, no retry


@dataclass(frozen=True)
class Kline:
    """One OHLCV sample for a pair. `timestamp` is always tz-aware UTC."""
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    pair: str = ""

    def with_pair(self, pair: str) -> "Kline":
        return replace(self, pair=pair)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": float(self.volume),
            "pair": self.pair,
        }


def utc_from_ms(ms: float) -> datetime:
    """Unix milliseconds -> tz-aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def to_decimal(value: Any) -> Decimal:
    return Decimal(str(value))


def floor_timestamp(ts: datetime, grain_sec: float) -> datetime:
    """Truncate a UTC timestamp down to a multiple of `grain_sec` since the epoch."""
    epoch = ts.timestamp()
    return datetime.fromtimestamp(epoch - (epoch % grain_sec), tz=timezone.utc)
