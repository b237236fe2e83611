"""
CoinGecko REST API Client.
One GET per call against the OHLC or market-chart endpoint, parsed into a
candidate Kline for the most recent sample.
"""

from __future__ import annotations
import asyncio
import json
from dataclasses import replace
from decimal import InvalidOperation
from typing import Any, Dict, List, Optional
import aiohttp
import logging

from exchange.errors import NoData, RateLimited, Timeout, UpstreamError
from exchange.models import Kline, floor_timestamp, to_decimal, utc_from_ms

logger = logging.getLogger(__name__)

# Prices considered for the derived high/low in market-chart mode
HIGH_LOW_WINDOW = 6


class CoinGeckoClient:
    """Async CoinGecko market-data wrapper."""

    def __init__(
        self,
        base_url: str,
        vs_currency: str = "usd",
        lookback_days: int = 1,
        endpoint: str = "ohlc",
        timeout_sec: float = 10.0,
        api_key: str = "",
        grain_sec: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.vs_currency = vs_currency
        self.lookback_days = lookback_days
        self.endpoint = endpoint
        self.timeout_sec = timeout_sec
        self.api_key = api_key
        self.grain_sec = grain_sec
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec)
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        """GET a JSON document, mapping failures onto the fetch error taxonomy."""
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-pro-api-key"] = self.api_key

        try:
            async with session.get(url, params=params, headers=headers) as resp:
                if resp.status == 429:
                    raise RateLimited(f"Rate limited on {path}")
                if resp.status >= 400:
                    body = await resp.text()
                    raise UpstreamError(
                        f"{path} returned {resp.status}: {body[:200]}", status=resp.status
                    )
                try:
                    return await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError) as e:
                    raise NoData(f"Unparseable payload from {path}: {e}") from e

        except asyncio.TimeoutError as e:
            raise Timeout(f"{path} exceeded {self.timeout_sec}s") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"{path} transport error: {e}") from e

    # ==================== Market Endpoints ====================

    async def fetch_latest(self, coin_id: str, days: Optional[int] = None) -> Kline:
        """Fetch the most recent sample for `coin_id`. The result carries no pair."""
        days = days or self.lookback_days
        if self.endpoint == "market_chart":
            kline = await self.fetch_latest_market_chart(coin_id, days)
        else:
            kline = await self.fetch_latest_ohlc(coin_id, days)
        logger.debug(f"[FETCH] {coin_id}: {kline.timestamp.isoformat()} close={kline.close}")
        return kline

    async def fetch_latest_ohlc(self, coin_id: str, days: int) -> Kline:
        """
        GET /coins/{id}/ohlc -> [[ts_ms, open, high, low, close], ...].
        The endpoint has no volume, so volume is 0.
        """
        data = await self._get(
            f"/coins/{coin_id}/ohlc",
            {"vs_currency": self.vs_currency, "days": str(days)},
        )
        if not isinstance(data, list) or not data:
            raise NoData(f"No OHLC data for {coin_id}")
        return parse_ohlc_row(data[-1])

    async def fetch_latest_market_chart(self, coin_id: str, days: int) -> Kline:
        """
        GET /coins/{id}/market_chart -> {"prices": [[ts, p], ...], "total_volumes": [...]}.
        OHLC is derived from the trailing price samples.
        """
        data = await self._get(
            f"/coins/{coin_id}/market_chart",
            {"vs_currency": self.vs_currency, "days": str(days)},
        )
        if not isinstance(data, dict):
            raise NoData(f"No market chart data for {coin_id}")
        kline = parse_market_chart(data.get("prices"), data.get("total_volumes"))
        if self.grain_sec:
            kline = replace(kline, timestamp=floor_timestamp(kline.timestamp, self.grain_sec))
        return kline


def parse_ohlc_row(row: List[Any]) -> Kline:
    try:
        ts, o, h, l, c = row[:5]
        return Kline(
            timestamp=utc_from_ms(float(ts)),
            open=to_decimal(o),
            high=to_decimal(h),
            low=to_decimal(l),
            close=to_decimal(c),
        )
    except (TypeError, ValueError, KeyError, InvalidOperation, OverflowError, OSError) as e:
        raise NoData(f"Malformed OHLC row {row!r}: {e}") from e


def parse_market_chart(prices: Any, volumes: Any) -> Kline:
    if not isinstance(prices, list) or not prices:
        raise NoData("No price data")
    try:
        ts, close = prices[-1][0], to_decimal(prices[-1][1])
        # Open defaults to the preceding sample's close
        open_ = to_decimal(prices[-2][1]) if len(prices) >= 2 else close
        window = [to_decimal(p[1]) for p in prices[-HIGH_LOW_WINDOW:]]
        volume = to_decimal(volumes[-1][1]) if volumes else to_decimal(0)
        return Kline(
            timestamp=utc_from_ms(float(ts)),
            open=open_,
            high=max(window),
            low=min(window),
            close=close,
            volume=volume,
        )
    except (TypeError, ValueError, IndexError, KeyError, InvalidOperation, OverflowError, OSError) as e:
        raise NoData(f"Malformed market chart payload: {e}") from e
