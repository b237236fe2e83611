"""
Kline History: read-only queries over the stored klines.
"""

from __future__ import annotations
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence
import logging

from exchange.errors import UnsupportedAsset
from exchange.models import Kline

if TYPE_CHECKING:
    from config import AssetConfig
    from storage.database import KlineStore

logger = logging.getLogger(__name__)


class KlineHistory:
    """Range, latest and fallback reads for the HTTP API."""

    def __init__(self, store: "KlineStore", assets: Sequence["AssetConfig"]):
        self.store = store
        self.assets = tuple(assets)

    @property
    def primary(self) -> "AssetConfig":
        return self.assets[0]

    def resolve(self, symbol: str) -> "AssetConfig":
        """Case-insensitive symbol lookup. Raises UnsupportedAsset."""
        wanted = symbol.upper()
        for asset in self.assets:
            if asset.symbol.upper() == wanted:
                return asset
        raise UnsupportedAsset(symbol)

    def asset_for_pair(self, pair: str) -> "AssetConfig":
        """The asset whose pair matches, else the primary asset."""
        for asset in self.assets:
            if asset.pair == pair:
                return asset
        return self.primary

    def latest(self, table: str, limit: int) -> List[Kline]:
        """Up to `limit` newest records, descending."""
        return self.store.latest(table, limit)

    def range(self, table: str, pair: str, start: datetime, end: datetime) -> List[Kline]:
        """Records with start <= timestamp <= end, ascending."""
        if start > end:
            return []
        return self.store.range(table, pair, start, end)

    def fallback(self, table: str, pair: str, limit: int) -> List[Kline]:
        """Newest `limit` records for the pair, returned in chronological order."""
        return list(reversed(self.store.recent(table, pair, limit)))

    def latest_across_assets(self) -> Dict[str, Optional[Kline]]:
        result: Dict[str, Optional[Kline]] = {}
        for asset in self.assets:
            rows = self.store.latest(asset.table, 1)
            result[asset.symbol] = rows[0] if rows else None
        return result

    def supported(self) -> List[Dict[str, str]]:
        return [{"symbol": a.symbol, "pair": a.pair, "id": a.id} for a in self.assets]
