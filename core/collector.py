"""
Kline Collector: per-asset fetch-and-store with bounded retry, and the
sequential multi-asset cycle the scheduler fires.
"""

from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Sequence
import logging

from exchange.errors import FetchError, NoData, RateLimited, StorageError, Timeout
from exchange.models import CollectOutcome

if TYPE_CHECKING:
    from config import AssetConfig, CollectorConfig
    from exchange.coingecko_rest import CoinGeckoClient
    from storage.database import KlineStore

logger = logging.getLogger(__name__)


class KlineCollector:
    """
    Fetches the latest sample for each configured asset and stores it once.

    The existence check and the insert run back to back with no await between
    them, so overlapping cycles on one event loop cannot both insert the same
    (pair, timestamp).
    """

    def __init__(
        self,
        config: "CollectorConfig",
        assets: Sequence["AssetConfig"],
        client: "CoinGeckoClient",
        store: "KlineStore",
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config
        self.assets = tuple(assets)
        self.client = client
        self.store = store
        self._sleep = sleep or asyncio.sleep

    async def run_cycle(self) -> Dict[str, CollectOutcome]:
        """Run fetch-and-store for every asset in config order, pausing between them."""
        outcomes: Dict[str, CollectOutcome] = {}
        logger.info(f"[COLLECT] Cycle start: {len(self.assets)} assets")

        for i, asset in enumerate(self.assets):
            if i > 0 and self.config.asset_pause_sec > 0:
                await self._sleep(self.config.asset_pause_sec)
            try:
                outcomes[asset.symbol] = await self.fetch_and_store(asset)
            except Exception as e:
                # One asset must never take down the rest of the cycle
                logger.error(f"[COLLECT] {asset.symbol}: Unexpected error: {e}", exc_info=True)
                outcomes[asset.symbol] = CollectOutcome.FAILED

        summary = ", ".join(f"{s}={o.value}" for s, o in outcomes.items())
        logger.info(f"[COLLECT] Cycle done: {summary}")
        return outcomes

    async def fetch_and_store(self, asset: "AssetConfig") -> CollectOutcome:
        """Fetch the latest kline for one asset and insert it unless already stored."""
        attempts = self.config.max_attempts

        while attempts > 0:
            try:
                candidate = await self.client.fetch_latest(asset.id)
                kline = candidate.with_pair(asset.pair)

                if self.store.exists(asset.table, asset.pair, kline.timestamp):
                    logger.info(
                        f"[COLLECT] {asset.symbol}: Duplicate skipped for {kline.timestamp.isoformat()}"
                    )
                    return CollectOutcome.DUPLICATE

                self.store.insert(asset.table, kline)
                logger.info(
                    f"[COLLECT] {asset.symbol}: Inserted kline at {kline.timestamp.isoformat()} "
                    f"close={kline.close}"
                )
                return CollectOutcome.INSERTED

            except RateLimited:
                attempts -= 1
                logger.warning(
                    f"[COLLECT] {asset.symbol}: Rate limit hit. "
                    f"{attempts} attempt(s) left, backing off {self.config.rate_limit_backoff_sec:.0f}s"
                )
                if attempts > 0:
                    await self._sleep(self.config.rate_limit_backoff_sec)

            except Timeout:
                attempts -= 1
                logger.warning(
                    f"[COLLECT] {asset.symbol}: Upstream timeout. "
                    f"{attempts} attempt(s) left, backing off {self.config.timeout_backoff_sec:.0f}s"
                )
                if attempts > 0:
                    await self._sleep(self.config.timeout_backoff_sec)

            except NoData as e:
                logger.warning(f"[COLLECT] {asset.symbol}: No data: {e}")
                return CollectOutcome.FAILED

            except FetchError as e:
                logger.error(f"[COLLECT] {asset.symbol}: Upstream error: {e}")
                return CollectOutcome.FAILED

            except StorageError as e:
                logger.error(f"[COLLECT] {asset.symbol}: Storage error: {e}")
                return CollectOutcome.FAILED

        logger.error(
            f"[COLLECT] {asset.symbol}: Gave up after {self.config.max_attempts} attempts. "
            f"Next cycle will retry."
        )
        return CollectOutcome.EXHAUSTED
