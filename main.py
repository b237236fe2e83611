"""
Kline Collector: Main Orchestrator.
Ties all components together: startup, aligned collection loop, read API, shutdown.
"""

from __future__ import annotations
import asyncio
import os
import sys
import signal
import logging

from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv()

# Create data dir before FileHandler
os.makedirs("data", exist_ok=True)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("data/collector.log"),
    ],
)
logger = logging.getLogger(__name__)

from config import AppConfig
from core.collector import KlineCollector
from core.history import KlineHistory
from core.scheduler import AlignedScheduler
from exchange.coingecko_rest import CoinGeckoClient
from storage.database import KlineStore
from web_api import ApiServer


class CollectorApp:
    """Main application orchestrator."""

    def __init__(self, config: AppConfig):
        self.config = config

        self.store = KlineStore(config.storage.db_path)
        self.client = CoinGeckoClient(
            base_url=config.provider.base_url,
            vs_currency=config.provider.vs_currency,
            lookback_days=config.provider.lookback_days,
            endpoint=config.provider.endpoint,
            timeout_sec=config.provider.request_timeout_sec,
            api_key=config.provider.api_key,
            grain_sec=config.collector.period_sec,
        )

        # Ingestion
        self.collector = KlineCollector(
            config=config.collector,
            assets=config.assets,
            client=self.client,
            store=self.store,
        )
        self.scheduler = AlignedScheduler()

        # Read side
        self.history = KlineHistory(self.store, config.assets)
        self.api = ApiServer(
            self.history,
            host=config.server.host,
            port=config.server.port,
            hourly_limit=config.server.hourly_limit,
            fallback_limit=config.server.fallback_limit,
        )

    async def start(self):
        """Full startup sequence."""
        logger.info("=" * 60)
        logger.info("   KLINE COLLECTOR STARTING")
        logger.info("=" * 60)

        # 1. Connect database and create per-asset tables
        os.makedirs(os.path.dirname(self.config.storage.db_path) or "data", exist_ok=True)
        self.store.connect(asset.table for asset in self.config.assets)

        # 2. Read API
        await self.api.start()

        # 3. Aligned collection loop
        symbols = ", ".join(a.symbol for a in self.config.assets)
        logger.info(
            f"[BOOT] Tracking {symbols} every {self.config.collector.poll_interval_minutes}m "
            f"via /{self.config.provider.endpoint}"
        )
        await self.scheduler.run_aligned(
            self.config.collector.period_sec,
            self.collector.run_cycle,
            run_now=self.config.collector.run_on_start,
        )

    async def stop(self):
        """Graceful shutdown."""
        logger.info("[SHUTDOWN] Stopping collector...")
        self.scheduler.stop()
        await self.scheduler.drain()
        await self.api.stop()
        await self.client.close()
        self.store.close()
        logger.info("[SHUTDOWN] Complete.")


async def main():
    """Entry point."""
    config = AppConfig.from_env()
    logging.getLogger().setLevel(config.log_level.upper())

    try:
        config.validate()
    except ValueError as e:
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    app = CollectorApp(config)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            app.scheduler.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received in main loop.")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await app.stop()
        sys.exit(1)
    await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
