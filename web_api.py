"""
Read API: aiohttp.web server exposing stored kline history as JSON.
Runs on the same event loop as the collector.
"""

from __future__ import annotations
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple
from aiohttp import web
import logging

from core.history import KlineHistory
from exchange.errors import StorageError, UnsupportedAsset
from exchange.models import Kline

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class KlineEncoder(json.JSONEncoder):
    """JSON encoder that handles Kline, Decimal and datetime."""
    def default(self, o):
        if isinstance(o, Kline):
            return o.to_dict()
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def json_response(data, status=200):
    return web.Response(
        text=json.dumps(data, cls=KlineEncoder),
        content_type="application/json",
        status=status,
    )


def parse_time(value: str) -> datetime:
    """ISO-8601 string or epoch milliseconds -> tz-aware UTC datetime."""
    value = value.strip()
    try:
        return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_window(request: web.Request) -> Optional[Tuple[datetime, datetime]]:
    """(start, end) from the query string, or None when neither bound is given."""
    start, end = request.query.get("start"), request.query.get("end")
    if not start and not end:
        return None
    try:
        return (
            parse_time(start) if start else EPOCH,
            parse_time(end) if end else datetime.now(timezone.utc),
        )
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": f"Invalid time range: start={start!r} end={end!r}"}),
            content_type="application/json",
        )


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
    except UnsupportedAsset as e:
        response = json_response({"error": str(e)}, status=404)
    except StorageError as e:
        logger.error(f"[API] {request.path}: {e}")
        response = json_response({"error": "Server error"}, status=500)
    except web.HTTPException as e:
        e.headers["Access-Control-Allow-Origin"] = "*"
        raise
    except Exception as e:
        logger.error(f"[API] {request.path}: Unexpected error: {e}", exc_info=True)
        response = json_response({"error": "Server error"}, status=500)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


class ApiServer:
    """Read-only kline HTTP API."""

    def __init__(
        self,
        history: KlineHistory,
        host: str = "0.0.0.0",
        port: int = 3001,
        hourly_limit: int = 100,
        fallback_limit: int = 200,
    ):
        self.history = history
        self.host = host
        self.port = port
        self.hourly_limit = hourly_limit
        self.fallback_limit = fallback_limit
        self.app = web.Application(middlewares=[error_middleware])
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        # Fixed paths before the {symbol} ones
        self.app.router.add_get("/", self._health)
        self.app.router.add_get("/supported", self._supported)
        self.app.router.add_get("/kline", self._kline)
        self.app.router.add_get("/kline/hourly", self._kline_hourly)
        self.app.router.add_get("/kline/all/latest", self._all_latest)
        self.app.router.add_get("/kline/{symbol}", self._symbol_kline)
        self.app.router.add_get("/kline/{symbol}/hourly", self._symbol_hourly)

    async def start(self):
        """Start the web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"[API] Running on http://{self.host}:{self.port}")

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ─── Routes ───

    async def _health(self, request: web.Request) -> web.Response:
        return web.Response(text="Crypto backend is running!")

    async def _supported(self, request: web.Request) -> web.Response:
        return json_response(self.history.supported())

    async def _kline(self, request: web.Request) -> web.Response:
        """History for a pair (default: primary asset), ascending."""
        pair = request.query.get("pair") or self.history.primary.pair
        asset = self.history.asset_for_pair(pair)
        return self._history_response(request, asset.table, pair)

    async def _kline_hourly(self, request: web.Request) -> web.Response:
        return json_response(self.history.latest(self.history.primary.table, self.hourly_limit))

    async def _all_latest(self, request: web.Request) -> web.Response:
        return json_response(self.history.latest_across_assets())

    async def _symbol_kline(self, request: web.Request) -> web.Response:
        asset = self.history.resolve(request.match_info["symbol"])
        return self._history_response(request, asset.table, asset.pair)

    async def _symbol_hourly(self, request: web.Request) -> web.Response:
        asset = self.history.resolve(request.match_info["symbol"])
        return json_response(self.history.latest(asset.table, self.hourly_limit))

    def _history_response(self, request: web.Request, table: str, pair: str) -> web.Response:
        window = parse_window(request)
        if window is None:
            rows = self.history.fallback(table, pair, self.fallback_limit)
        else:
            rows = self.history.range(table, pair, *window)
        return json_response(rows)
