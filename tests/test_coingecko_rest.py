"""Tests for the CoinGecko client against a local fake provider."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from exchange.coingecko_rest import CoinGeckoClient, parse_market_chart, parse_ohlc_row
from exchange.errors import NoData, RateLimited, Timeout, UpstreamError


@pytest_asyncio.fixture
async def upstream():
    """Start a fake provider from a {path: handler} mapping and return its base URL."""
    servers = []

    async def _start(routes):
        app = web.Application()
        for path, handler in routes.items():
            app.router.add_get(path, handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        servers.append(server)
        return str(server.make_url("")).rstrip("/")

    yield _start
    for server in servers:
        await server.close()


@pytest_asyncio.fixture
async def clients():
    made = []

    def _make(base_url, **kwargs):
        client = CoinGeckoClient(base_url, **kwargs)
        made.append(client)
        return client

    yield _make
    for client in made:
        await client.close()


def respond(payload=None, status=200, text=None):
    async def handler(request):
        if text is not None:
            return web.Response(text=text, status=status)
        return web.json_response(payload, status=status)
    return handler


class TestOhlcEndpoint:

    @pytest.mark.asyncio
    async def test_latest_row_without_volume(self, upstream, clients):
        base = await upstream({"/coins/bitcoin/ohlc": respond([
            [0, 90, 99, 89, 95],
            [1000, 100, 110, 95, 105],
        ])})
        client = clients(base)

        kline = await client.fetch_latest("bitcoin")

        assert kline.timestamp == datetime.fromtimestamp(1, tz=timezone.utc)
        assert kline.open == Decimal("100")
        assert kline.high == Decimal("110")
        assert kline.low == Decimal("95")
        assert kline.close == Decimal("105")
        assert kline.volume == Decimal("0")
        assert kline.pair == ""

    @pytest.mark.asyncio
    async def test_sends_query_and_api_key(self, upstream, clients):
        seen = {}

        async def handler(request):
            seen.update(request.query)
            seen["key"] = request.headers.get("x-cg-pro-api-key")
            return web.json_response([[1000, 1, 1, 1, 1]])

        base = await upstream({"/coins/ethereum/ohlc": handler})
        client = clients(base, vs_currency="usd", lookback_days=2, api_key="secret")

        await client.fetch_latest("ethereum")

        assert seen == {"vs_currency": "usd", "days": "2", "key": "secret"}

    @pytest.mark.asyncio
    async def test_empty_payload_is_no_data(self, upstream, clients):
        base = await upstream({"/coins/bitcoin/ohlc": respond([])})
        with pytest.raises(NoData):
            await clients(base).fetch_latest("bitcoin")

    @pytest.mark.asyncio
    async def test_non_json_body_is_no_data(self, upstream, clients):
        base = await upstream({"/coins/bitcoin/ohlc": respond(text="<html>oops</html>")})
        with pytest.raises(NoData):
            await clients(base).fetch_latest("bitcoin")

    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self, upstream, clients):
        base = await upstream({"/coins/bitcoin/ohlc": respond({"error": "slow down"}, status=429)})
        with pytest.raises(RateLimited):
            await clients(base).fetch_latest("bitcoin")

    @pytest.mark.asyncio
    async def test_other_error_status_is_upstream_error(self, upstream, clients):
        base = await upstream({"/coins/bitcoin/ohlc": respond({"error": "down"}, status=503)})
        with pytest.raises(UpstreamError) as exc_info:
            await clients(base).fetch_latest("bitcoin")
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_unknown_coin_is_upstream_error(self, upstream, clients):
        base = await upstream({})
        with pytest.raises(UpstreamError) as exc_info:
            await clients(base).fetch_latest("dogecoin")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_slow_response_is_timeout(self, upstream, clients):
        async def slow(request):
            await asyncio.sleep(1.0)
            return web.json_response([[1000, 1, 1, 1, 1]])

        base = await upstream({"/coins/bitcoin/ohlc": slow})
        with pytest.raises(Timeout):
            await clients(base, timeout_sec=0.1).fetch_latest("bitcoin")


class TestMarketChartEndpoint:

    @pytest.mark.asyncio
    async def test_derives_ohlc_from_trailing_prices(self, upstream, clients):
        prices = [[i * 60_000, p] for i, p in enumerate([50, 101, 104, 99, 103, 98, 102])]
        base = await upstream({"/coins/bitcoin/market_chart": respond({
            "prices": prices,
            "total_volumes": [[0, 1.5], [360_000, 2.5]],
        })})
        client = clients(base, endpoint="market_chart")

        kline = await client.fetch_latest("bitcoin")

        assert kline.timestamp == datetime(1970, 1, 1, 0, 6, tzinfo=timezone.utc)
        assert kline.close == Decimal("102")
        assert kline.open == Decimal("98")
        # 50 is outside the six-sample window
        assert kline.high == Decimal("104")
        assert kline.low == Decimal("98")
        assert kline.volume == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_floors_timestamp_to_grain(self, upstream, clients):
        ts = int(datetime(2024, 1, 1, 10, 22, 41, tzinfo=timezone.utc).timestamp() * 1000)
        base = await upstream({"/coins/bitcoin/market_chart": respond({
            "prices": [[ts, 42000]],
            "total_volumes": [],
        })})
        client = clients(base, endpoint="market_chart", grain_sec=900)

        kline = await client.fetch_latest("bitcoin")

        assert kline.timestamp == datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)
        assert kline.open == kline.close == Decimal("42000")
        assert kline.volume == Decimal("0")

    @pytest.mark.asyncio
    async def test_missing_prices_is_no_data(self, upstream, clients):
        base = await upstream({"/coins/bitcoin/market_chart": respond({"prices": []})})
        with pytest.raises(NoData):
            await clients(base, endpoint="market_chart").fetch_latest("bitcoin")


class TestParsers:

    def test_short_ohlc_row_is_no_data(self):
        with pytest.raises(NoData):
            parse_ohlc_row([1000, 1, 2])

    def test_non_numeric_price_is_no_data(self):
        with pytest.raises(NoData):
            parse_ohlc_row([1000, "x", 2, 3, 4])

    def test_malformed_price_point_is_no_data(self):
        with pytest.raises(NoData):
            parse_market_chart([[1000]], None)

    def test_mapping_ohlc_row_is_no_data(self):
        with pytest.raises(NoData):
            parse_ohlc_row({"a": 1})

    def test_mapping_price_point_is_no_data(self):
        with pytest.raises(NoData):
            parse_market_chart([{"t": 1, "p": 2}], [])

    def test_mapping_volumes_is_no_data(self):
        with pytest.raises(NoData):
            parse_market_chart([[1000, 5]], {"x": [1, 2]})

    def test_out_of_range_timestamp_is_no_data(self):
        with pytest.raises(NoData):
            parse_market_chart([[1e20, 5]], [])
