"""Tests for the source connectors and the first-success combinator."""

import asyncio

import httpx
import pytest

from indicator_engine.cache.ttl_config import ttl_for
from indicator_engine.models.indicator import Category, DollarQuote
from indicator_engine.orchestrator.rate_limiter import get_bucket
from news_ingestion.models import external_key
from source_connectors.base import (
    Upstream, UpstreamError, UpstreamUnavailable, first_success,
)
from source_connectors.crypto import COINCAP_ASSETS_URL, COINGECKO_PRICE_URL, CryptoConnector
from source_connectors.dollar import ARGENTINADATOS_URL, DOLARAPI_URL, DollarConnector
from source_connectors.monetary import (
    BCRA_V2_PRINCIPALES, BCRA_V3_MONETARIAS, BCRAConnector, INFLACION_IA, INFLACION_MENSUAL,
    InflationConnector,
)
from source_connectors.rss import FeedConfig, FeedConnector, parse_feed
from source_connectors.yahoo import CommoditiesConnector
from tests.fakes import mock_client, network_error, rss_feed

DOLARAPI_ROWS = [
    {"casa": "oficial", "nombre": "Oficial", "compra": 1000, "venta": 1040,
     "fechaActualizacion": "2025-01-06T12:00:00.000Z"},
    {"casa": "blue", "nombre": "Blue", "compra": 1180, "venta": 1200,
     "fechaActualizacion": "2025-01-06T12:00:00.000Z"},
    {"casa": "bolsa", "nombre": "Bolsa", "compra": 1150, "venta": 1160,
     "fechaActualizacion": "2025-01-06T12:00:00.000Z"},
    {"casa": "desconocida", "compra": 1, "venta": 1},
]

ARGENTINADATOS_ROWS = [
    {"casa": "blue", "compra": 1100, "venta": 1120, "fecha": "2025-01-03"},
    {"casa": "blue", "compra": 1150, "venta": 1170, "fecha": "2025-01-06"},
    {"casa": "oficial", "compra": 990, "venta": 1030, "fecha": "2025-01-06"},
]


async def _ok(value):
    return value


async def _fail(msg):
    raise UpstreamError(msg)


class TestFirstSuccess:

    @pytest.mark.asyncio
    async def test_primary_wins(self):
        index, label, value = await first_success([
            Upstream("primary", "test", lambda: _ok([1])),
            Upstream("backup", "test", lambda: _ok([2])),
        ])
        assert (index, label, value) == (0, "primary", [1])

    @pytest.mark.asyncio
    async def test_falls_through_to_backup(self):
        index, label, value = await first_success([
            Upstream("primary", "test", lambda: _fail("HTTP 500")),
            Upstream("backup", "test", lambda: _ok([2])),
        ])
        assert (index, label, value) == (1, "backup", [2])

    @pytest.mark.asyncio
    async def test_parse_error_moves_to_next_upstream(self):
        async def broken():
            return float("n/d")

        index, label, value = await first_success([
            Upstream("primary", "test", broken),
            Upstream("backup", "test", lambda: _ok([2])),
        ])
        assert (index, label, value) == (1, "backup", [2])

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        index, label, _ = await first_success([
            Upstream("slow", "test", lambda: asyncio.sleep(1)),
            Upstream("backup", "test", lambda: _ok([])),
        ], timeout=0.01)
        assert index == 1

    @pytest.mark.asyncio
    async def test_exhausted_chain_raises_unavailable(self):
        with pytest.raises(UpstreamUnavailable) as exc:
            await first_success([
                Upstream("a", "test", lambda: _fail("down")),
                Upstream("b", "test", lambda: _fail("also down")),
            ])
        assert len(exc.value.errors) == 2

    @pytest.mark.asyncio
    async def test_empty_bucket_skips_upstream(self):
        bucket = get_bucket("dolarapi")
        bucket._tokens = 0
        index, label, _ = await first_success([
            Upstream("DolarApi", "dolarapi", lambda: _ok([1])),
            Upstream("ArgentinaDatos", "argentinadatos", lambda: _ok([2])),
        ])
        assert label == "ArgentinaDatos"


class TestDollarConnector:

    @pytest.mark.asyncio
    async def test_primary_quotes(self, cache):
        client = mock_client({DOLARAPI_URL: (200, DOLARAPI_ROWS)})
        result = await DollarConnector().fetch(client, cache)

        assert result.available
        assert not result.is_fallback
        assert result.source == "DolarApi"
        types = {q.type for q in result.payload}
        assert types == {"oficial", "blue", "mep"}

    @pytest.mark.asyncio
    async def test_fallback_keeps_latest_row_per_casa(self, cache):
        client = mock_client({
            DOLARAPI_URL: (503, {}),
            ARGENTINADATOS_URL: (200, ARGENTINADATOS_ROWS),
        })
        result = await DollarConnector().fetch(client, cache)

        assert result.is_fallback
        assert result.disclaimer
        assert result.source == "ArgentinaDatos"
        blue = next(q for q in result.payload if q.type == "blue")
        assert blue.sell == 1170

    @pytest.mark.asyncio
    async def test_malformed_primary_falls_back(self, cache):
        bad = [{"casa": "oficial", "nombre": "Oficial", "compra": "n/d", "venta": 1040,
                "fechaActualizacion": "2025-01-06T12:00:00.000Z"}]
        client = mock_client({
            DOLARAPI_URL: (200, bad),
            ARGENTINADATOS_URL: (200, ARGENTINADATOS_ROWS),
        })
        result = await DollarConnector().fetch(client, cache)

        assert result.available
        assert result.is_fallback
        assert result.source == "ArgentinaDatos"

    @pytest.mark.asyncio
    async def test_all_upstreams_down_is_unavailable_not_raised(self, cache, clock):
        client = mock_client({DOLARAPI_URL: network_error, ARGENTINADATOS_URL: (500, {})})
        result = await DollarConnector().fetch(client, cache)

        assert not result.available
        assert result.payload == ()
        assert result.error
        clock.advance(31)
        assert cache.get("source:dollar") is None

    @pytest.mark.asyncio
    async def test_result_is_cached_per_connector(self, cache):
        hits = 0

        def answer(request):
            nonlocal hits
            hits += 1
            return httpx.Response(200, json=DOLARAPI_ROWS)

        client = mock_client({DOLARAPI_URL: answer})
        connector = DollarConnector()
        await connector.fetch(client, cache)
        await connector.fetch(client, cache)
        assert hits == 1

    def test_spread(self):
        q = DollarQuote("blue", "Dólar Blue", 1000, 1020, "", "test")
        assert q.spread == pytest.approx(2.0)


class TestMonetaryConnectors:

    @pytest.mark.asyncio
    async def test_bcra_v2_fallback_flags_every_indicator(self, cache):
        client = mock_client({
            BCRA_V3_MONETARIAS: (500, {}),
            BCRA_V2_PRINCIPALES: (200, {"results": [
                {"idVariable": 1, "valor": 30000, "fecha": "2025-01-03"},
                {"idVariable": 6, "valor": 32.0, "fecha": "2025-01-03"},
                {"idVariable": 999, "valor": 1, "fecha": "2025-01-03"},
            ]}),
        })
        result = await BCRAConnector().fetch(client, cache)

        codes = {i.code: i for i in result.payload}
        assert set(codes) == {"reservas", "tasa_pm"}
        assert codes["reservas"].category is Category.ACTIVITY
        assert all(i.is_fallback and i.disclaimer for i in result.payload)

    @pytest.mark.asyncio
    async def test_bcra_cache_follows_its_fastest_category(self, cache, clock):
        hits = 0

        def answer(request):
            nonlocal hits
            hits += 1
            return httpx.Response(200, json={"results": [
                {"idVariable": 4, "valor": 1050.5, "fecha": "2025-01-06"},
                {"idVariable": 6, "valor": 32.0, "fecha": "2025-01-06"},
            ]})

        client = mock_client({BCRA_V3_MONETARIAS: answer})
        connector = BCRAConnector()
        await connector.fetch(client, cache)
        clock.advance(ttl_for(Category.EXCHANGE_RATE) + 1)
        result = await connector.fetch(client, cache)

        assert hits == 2
        assert {i.code for i in result.payload} == {"tc_minorista", "tasa_pm"}

    @pytest.mark.asyncio
    async def test_inflation_change_from_last_two_rows(self, cache):
        client = mock_client({
            INFLACION_IA: (200, [{"fecha": "2024-11-30", "valor": 166.0}, {"fecha": "2024-12-31", "valor": 117.8}]),
            INFLACION_MENSUAL: (200, [{"fecha": "2024-11-30", "valor": 2.4}, {"fecha": "2024-12-31", "valor": 2.7}]),
        })
        result = await InflationConnector().fetch(client, cache)

        monthly = next(i for i in result.payload if i.code == "inflacion_mensual")
        assert monthly.value == 2.7
        assert monthly.previous_value == 2.4
        assert monthly.change_percent == pytest.approx(12.5)


class TestCryptoConnector:

    @pytest.mark.asyncio
    async def test_coincap_fallback_when_coingecko_is_incomplete(self, cache):
        gecko = {c: {"usd": 10.0, "usd_24h_change": 1.0} for c in ("bitcoin", "ethereum", "tether", "solana")}
        coincap = {"data": [
            {"id": "bitcoin", "priceUsd": "95000.5", "changePercent24Hr": "1.5"},
            {"id": "ethereum", "priceUsd": "3300", "changePercent24Hr": "-0.4"},
            {"id": "tether", "priceUsd": "1.0001", "changePercent24Hr": "0"},
            {"id": "solana", "priceUsd": "190", "changePercent24Hr": "2"},
            {"id": "xrp", "priceUsd": "2.4", "changePercent24Hr": "3"},
        ]}
        client = mock_client({COINGECKO_PRICE_URL: (200, gecko), COINCAP_ASSETS_URL: (200, coincap)})
        result = await CryptoConnector().fetch(client, cache)

        assert result.is_fallback
        by_code = {i.code: i for i in result.payload}
        assert set(by_code) == {"btc", "eth", "usdt", "sol", "xrp"}
        assert by_code["btc"].decimals == 0
        assert by_code["usdt"].decimals == 2
        assert by_code["btc"].is_fallback


def _chart(price, prev):
    return {"chart": {"result": [{"meta": {"regularMarketPrice": price, "chartPreviousClose": prev}}]}}


class TestYahooChart:

    @pytest.mark.asyncio
    async def test_host_missing_a_symbol_fails_as_a_whole(self, cache):
        prices = {"ZS=F": 1000, "ZC=F": 450, "ZW=F": 550, "CL=F": 72.5, "GC=F": 2650}

        def query1(request):
            symbol = request.url.path.rsplit("/", 1)[-1]
            if symbol == "CL=F":
                return httpx.Response(404)
            return httpx.Response(200, json=_chart(prices[symbol], prices[symbol]))

        def query2(request):
            symbol = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=_chart(prices[symbol], prices[symbol] * 0.99))

        client = mock_client({
            "https://query1.finance.yahoo.com": query1,
            "https://query2.finance.yahoo.com": query2,
        })
        result = await CommoditiesConnector().fetch(client, cache)

        assert result.is_fallback
        assert result.source == "Yahoo Finance 2"
        by_code = {i.code: i for i in result.payload}
        assert len(by_code) == 5
        # 1000 cents/bu -> 10 USD/bu * 36.7437 bu/tn
        assert by_code["soja"].value == pytest.approx(367.44)
        assert by_code["soja"].unit == "USD/tn"
        assert by_code["wti"].category is Category.ENERGY
        assert by_code["wti"].value == pytest.approx(72.5)


class TestRSS:

    FEED = FeedConfig("test", "Test Feed", "https://feeds.example.com/rss", "agro", 7)

    def test_parse_feed_builds_raw_articles(self):
        raw = rss_feed([("https://example.com/a", "Soja en alza"), ("", "Sin link")])
        articles = parse_feed(raw, self.FEED)

        assert len(articles) == 1
        a = articles[0]
        assert a.source_id == external_key("https://example.com/a")
        assert a.category == "agro"
        assert a.priority == 7
        assert a.published_at.startswith("2025-01-06T12:00:00")
        assert a.content == "Resumen de Soja en alza"
        assert a.image_url is None

    def test_image_from_enclosure(self):
        raw = (
            b'<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel><title>T</title>'
            b'<item><title>Cosecha gruesa</title><link>https://example.com/c</link>'
            b'<enclosure url="https://img.example.com/cosecha.jpg" type="image/jpeg" length="0"/>'
            b'</item></channel></rss>'
        )
        [article] = parse_feed(raw, self.FEED)
        assert article.image_url == "https://img.example.com/cosecha.jpg"

    def test_unparseable_feed_raises(self):
        with pytest.raises(UpstreamError):
            parse_feed(b"definitely not a feed <<<", self.FEED)

    def test_external_key_is_stable(self):
        assert external_key("https://x.com/1") == external_key(" https://x.com/1 ")
        assert len(external_key("https://x.com/1")) == 16

    @pytest.mark.asyncio
    async def test_feed_failure_is_an_unavailable_result(self):
        client = mock_client({self.FEED.url: network_error})
        result = await FeedConnector(self.FEED).fetch(client)

        assert not result.available
        assert "Test Feed" in result.error
