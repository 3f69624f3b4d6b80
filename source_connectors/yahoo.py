"""
Pulso — Yahoo Chart Connectors
───────────────────────────────
Futures and index quotes from Yahoo's v8/chart endpoint
(the only Yahoo endpoint that still works without auth).

Upstreams (in order):
  1. query1.finance.yahoo.com
  2. query2.finance.yahoo.com

One attempt must price every configured symbol; a host that
misses any symbol fails as a whole and the next host is tried.

Grains trade in US cents per bushel. They are converted to
USD per metric ton:  usd_tn = cents / 100 * bushels_per_ton
"""

import asyncio
import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx

from indicator_engine.models.indicator import Category, Indicator, utc_now_iso
from source_connectors.base import Connector, Upstream, UpstreamError, get_json, pct_change

log = logging.getLogger("pulso.connectors.yahoo")

YAHOO_HOSTS = [
    ("Yahoo Finance",   "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"),
    ("Yahoo Finance 2", "https://query2.finance.yahoo.com/v8/finance/chart/{symbol}"),
]


# ══════════════════════════════════════════════════════════════
# SYMBOL CONFIG
# ══════════════════════════════════════════════════════════════
# code -> (symbol, name, short_name, category, unit, bushels_per_ton)
COMMODITIES: Dict[str, tuple] = {
    "soja":  ("ZS=F", "Soja CBOT",    "Soja",  Category.AGRO_COMMODITY, "USD/tn",  36.7437),
    "maiz":  ("ZC=F", "Maíz CBOT",    "Maíz",  Category.AGRO_COMMODITY, "USD/tn",  39.3679),
    "trigo": ("ZW=F", "Trigo CBOT",   "Trigo", Category.AGRO_COMMODITY, "USD/tn",  36.7437),
    "wti":   ("CL=F", "Petróleo WTI", "WTI",   Category.ENERGY,         "USD/bbl", None),
    "oro":   ("GC=F", "Oro COMEX",    "Oro",   Category.ENERGY,         "USD/oz",  None),
}

INDICES: Dict[str, tuple] = {
    "merval": ("^MERV", "S&P Merval", "Merval", Category.MARKET_INDEX, "pts", None),
}


def parse_chart(data: dict) -> Optional[dict]:
    """v8/chart payload -> {price, prev_close, ts} or None."""
    result = (data or {}).get("chart", {}).get("result") or []
    if not result:
        return None
    meta = result[0].get("meta", {})
    price = meta.get("regularMarketPrice") or meta.get("previousClose")
    if not price:
        return None
    prev_close = meta.get("chartPreviousClose") or meta.get("previousClose") or price
    return {
        "price":      float(price),
        "prev_close": float(prev_close),
        "ts":         meta.get("regularMarketTime"),
    }


def to_display_units(price: float, bushels_per_ton: Optional[float]) -> float:
    if bushels_per_ton:
        return price / 100 * bushels_per_ton
    return price


class YahooChartConnector(Connector):
    """Prices a fixed symbol table from the v8/chart endpoint."""

    symbols: Dict[str, tuple] = {}

    @property
    def provides(self):
        return frozenset(self.symbols)

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [
            Upstream(label, "yahoo", lambda tpl=tpl, label=label: self._fetch_all(client, tpl, label))
            for label, tpl in YAHOO_HOSTS
        ]

    async def _fetch_all(self, client: httpx.AsyncClient, url_template: str,
                         label: str) -> List[Indicator]:
        codes = list(self.symbols)
        charts = await asyncio.gather(
            *[self._fetch_one(client, url_template, self.symbols[c][0]) for c in codes],
            return_exceptions=True,
        )
        out = []
        for code, chart in zip(codes, charts):
            if isinstance(chart, Exception) or chart is None:
                raise UpstreamError(f"{self.symbols[code][0]} unavailable on {label}: {chart}")
            out.append(self._indicator(code, chart, label))
        return out

    async def _fetch_one(self, client: httpx.AsyncClient, url_template: str,
                         symbol: str) -> Optional[dict]:
        url = url_template.format(symbol=quote(symbol, safe="=^"))
        data = await get_json(client, url, params={"interval": "1d", "range": "5d"})
        return parse_chart(data)

    def _indicator(self, code: str, chart: dict, source: str) -> Indicator:
        _, name, short, category, unit, bpt = self.symbols[code]
        value = to_display_units(chart["price"], bpt)
        prev  = to_display_units(chart["prev_close"], bpt)
        return Indicator(
            code           = code,
            name           = name,
            short_name     = short,
            category       = category,
            value          = round(value, 2),
            previous_value = round(prev, 2),
            change_percent = pct_change(value, prev),
            format         = "currency" if unit.startswith("USD") else "decimal",
            decimals       = 2 if value < 1000 else 0,
            unit           = unit,
            source         = source,
            last_updated   = utc_now_iso(),
            frequency      = "daily",
        )


class CommoditiesConnector(YahooChartConnector):

    ttl_key = Category.AGRO_COMMODITY.value
    symbols = COMMODITIES
    fallback_disclaimer = "Cotización de host secundario de Yahoo Finance"

    @property
    def name(self) -> str:
        return "commodities"


class MervalConnector(YahooChartConnector):

    ttl_key = Category.MARKET_INDEX.value
    symbols = INDICES
    fallback_disclaimer = "Cotización de host secundario de Yahoo Finance"

    @property
    def name(self) -> str:
        return "merval"
