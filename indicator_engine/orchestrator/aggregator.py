"""
Pulso — Indicator Aggregation Engine
─────────────────────────────────────
Merges connector outputs per category and serves four views:

  get_by_category(c)   → [Indicator]            only category == c
  get_overview()       → {category: [Indicator]}
  get_ticker()         → [TickerItem]           fixed display order
  get_dollar_quotes()  → {quotes, derived_metrics, ...}

Merge rule (per category, connectors in priority order):
  - indicators are keyed by their logical code
  - a non-fallback indicator beats a fallback one
  - among fallbacks, the first by connector priority wins
  - an indicator from a lower-ranked connector is a fallback when a
    higher-ranked connector in that category provides the same code

Every view is cached under "<method>:<category>" with the category
TTL, and concurrent misses share one upstream fetch (get_or_load).
A view built while any of its sources was unavailable is degraded
and only cached for the negative TTL, so recovery shows up as soon
as the connector's own negative entry expires.
Connector fetches within one call run concurrently and are joined
before merging, so the merge only ever sees a fixed snapshot.
"""

import asyncio
import logging
import os
import time
from typing import Dict, List, Optional, Sequence

import httpx

from indicator_engine.cache.memory_cache import TTLCache, cache as default_cache
from indicator_engine.cache.ttl_config import ttl_for
from indicator_engine.models.indicator import (
    Category, DollarQuote, Indicator, SourceResult, TickerItem, utc_now_iso,
)
from source_connectors.base import Connector, get_client
from source_connectors.crypto import CryptoConnector
from source_connectors.dollar import DollarConnector, quote_to_indicator
from source_connectors.monetary import BCRAConnector, CountryRiskConnector, InflationConnector
from source_connectors.yahoo import CommoditiesConnector, MervalConnector

log = logging.getLogger("pulso.aggregator")

# Derived metrics are skipped when an operand quote is older than this
QUOTE_MAX_AGE_S = float(os.environ.get("QUOTE_MAX_AGE_S", str(96 * 3600)))

TREND_THRESHOLD = 0.1

FALLBACK_DISCLAIMER = "Dato de respaldo ({source}): fuente principal no disponible"


def default_connectors() -> Dict[str, Connector]:
    return {
        "dollar":      DollarConnector(),
        "bcra":        BCRAConnector(),
        "inflation":   InflationConnector(),
        "riesgo_pais": CountryRiskConnector(),
        "crypto":      CryptoConnector(),
        "commodities": CommoditiesConnector(),
        "merval":      MervalConnector(),
    }


# ── Category -> connector names, highest priority first ──────
CATEGORY_SOURCES: Dict[Category, List[str]] = {
    Category.EXCHANGE_RATE:  ["dollar", "bcra"],
    Category.INTEREST_RATE:  ["bcra"],
    Category.INFLATION:      ["bcra", "inflation"],
    Category.MARKET_INDEX:   ["merval", "riesgo_pais"],
    Category.AGRO_COMMODITY: ["commodities"],
    Category.CRYPTO:         ["crypto"],
    Category.ACTIVITY:       ["bcra"],
    Category.ENERGY:         ["commodities"],
}


# ══════════════════════════════════════════════════════════════
# MERGE
# ══════════════════════════════════════════════════════════════
def result_indicators(result: SourceResult) -> List[Indicator]:
    """Indicators carried by a connector result (dollar quotes are converted)."""
    out = []
    for item in result.payload:
        if isinstance(item, DollarQuote):
            item = quote_to_indicator(item, result.is_fallback, result.disclaimer)
        if isinstance(item, Indicator):
            out.append(item)
    return out


def merge_category(category: Category,
                   ranked: Sequence[tuple]) -> List[Indicator]:
    """
    ranked: [(connector, SourceResult), ...] highest priority first.
    Returns the merged indicators for `category`, in first-seen order.
    """
    merged: Dict[str, Indicator] = {}
    higher_codes: set = set()

    for connector, result in ranked:
        for ind in result_indicators(result):
            if ind.category != category:
                continue
            if ind.code in higher_codes and not ind.is_fallback:
                ind = ind.as_fallback(FALLBACK_DISCLAIMER.format(source=ind.source))
            current = merged.get(ind.code)
            if current is None or (current.is_fallback and not ind.is_fallback):
                merged[ind.code] = ind
        higher_codes |= set(connector.provides)

    return list(merged.values())


def _trend(change: Optional[float], invert: bool = False) -> str:
    if change is None:
        return "neutral"
    if invert:
        change = -change
    if change > TREND_THRESHOLD:
        return "up"
    if change < -TREND_THRESHOLD:
        return "down"
    return "neutral"


def _fmt_change(change: Optional[float]) -> Optional[str]:
    if not change:
        return None
    return f"{'+' if change > 0 else ''}{change:.1f}%"


def _fmt_ars(value: float) -> str:
    # es-AR grouping: 1.185,50
    whole = f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"${whole[:-3] if whole.endswith(',00') else whole}"


# ══════════════════════════════════════════════════════════════
# ENGINE
# ══════════════════════════════════════════════════════════════
class IndicatorAggregator:

    def __init__(self, connectors: Optional[Dict[str, Connector]] = None,
                 category_sources: Optional[Dict[Category, List[str]]] = None,
                 cache: Optional[TTLCache] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 clock=time.time):
        self.connectors       = connectors if connectors is not None else default_connectors()
        self.category_sources = category_sources if category_sources is not None else CATEGORY_SOURCES
        self.cache            = cache if cache is not None else default_cache
        self._client          = client
        self._clock           = clock
        self._degraded: set   = set()      # categories whose last load missed a source

    async def _http(self) -> httpx.AsyncClient:
        return self._client or await get_client()

    async def _fetch_sources(self, names: Sequence[str]) -> Dict[str, SourceResult]:
        client = await self._http()
        wanted = [n for n in dict.fromkeys(names) if n in self.connectors]
        results = await asyncio.gather(
            *[self.connectors[n].fetch(client, self.cache) for n in wanted],
            return_exceptions=True,
        )
        out = {}
        for name, res in zip(wanted, results):
            if isinstance(res, Exception):
                # Connectors report unavailability themselves; anything else is a bug upstream
                log.error(f"{name}: unexpected connector failure: {res}")
                res = SourceResult.unavailable(name, str(res))
            out[name] = res
        return out

    # ── Views ────────────────────────────────────────────────

    def _view_ttl(self, ttl: float, degraded: bool) -> float:
        return min(ttl, ttl_for("unavailable")) if degraded else ttl

    async def get_by_category(self, category: Category) -> List[Indicator]:
        category = Category(category)

        async def _load():
            names = self.category_sources.get(category, [])
            results = await self._fetch_sources(names)
            ranked = [(self.connectors[n], results[n]) for n in names if n in results]
            if any(not r.available for _, r in ranked):
                self._degraded.add(category)
            else:
                self._degraded.discard(category)
            merged = merge_category(category, ranked)
            log.debug(f"{category.value}: {len(merged)} indicators from {len(ranked)} sources")
            return merged

        ttl = ttl_for(category)
        return await self.cache.get_or_load(
            f"get_by_category:{category.value}", ttl, _load,
            ttl_for_result=lambda _: self._view_ttl(ttl, category in self._degraded),
        )

    async def get_overview(self) -> dict:
        cats = list(self.category_sources)

        async def _load():
            groups = await asyncio.gather(*[self.get_by_category(c) for c in cats])
            return {
                "last_updated": utc_now_iso(),
                "categories":   {c.value: [i.to_dict() for i in g] for c, g in zip(cats, groups)},
            }

        ttl = ttl_for("overview")
        return await self.cache.get_or_load(
            "get_overview:all", ttl, _load,
            ttl_for_result=lambda _: self._view_ttl(ttl, any(c in self._degraded for c in cats)),
        )

    async def get_ticker(self) -> List[TickerItem]:
        cats = (Category.INFLATION, Category.ACTIVITY, Category.CRYPTO, Category.AGRO_COMMODITY)
        dollar_ok = {"available": True}

        async def _load():
            quotes, by_cat = await asyncio.gather(
                self._dollar_result(),
                asyncio.gather(*[self.get_by_category(c) for c in cats]),
            )
            dollar_ok["available"] = quotes.available
            return self._build_ticker(quotes, [i for group in by_cat for i in group])

        ttl = ttl_for("ticker")
        return await self.cache.get_or_load(
            "get_ticker:all", ttl, _load,
            ttl_for_result=lambda _: self._view_ttl(
                ttl, not dollar_ok["available"] or any(c in self._degraded for c in cats)),
        )

    async def get_dollar_quotes(self) -> dict:
        async def _load():
            result = await self._dollar_result()
            quotes = [q for q in result.payload if isinstance(q, DollarQuote)]
            return {
                "quotes":          [q.to_dict() for q in quotes],
                "derived_metrics": self.derived_metrics(quotes),
                "source":          result.source,
                "is_fallback":     result.is_fallback,
                "disclaimer":      result.disclaimer,
                "available":       result.available,
                "last_updated":    result.last_updated,
            }

        ttl = ttl_for(Category.EXCHANGE_RATE)
        return await self.cache.get_or_load(
            f"get_dollar_quotes:{Category.EXCHANGE_RATE.value}", ttl, _load,
            ttl_for_result=lambda data: self._view_ttl(ttl, not data["available"]),
        )

    async def _dollar_result(self) -> SourceResult:
        results = await self._fetch_sources(["dollar"])
        return results.get("dollar") or SourceResult.unavailable("dollar", "no dollar connector configured")

    # ── Derived metrics ──────────────────────────────────────

    def _usable(self, q: Optional[DollarQuote]) -> bool:
        if q is None or q.sell <= 0 or q.buy <= 0:
            return False
        age = q.age_seconds(self._clock())
        return age is not None and age <= QUOTE_MAX_AGE_S

    def derived_metrics(self, quotes: Sequence[DollarQuote]) -> Dict[str, float]:
        """
        Gaps vs the official rate and buy/sell spreads.
        A metric is omitted unless every operand is present and fresh.
        """
        by_type = {q.type: q for q in quotes}
        oficial = by_type.get("oficial")
        metrics: Dict[str, float] = {}

        if self._usable(oficial):
            for kind in ("blue", "mep", "ccl"):
                q = by_type.get(kind)
                if self._usable(q):
                    metrics[f"brecha_{kind}"] = round((q.sell - oficial.sell) / oficial.sell * 100, 2)
        for kind in ("blue", "mep"):
            q = by_type.get(kind)
            if self._usable(q):
                metrics[f"spread_{kind}"] = round(q.spread, 2)
        return metrics

    # ── Ticker ───────────────────────────────────────────────

    def _build_ticker(self, dollar: SourceResult, indicators: List[Indicator]) -> List[TickerItem]:
        items: List[TickerItem] = []
        quotes = {q.type: q for q in dollar.payload if isinstance(q, DollarQuote)}
        for kind in ("oficial", "blue", "mep", "ccl"):
            q = quotes.get(kind)
            if q and q.sell > 0:
                items.append(TickerItem(f"ticker-dolar-{kind}", q.name.replace("Dólar ", "USD "),
                                        _fmt_ars(q.sell), None, "neutral"))

        by_code = {i.code: i for i in indicators if i.value is not None}

        inflation = by_code.get("inflacion_mensual")
        if inflation:
            # rising inflation is bad news
            items.append(TickerItem("ticker-inflacion", "Inflación", f"{inflation.value:.1f}%",
                                    _fmt_change(inflation.change_percent),
                                    _trend(inflation.change_percent, invert=True)))
        reserves = by_code.get("reservas")
        if reserves:
            # BCRA publishes reserves in millions of USD
            items.append(TickerItem("ticker-reservas", "Reservas", f"US${reserves.value / 1e3:,.1f}B",
                                    _fmt_change(reserves.change_percent), _trend(reserves.change_percent)))
        for code, label in (("btc", "BTC"), ("eth", "ETH")):
            ind = by_code.get(code)
            if ind:
                items.append(TickerItem(f"ticker-{code}", label, f"${ind.value:,.0f}",
                                        _fmt_change(ind.change_percent) or "0.0%", _trend(ind.change_percent)))
        for code, label in (("soja", "Soja"), ("maiz", "Maíz")):
            ind = by_code.get(code)
            if ind:
                items.append(TickerItem(f"ticker-{code}", label, f"${ind.value:.0f}",
                                        _fmt_change(ind.change_percent) or "0.0%", _trend(ind.change_percent)))
        return items
