"""
Pulso — Crypto Connector
─────────────────────────
USD prices and 24h change for the majors.

Upstreams (in order):
  1. CoinGecko  /simple/price (free tier, no key needed)
  2. CoinCap    /v2/assets
"""

import logging
from typing import List

import httpx

from indicator_engine.models.indicator import Category, Indicator, utc_now_iso
from source_connectors.base import Connector, Upstream, UpstreamError, get_json

log = logging.getLogger("pulso.connectors.crypto")

COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
COINCAP_ASSETS_URL  = "https://api.coincap.io/v2/assets"

# CoinGecko id -> (symbol, display name, CoinCap id)
COINS = {
    "bitcoin":  ("BTC",  "Bitcoin",  "bitcoin"),
    "ethereum": ("ETH",  "Ethereum", "ethereum"),
    "tether":   ("USDT", "Tether",   "tether"),
    "solana":   ("SOL",  "Solana",   "solana"),
    "ripple":   ("XRP",  "XRP",      "xrp"),
}


def _coin_indicator(coin_id: str, price: float, change_24h: float, source: str) -> Indicator:
    symbol, name, _ = COINS[coin_id]
    return Indicator(
        code           = symbol.lower(),
        name           = name,
        short_name     = symbol,
        category       = Category.CRYPTO,
        value          = price,
        change_percent = change_24h,
        format         = "currency",
        decimals       = 0 if price > 100 else 2,
        unit           = "USD",
        source         = source,
        last_updated   = utc_now_iso(),
        frequency      = "realtime",
    )


class CryptoConnector(Connector):

    ttl_key = Category.CRYPTO.value
    provides = frozenset(sym.lower() for sym, _, _ in COINS.values())
    fallback_disclaimer = "Precios de fuente alternativa (CoinCap)"

    @property
    def name(self) -> str:
        return "crypto"

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [
            Upstream("CoinGecko", "coingecko", lambda: self._from_coingecko(client)),
            Upstream("CoinCap", "coincap", lambda: self._from_coincap(client)),
        ]

    async def _from_coingecko(self, client: httpx.AsyncClient) -> List[Indicator]:
        data = await get_json(client, COINGECKO_PRICE_URL, params={
            "ids": ",".join(COINS),
            "vs_currencies": "usd",
            "include_24hr_change": "true",
        })
        if not isinstance(data, dict):
            raise UpstreamError("invalid CoinGecko response")
        missing = [c for c in COINS if not (data.get(c) or {}).get("usd")]
        if missing:
            raise UpstreamError(f"CoinGecko missing {missing}")
        return [
            _coin_indicator(c, float(data[c]["usd"]), float(data[c].get("usd_24h_change") or 0), "CoinGecko")
            for c in COINS
        ]

    async def _from_coincap(self, client: httpx.AsyncClient) -> List[Indicator]:
        data = await get_json(client, COINCAP_ASSETS_URL, params={
            "ids": ",".join(cap_id for _, _, cap_id in COINS.values()),
        })
        rows = {row.get("id"): row for row in (data or {}).get("data", [])} if isinstance(data, dict) else {}
        out = []
        for coin_id, (_, _, cap_id) in COINS.items():
            row = rows.get(cap_id)
            if not row or not row.get("priceUsd"):
                raise UpstreamError(f"CoinCap missing {cap_id}")
            try:
                out.append(_coin_indicator(coin_id, float(row["priceUsd"]),
                                           float(row.get("changePercent24Hr") or 0), "CoinCap"))
            except ValueError as e:
                raise UpstreamError(f"bad CoinCap row {cap_id}: {e}") from e
        return out
