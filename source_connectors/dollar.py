"""
Pulso — Dollar Connector
─────────────────────────
USD/ARS quotes for every market variant (oficial, blue, MEP, CCL...).

Upstreams (in order):
  1. DolarApi        https://dolarapi.com/v1/dolares
  2. ArgentinaDatos  https://api.argentinadatos.com/v1/cotizaciones/dolares
                     (full history; we keep the latest row per casa)
"""

import logging
from typing import Dict, List

import httpx

from indicator_engine.models.indicator import Category, DollarQuote, Indicator
from source_connectors.base import Connector, Upstream, UpstreamError, get_json

log = logging.getLogger("pulso.connectors.dollar")

DOLARAPI_URL       = "https://dolarapi.com/v1/dolares"
ARGENTINADATOS_URL = "https://api.argentinadatos.com/v1/cotizaciones/dolares"

# casa (upstream naming) -> quote type
CASA_TO_TYPE = {
    "oficial":         "oficial",
    "blue":            "blue",
    "bolsa":           "mep",
    "contadoconliqui": "ccl",
    "cripto":          "cripto",
    "mayorista":       "mayorista",
    "tarjeta":         "turista",
}

DISPLAY_NAMES = {
    "oficial":   "Dólar Oficial",
    "blue":      "Dólar Blue",
    "mep":       "Dólar MEP",
    "ccl":       "Dólar CCL",
    "cripto":    "Dólar Cripto",
    "mayorista": "Dólar Mayorista",
    "turista":   "Dólar Tarjeta",
}


def _quote(casa: str, buy, sell, updated: str, source: str, name: str = None) -> DollarQuote:
    qtype = CASA_TO_TYPE.get((casa or "").lower())
    if qtype is None:
        raise KeyError(casa)
    try:
        buy, sell = float(buy or 0), float(sell or 0)
    except (TypeError, ValueError) as e:
        raise UpstreamError(f"bad {casa} quote: {e}") from e
    return DollarQuote(
        type         = qtype,
        name         = name or DISPLAY_NAMES[qtype],
        buy          = buy,
        sell         = sell,
        last_updated = updated or "",
        source       = source,
    )


def quote_to_indicator(q: DollarQuote, is_fallback: bool = False,
                       disclaimer: str = None) -> Indicator:
    return Indicator(
        code         = f"dolar_{q.type}",
        name         = q.name,
        short_name   = q.name.replace("Dólar ", "USD "),
        category     = Category.EXCHANGE_RATE,
        value        = q.sell,
        format       = "currency",
        decimals     = 2,
        unit         = "ARS",
        source       = q.source,
        last_updated = q.last_updated,
        is_fallback  = is_fallback,
        frequency    = "realtime",
        disclaimer   = disclaimer if is_fallback else None,
    )


class DollarConnector(Connector):

    ttl_key = Category.EXCHANGE_RATE.value
    provides = frozenset(f"dolar_{t}" for t in DISPLAY_NAMES)
    fallback_disclaimer = "Cotizaciones de fuente alternativa (ArgentinaDatos); pueden tener demora"

    @property
    def name(self) -> str:
        return "dollar"

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [
            Upstream("DolarApi", "dolarapi", lambda: self._from_dolarapi(client)),
            Upstream("ArgentinaDatos", "argentinadatos", lambda: self._from_argentinadatos(client)),
        ]

    async def _from_dolarapi(self, client: httpx.AsyncClient) -> List[DollarQuote]:
        data = await get_json(client, DOLARAPI_URL)
        if not isinstance(data, list) or not data:
            raise UpstreamError("empty dollar list")
        quotes = []
        for item in data:
            try:
                quotes.append(_quote(item.get("casa"), item.get("compra"), item.get("venta"),
                                     item.get("fechaActualizacion"), "DolarApi", item.get("nombre")))
            except KeyError:
                log.debug(f"Skipping unknown casa {item.get('casa')!r}")
        if not quotes:
            raise UpstreamError("no recognised quotes")
        return quotes

    async def _from_argentinadatos(self, client: httpx.AsyncClient) -> List[DollarQuote]:
        data = await get_json(client, ARGENTINADATOS_URL)
        if not isinstance(data, list) or not data:
            raise UpstreamError("empty dollar history")
        latest: Dict[str, dict] = {}
        for row in data:
            casa = (row.get("casa") or "").lower()
            if casa not in CASA_TO_TYPE:
                continue
            if casa not in latest or (row.get("fecha") or "") >= (latest[casa].get("fecha") or ""):
                latest[casa] = row
        if not latest:
            raise UpstreamError("no recognised quotes")
        return [
            _quote(casa, row.get("compra"), row.get("venta"), row.get("fecha"), "ArgentinaDatos")
            for casa, row in latest.items()
        ]
