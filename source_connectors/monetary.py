"""
Pulso — Monetary Connectors
────────────────────────────
Official series from the central bank plus the ArgentinaDatos
indices that back them up.

  BCRAConnector            BCRA v3 monetarias → BCRA v2 principales variables
  InflationConnector       ArgentinaDatos monthly + year-on-year CPI
  CountryRiskConnector     ArgentinaDatos riesgo país (último)

The aggregation engine ranks BCRA above ArgentinaDatos for the
inflation category, so ArgentinaDatos inflation only surfaces
(flagged as fallback) when BCRA has nothing for that code.
"""

import logging
from typing import Dict, List

import httpx

from indicator_engine.cache.ttl_config import ttl_for
from indicator_engine.models.indicator import Category, Indicator
from source_connectors.base import Connector, Upstream, UpstreamError, get_json, pct_change

log = logging.getLogger("pulso.connectors.monetary")

BCRA_BASE           = "https://api.bcra.gob.ar"
BCRA_V3_MONETARIAS  = f"{BCRA_BASE}/estadisticas/v3.0/monetarias"
BCRA_V2_PRINCIPALES = f"{BCRA_BASE}/estadisticas/v2.0/principalesvariables"

ARGENTINADATOS_BASE = "https://api.argentinadatos.com"
INFLACION_MENSUAL   = f"{ARGENTINADATOS_BASE}/v1/finanzas/indices/inflacion"
INFLACION_IA        = f"{ARGENTINADATOS_BASE}/v1/finanzas/indices/inflacion-interanual"
RIESGO_PAIS_ULTIMO  = f"{ARGENTINADATOS_BASE}/v1/finanzas/indices/riesgo-pais/ultimo"

# ── BCRA variable id -> indicator config ──────────────────────
# (code, name, short_name, category, unit, format, decimals, frequency)
BCRA_VARIABLES: Dict[int, tuple] = {
    1:  ("reservas",             "Reservas Internacionales",           "Reservas",       Category.ACTIVITY,      "USD", "currency", 0, "daily"),
    15: ("base_monetaria",       "Base Monetaria",                     "Base Mon.",      Category.ACTIVITY,      "ARS", "currency", 0, "daily"),
    6:  ("tasa_pm",              "Tasa de Política Monetaria",         "Tasa PM",        Category.INTEREST_RATE, "%",   "percent",  2, "daily"),
    7:  ("badlar",               "BADLAR Bancos Privados",             "BADLAR",         Category.INTEREST_RATE, "%",   "percent",  2, "daily"),
    31: ("uva",                  "UVA (Unidad de Valor Adquisitivo)",  "UVA",            Category.INFLATION,     "ARS", "currency", 2, "daily"),
    32: ("cer",                  "CER (Coeficiente de Estabilización)", "CER",           Category.INFLATION,     "",    "decimal",  4, "daily"),
    27: ("inflacion_mensual",    "Inflación Mensual (INDEC)",          "Inflación",      Category.INFLATION,     "%",   "percent",  2, "monthly"),
    28: ("inflacion_interanual", "Inflación Interanual",               "Inflación i.a.", Category.INFLATION,     "%",   "percent",  2, "monthly"),
    4:  ("tc_minorista",         "Tipo de Cambio Minorista",           "TC Min.",        Category.EXCHANGE_RATE, "ARS", "currency", 2, "daily"),
    5:  ("tc_mayorista",         "Tipo de Cambio Mayorista",           "TC May.",        Category.EXCHANGE_RATE, "ARS", "currency", 4, "daily"),
}


def _bcra_indicator(row: dict, source: str) -> Indicator:
    code, name, short, category, unit, fmt, decimals, freq = BCRA_VARIABLES[row["idVariable"]]
    return Indicator(
        code         = code,
        name         = name,
        short_name   = short,
        category     = category,
        value        = float(row["valor"]),
        format       = fmt,
        decimals     = decimals,
        unit         = unit,
        source       = source,
        last_updated = row.get("fecha") or "",
        frequency    = freq,
    )


class BCRAConnector(Connector):

    # Serves several categories; cache for as long as the fastest-moving one allows
    ttl_key = min({cfg[3] for cfg in BCRA_VARIABLES.values()}, key=ttl_for).value
    provides = frozenset(cfg[0] for cfg in BCRA_VARIABLES.values())
    fallback_disclaimer = "Serie obtenida del endpoint histórico del BCRA"

    @property
    def name(self) -> str:
        return "bcra"

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [
            Upstream("BCRA", "bcra", lambda: self._fetch(client, BCRA_V3_MONETARIAS)),
            Upstream("BCRA v2", "bcra", lambda: self._fetch(client, BCRA_V2_PRINCIPALES)),
        ]

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> List[Indicator]:
        data = await get_json(client, url, headers={"Accept": "application/json"})
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise UpstreamError("invalid BCRA response format")
        indicators = []
        for row in results:
            if row.get("idVariable") not in BCRA_VARIABLES or row.get("valor") is None:
                continue
            try:
                indicators.append(_bcra_indicator(row, "BCRA"))
            except (TypeError, ValueError) as e:
                raise UpstreamError(f"bad BCRA row {row.get('idVariable')}: {e}") from e
        if not indicators:
            raise UpstreamError("no known BCRA variables in response")
        return indicators


class InflationConnector(Connector):
    """Monthly and year-on-year CPI from ArgentinaDatos (last two rows of each series)."""

    ttl_key = Category.INFLATION.value
    provides = frozenset({"inflacion_mensual", "inflacion_interanual"})

    @property
    def name(self) -> str:
        return "argentinadatos_inflation"

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [Upstream("ArgentinaDatos", "argentinadatos", lambda: self._fetch(client))]

    async def _fetch(self, client: httpx.AsyncClient) -> List[Indicator]:
        monthly = await get_json(client, INFLACION_MENSUAL)
        yearly  = await get_json(client, INFLACION_IA)
        return [
            self._from_series(monthly, "inflacion_mensual", "Inflación Mensual (INDEC)", "Inflación"),
            self._from_series(yearly, "inflacion_interanual", "Inflación Interanual", "Inflación i.a."),
        ]

    @staticmethod
    def _from_series(series, code: str, name: str, short: str) -> Indicator:
        if not isinstance(series, list) or not series:
            raise UpstreamError(f"empty series for {code}")
        current  = series[-1]
        previous = series[-2] if len(series) > 1 else None
        try:
            value = float(current["valor"])
            prev  = float(previous["valor"]) if previous else None
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"bad row for {code}: {e}") from e
        return Indicator(
            code           = code,
            name           = name,
            short_name     = short,
            category       = Category.INFLATION,
            value          = value,
            previous_value = prev,
            change_percent = pct_change(value, prev),
            format         = "percent",
            unit           = "%",
            source         = "ArgentinaDatos (INDEC)",
            last_updated   = current.get("fecha") or "",
            frequency      = "monthly",
        )


class CountryRiskConnector(Connector):

    ttl_key = Category.MARKET_INDEX.value
    provides = frozenset({"riesgo_pais"})

    @property
    def name(self) -> str:
        return "argentinadatos_riesgo_pais"

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [Upstream("ArgentinaDatos", "argentinadatos", lambda: self._fetch(client))]

    async def _fetch(self, client: httpx.AsyncClient) -> List[Indicator]:
        data = await get_json(client, RIESGO_PAIS_ULTIMO)
        if not isinstance(data, dict) or not isinstance(data.get("valor"), (int, float)):
            raise UpstreamError("invalid riesgo país response")
        return [Indicator(
            code         = "riesgo_pais",
            name         = "Riesgo País (EMBI)",
            short_name   = "Riesgo País",
            category     = Category.MARKET_INDEX,
            value        = float(data["valor"]),
            format       = "decimal",
            decimals     = 0,
            unit         = "pb",
            source       = "ArgentinaDatos (JP Morgan)",
            last_updated = data.get("fecha") or "",
        )]
