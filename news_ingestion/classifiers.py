"""
Pulso — Editorial Pre-Filters
──────────────────────────────
Pure functions applied before anything is sent to the AI
classifier. They never touch the network or the store.

EDITORIAL POLICY: finance, economy, agribusiness markets, crypto
and companies listed in Argentina. Priority: Rosario and its
zone of influence.

  is_article_relevant()   exclusion list → max age → mandatory finance keyword
  relevance_priority()    feed priority + Rosario / Argentina / crypto boosts
  are_titles_similar()    fuzzy duplicate check on titles
  balance_by_category()   cap per category so no single one dominates
"""

import re
import unicodedata
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from indicator_engine.models.indicator import parse_timestamp
from news_ingestion.models import RawNewsArticle

MAX_ARTICLE_AGE_HOURS = 72
MAX_PER_CATEGORY      = 8
SIMILARITY_THRESHOLD  = 0.7

# ── Hard exclusions: any match rejects the article ──────────────
EXCLUSION_KEYWORDS = [
    # gastronomía / turismo
    "restaurante", "receta", "cocina", "chef", "gastronomía", "maridaje",
    "turismo", "vacaciones", "hotel", "escapada", "all inclusive",
    # deportes
    "fútbol", "partido de", "gol de", "messi", "boca juniors", "river plate",
    "copa américa", "champions league", "básquet", "rugby", "tenis", "juegos olímpicos",
    # espectáculos
    "farándula", "actriz", "película", "serie de tv", "netflix", "celebridad",
    "reality show", "gran hermano", "telenovela", "cantante",
    # astrología / clima
    "horóscopo", "astrología", "zodíaco", "pronóstico del tiempo", "clima hoy",
    "alerta meteorológica", "tormentas severas", "granizo", "alerta naranja", "alerta amarilla",
    # cultura / ciencia no financiera
    "museo", "concierto", "recital", "obra de teatro", "dinosaurio", "fósil",
    "paleontología", "arqueología", "volcán", "terremoto",
    # salud / política pura / policiales
    "enfermedad", "vacuna contra", "hospital", "cirugía", "pandemia",
    "elecciones municipales", "campaña electoral", "protesta social", "cárcel",
    "sicario", "narcotráfico", "asesinato", "homicidio", "secuestro", "femicidio",
    # filler de cotización por ciudad y en vivo
    "dólar blue en córdoba", "dólar blue en mendoza", "dólar hoy en córdoba",
    "minuto a minuto", "riesgo país hoy", "dólar hoy :", "dólar cripto hoy",
    "precio y cotización de este", "efeméride", "día internacional de",
    "huerta en casa", "jardín", "inundación", "evacuados",
]

# ── Mandatory: at least one must appear ─────────────────────────
FINANCE_KEYWORDS = [
    "dólar", "dolar", "peso argentino", "tipo de cambio", "cotización", "devaluación",
    "brecha cambiaria", "cepo", "mep", "ccl", "contado con liqui", "blue",
    "inflación", "inflacion", "ipc", "precios", "costo de vida",
    "tasa de interés", "plazo fijo", "bono", "bonos", "letras del tesoro", "licitación",
    "obligación negociable", "riesgo país", "riesgo pais",
    "merval", "byma", "bolsa", "acciones", "cedear", "adr", "wall street", "nasdaq",
    "inversión", "inversion", "inversor", "rendimiento",
    "bcra", "banco central", "reservas", "base monetaria", "política monetaria", "emisión",
    "pbi", "déficit", "superávit", "fiscal", "recaudación", "presupuesto", "deuda", "fmi",
    "exportación", "exportacion", "importación", "retenciones", "aranceles", "balanza comercial",
    "soja", "maíz", "maiz", "trigo", "girasol", "commodities", "granos", "oleaginosas",
    "chicago", "matba", "rofex", "mercado de granos", "cosecha", "campaña agrícola",
    "hacienda", "feedlot", "precio de la carne", "lácteo",
    "ypf", "pampa energía", "galicia", "banco macro", "supervielle", "cresud", "ternium",
    "tenaris", "loma negra", "edenor", "central puerto", "globant", "mercadolibre", "bioceres",
    "rosario", "bolsa de comercio de rosario", "puerto san martín", "zona núcleo",
    "bitcoin", "btc", "ethereum", "cripto", "blockchain", "stablecoin", "usdt", "binance",
    "fintech", "billetera virtual", "ahorro", "crédito hipotecario",
    "vaca muerta", "gas natural", "petróleo", "litio", "cnv", "indec", "ministerio de economía",
    "agroindustria", "agroexportador", "molienda", "embarque", "puerto",
]

# ── Priority boosts (first match per group) ─────────────────────
RELEVANCE_BOOSTS: List[Tuple[int, List[str]]] = [
    (10, ["rosario", "rosarino", "santa fe", "santafesino", "litoral", "venado tuerto",
          "rafaela", "casilda", "puerto san martín", "bolsa de comercio de rosario",
          "san lorenzo", "timbúes", "zona núcleo", "zona nucleo", "matba", "rofex"]),
    (5,  ["bcra", "banco central", "argentina", "merval", "byma", "ypf", "galicia",
          "supervielle", "cresud", "ternium", "tenaris", "globant", "mercadolibre",
          "cnv", "indec"]),
    (3,  ["bitcoin", "ethereum", "cripto", "blockchain", "btc", "eth"]),
]

STOP_WORDS = {
    "el", "la", "los", "las", "de", "del", "en", "y", "a", "un", "una", "que", "por",
    "para", "con", "se", "su", "al", "es", "lo", "como", "mas", "pero", "o", "no",
    "hoy", "este", "esta",
}


def _text(article: RawNewsArticle) -> str:
    return f"{article.title} {article.content}".lower()


def is_article_relevant(article: RawNewsArticle,
                        now: Optional[datetime] = None) -> Tuple[bool, str]:
    """Returns (relevant, reason)."""
    text = _text(article)

    for kw in EXCLUSION_KEYWORDS:
        if kw in text:
            return False, f"excluded keyword '{kw}'"

    published = parse_timestamp(article.published_at)
    now = now or datetime.now(timezone.utc)
    if published is not None:
        age_h = (now.timestamp() - published) / 3600
        if age_h > MAX_ARTICLE_AGE_HOURS:
            return False, f"too old ({age_h:.0f}h)"

    if not any(kw in text for kw in FINANCE_KEYWORDS):
        return False, "no finance keyword"
    return True, "ok"


def relevance_priority(article: RawNewsArticle) -> int:
    text = _text(article)
    priority = article.priority or 5
    for boost, keywords in RELEVANCE_BOOSTS:
        if any(kw in text for kw in keywords):
            priority += boost
    return priority


def _title_words(title: str) -> List[str]:
    t = unicodedata.normalize("NFD", title.lower())
    t = "".join(ch for ch in t if unicodedata.category(ch) != "Mn")
    t = re.sub(r"[^a-z0-9\s]", "", t)
    return [w for w in t.split() if len(w) > 2 and w not in STOP_WORDS]


def are_titles_similar(a: str, b: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """True when the shared significant words cover >= threshold of the shorter title."""
    words_a, words_b = _title_words(a), _title_words(b)
    if not words_a or not words_b:
        return False
    set_b = set(words_b)
    common = sum(1 for w in words_a if w in set_b)
    return common / min(len(words_a), len(words_b)) >= threshold


def is_fuzzy_duplicate(title: str, others: Iterable[str]) -> bool:
    return any(are_titles_similar(o, title) for o in others)


def balance_by_category(articles: List[RawNewsArticle],
                        max_per_category: int = MAX_PER_CATEGORY) -> List[RawNewsArticle]:
    """Top-N per category by priority then recency; category order preserved."""
    by_cat: Dict[str, List[RawNewsArticle]] = {}
    for a in articles:
        by_cat.setdefault(a.category.lower(), []).append(a)

    balanced: List[RawNewsArticle] = []
    for group in by_cat.values():
        group.sort(key=lambda a: (a.priority or 0, parse_timestamp(a.published_at) or 0), reverse=True)
        balanced.extend(group[:max_per_category])
    return balanced
