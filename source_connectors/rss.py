"""
Pulso — RSS Feed Connectors
────────────────────────────
One FeedConnector per configured feed. Feeds are never cached:
every pipeline run wants the current items.

Each item becomes a RawNewsArticle keyed by sha1(link), so the
same story syndicated by two feeds collapses to one row.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import feedparser
import httpx
from dateutil.parser import parse as parse_date

from news_ingestion.models import RawNewsArticle, external_key
from source_connectors.base import Connector, Upstream, UpstreamError, get_bytes

log = logging.getLogger("pulso.connectors.rss")

MAX_ITEMS_PER_FEED = 10
MAX_CONTENT_CHARS  = 2000

RSS_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; PulsoBot/1.0; RSS reader)",
    "Accept": "application/rss+xml, application/xml, text/xml, */*",
}

# Argentine timezone abbreviations feedparser hands us unparsed
TZINFOS = {
    "ART": timezone(timedelta(hours=-3)),
    "GMT": timezone.utc,
    "UTC": timezone.utc,
}


@dataclass(frozen=True)
class FeedConfig:
    feed_id:  str
    name:     str
    url:      str
    category: str        # default news category for the feed's items
    priority: int        # 1-10, higher = more important


RSS_FEEDS: List[FeedConfig] = [
    # Agro specialised
    FeedConfig("infocampo",        "Infocampo",          "https://www.infocampo.com.ar/feed/",                 "agro",     9),
    FeedConfig("bichosdecampo",    "Bichos de Campo",    "https://bichosdecampo.com/feed/",                    "agro",     9),
    FeedConfig("valorsoja",        "Valor Soja",         "https://www.valorsoja.com/feed/",                    "agro",     9),
    FeedConfig("clarin-rural",     "Clarín Rural",       "https://www.clarin.com/rss/rural/",                  "agro",     8),
    # Economy / finance
    FeedConfig("ambito",           "Ámbito Financiero",  "https://www.ambito.com/rss/economia.xml",            "economia", 8),
    FeedConfig("ambito-finanzas",  "Ámbito Finanzas",    "https://www.ambito.com/rss/finanzas.xml",            "finanzas", 8),
    FeedConfig("lanacion-economia", "La Nación Economía",
               "https://www.lanacion.com.ar/arc/outboundfeeds/rss/?outputType=xml&_website=lanacion",      "economia", 7),
    FeedConfig("clarin-economia",  "Clarín Economía",    "https://www.clarin.com/rss/economia/",               "economia", 7),
    FeedConfig("bloomberg-latam",  "Bloomberg Línea",
               "https://www.bloomberglinea.com/arc/outboundfeeds/rss/?outputType=xml",                      "mercados", 6),
    FeedConfig("iprofesional",     "iProfesional",       "https://www.iprofesional.com/rss/economia",          "economia", 5),
    FeedConfig("cronista",         "El Cronista",        "https://www.cronista.com/arc/outboundfeeds/rss/",    "finanzas", 5),
    # Crypto
    FeedConfig("cointelegraph-es", "CoinTelegraph ES",   "https://es.cointelegraph.com/rss",                   "cripto",   7),
    FeedConfig("criptonoticias",   "CriptoNoticias",     "https://www.criptonoticias.com/feed/",               "cripto",   7),
]


def _published_at(entry) -> Optional[str]:
    published = entry.get("published") or entry.get("updated")
    if not published:
        return None
    try:
        dt = parse_date(published, tzinfos=TZINFOS)
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _image_url(entry) -> Optional[str]:
    """media:content, media:thumbnail, then an image enclosure."""
    for media in (entry.get("media_content") or []) + (entry.get("media_thumbnail") or []):
        url = media.get("url")
        if url and media.get("medium", "image") == "image":
            return url
    for enclosure in entry.get("enclosures") or []:
        if (enclosure.get("type") or "").startswith("image/") and enclosure.get("href"):
            return enclosure["href"]
    return None


def _clean(text: str) -> str:
    # feedparser leaves HTML in summaries; a crude strip is enough for excerpts
    text = re.sub(r"<[^>]+>", " ", text or "")
    return re.sub(r"\s+", " ", text).strip()


def parse_feed(raw: bytes, feed: FeedConfig) -> List[RawNewsArticle]:
    parsed = feedparser.parse(raw)
    if parsed.bozo and not parsed.entries:
        raise UpstreamError(f"unparseable feed: {parsed.get('bozo_exception')}")

    articles = []
    for entry in parsed.entries[:MAX_ITEMS_PER_FEED]:
        link  = (entry.get("link") or "").strip()
        title = _clean(entry.get("title", ""))
        if not link or not title:
            continue
        articles.append(RawNewsArticle(
            source_id    = external_key(link),
            feed_id      = feed.feed_id,
            source_name  = feed.name,
            title        = title,
            content      = _clean(entry.get("summary", ""))[:MAX_CONTENT_CHARS],
            url          = link,
            published_at = _published_at(entry) or datetime.now(timezone.utc).isoformat(),
            category     = feed.category,
            priority     = feed.priority,
            image_url    = _image_url(entry),
        ))
    return articles


class FeedConnector(Connector):

    def __init__(self, feed: FeedConfig):
        self.feed = feed

    @property
    def name(self) -> str:
        return f"rss:{self.feed.feed_id}"

    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]:
        return [Upstream(self.feed.name, "rss", lambda: self._fetch(client))]

    async def _fetch(self, client: httpx.AsyncClient) -> List[RawNewsArticle]:
        raw = await get_bytes(client, self.feed.url, headers=RSS_HEADERS)
        articles = parse_feed(raw, self.feed)
        log.debug(f"{self.feed.feed_id}: {len(articles)} items")
        return articles


def default_feeds() -> List[FeedConnector]:
    return [FeedConnector(f) for f in RSS_FEEDS]
