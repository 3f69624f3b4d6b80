"""
Pulso — Article Content Scraper
────────────────────────────────
Fetches an article's page and pulls out the body text and lead image,
so the classifier sees more than the feed's excerpt.

  1. GET the page with the shared httpx client, under SCRAPE_TIMEOUT_S
  2. Body text: trafilatura, then readability-lxml
  3. Lead image: og:image, then twitter:image

A scrape never raises. Every failure comes back as a ScrapedContent
with `error` set, and the pipeline keeps the RSS excerpt.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx
import trafilatura
from lxml import etree
from lxml import html as lxml_html
from readability import Document

log = logging.getLogger("pulso.scraper")

SCRAPE_TIMEOUT_S  = float(os.environ.get("SCRAPE_TIMEOUT_S", "10"))
MIN_CONTENT_CHARS = 200
MAX_CONTENT_CHARS = 3000

HTML_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                  "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "es-AR,es;q=0.9,en;q=0.8",
}

_IMAGE_META = (
    '//meta[@property="og:image"]/@content',
    '//meta[@name="og:image"]/@content',
    '//meta[@name="twitter:image"]/@content',
    '//meta[@property="twitter:image"]/@content',
)


@dataclass
class ScrapedContent:
    content:   str = ""
    image_url: Optional[str] = None
    method:    Optional[str] = None     # "trafilatura" | "readability"
    error:     Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and len(self.content) > MIN_CONTENT_CHARS


def _normalise(text: str) -> str:
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def extract_with_trafilatura(html: str) -> Optional[str]:
    return trafilatura.extract(html, include_comments=False, include_tables=False)


def extract_with_readability(html: str) -> Optional[str]:
    summary_html = Document(html).summary()
    text = lxml_html.fromstring(summary_html).text_content()
    return text or None


def extract_text(html: str) -> Tuple[str, Optional[str]]:
    """Body text and the method that produced it; ("", None) when both fail."""
    for method, extractor in (("trafilatura", extract_with_trafilatura),
                              ("readability", extract_with_readability)):
        try:
            text = extractor(html)
        except Exception as e:
            log.warning(f"{method} failed: {e}")
            continue
        text = _normalise(text or "")
        if len(text) > MIN_CONTENT_CHARS:
            return text[:MAX_CONTENT_CHARS], method
    return "", None


def extract_image(html: str) -> Optional[str]:
    if not html.strip():
        return None
    try:
        tree = lxml_html.fromstring(html)
    except (etree.ParserError, ValueError) as e:
        log.debug(f"image lookup skipped: {e}")
        return None
    for xpath in _IMAGE_META:
        for url in tree.xpath(xpath):
            url = url.strip()
            if url.startswith(("http://", "https://")):
                return url
    return None


async def scrape_article(client: httpx.AsyncClient, url: str,
                         timeout: float = SCRAPE_TIMEOUT_S) -> ScrapedContent:
    try:
        r = await asyncio.wait_for(client.get(url, headers=HTML_HEADERS), timeout)
    except asyncio.TimeoutError:
        return ScrapedContent(error=f"timeout after {timeout:.0f}s")
    except httpx.HTTPError as e:
        return ScrapedContent(error=f"network error: {e}")
    if r.status_code != 200:
        return ScrapedContent(error=f"HTTP {r.status_code}")

    html = r.text
    image_url = extract_image(html)
    # Extraction parses the whole page; keep it off the event loop
    loop = asyncio.get_running_loop()
    text, method = await loop.run_in_executor(None, extract_text, html)
    if not text:
        return ScrapedContent(image_url=image_url, error="no article text found")

    log.debug(f"Scraped {len(text)} chars via {method} from {url[:60]}")
    return ScrapedContent(content=text, image_url=image_url, method=method)
