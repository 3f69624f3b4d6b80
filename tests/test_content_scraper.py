"""Tests for article page scraping: text extraction, lead image, and failure shapes."""

import asyncio

import httpx
import pytest

from news_ingestion.content_scraper import (
    MAX_CONTENT_CHARS, extract_image, extract_text, scrape_article,
)
from tests.fakes import ARTICLE_PARAGRAPHS, article_page, mock_client, network_error

URL = "https://news.example.com/nota-1"


class TestExtraction:

    def test_extracts_article_body(self):
        text, method = extract_text(article_page(ARTICLE_PARAGRAPHS).decode("utf-8"))

        assert method in ("trafilatura", "readability")
        assert "compró reservas por tercera jornada" in text
        assert "riesgo país" in text
        assert len(text) <= MAX_CONTENT_CHARS

    def test_long_pages_are_capped(self):
        paragraphs = [f"Punto {i}. {ARTICLE_PARAGRAPHS[i % len(ARTICLE_PARAGRAPHS)]}" for i in range(40)]
        text, _ = extract_text(article_page(paragraphs).decode("utf-8"))
        assert len(text) == MAX_CONTENT_CHARS

    def test_page_without_body_yields_nothing(self):
        assert extract_text("<html><body><p>Breve.</p></body></html>") == ("", None)

    def test_og_image_wins_over_twitter_image(self):
        html = ('<html><head><meta name="twitter:image" content="https://img.example.com/tw.jpg">'
                '<meta property="og:image" content="https://img.example.com/og.jpg"></head></html>')
        assert extract_image(html) == "https://img.example.com/og.jpg"

    def test_relative_or_missing_image_is_ignored(self):
        assert extract_image('<html><head><meta property="og:image" content="/logo.png"></head></html>') is None
        assert extract_image("") is None


class TestScrape:

    @pytest.mark.asyncio
    async def test_text_and_image(self):
        page = article_page(ARTICLE_PARAGRAPHS, image="https://img.example.com/bcra.jpg")
        client = mock_client({URL: (200, page)})

        scraped = await scrape_article(client, URL)

        assert scraped.success
        assert scraped.error is None
        assert "liquidación de la cosecha" in scraped.content
        assert scraped.image_url == "https://img.example.com/bcra.jpg"

    @pytest.mark.asyncio
    async def test_http_error_is_reported_not_raised(self):
        scraped = await scrape_article(mock_client({URL: (404, b"")}), URL)

        assert not scraped.success
        assert scraped.error == "HTTP 404"
        assert scraped.content == ""

    @pytest.mark.asyncio
    async def test_network_error_is_reported_not_raised(self):
        scraped = await scrape_article(mock_client({URL: network_error}), URL)

        assert not scraped.success
        assert scraped.error.startswith("network error")

    @pytest.mark.asyncio
    async def test_slow_page_times_out(self):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, content=article_page(ARTICLE_PARAGRAPHS))

        scraped = await scrape_article(mock_client({URL: slow}), URL, timeout=0.05)

        assert not scraped.success
        assert scraped.error.startswith("timeout")

    @pytest.mark.asyncio
    async def test_thin_page_keeps_its_image(self):
        page = article_page(["Breve."], image="https://img.example.com/breve.jpg")

        scraped = await scrape_article(mock_client({URL: (200, page)}), URL)

        assert not scraped.success
        assert scraped.image_url == "https://img.example.com/breve.jpg"
