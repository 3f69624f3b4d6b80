"""
Pulso — News Ingestion Pipeline
────────────────────────────────
One run walks:

  idle → fetching → classifying → persisting → done(success|partial|failed)

  1. Fetch raw articles from every configured RSS feed (a broken feed
     is recorded and skipped, never fatal)
  2. Deduplicate by source_id, within the run and against the store
  3. Editorial pre-filters (keywords, age, fuzzy titles against the run
     and recently stored titles, balance)
  4. Scrape the full page, then classify with the AI collaborator,
     CLASSIFY_CONCURRENCY at a time, persisting each article as soon
     as its outcome is known
  5. Record last_updated and drop the news read cache

Only a store that cannot be reached before any item is touched fails
a run. Everything else is contained per feed or per article.
Store calls run on the default executor so sqlite never blocks the loop.

  python -m news_ingestion.pipeline --mode run
  python -m news_ingestion.pipeline --mode force
  python -m news_ingestion.pipeline --mode status
  python -m news_ingestion.pipeline --mode purge --hours 720
"""

import argparse
import asyncio
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

import httpx
from dotenv import load_dotenv

from indicator_engine.cache.memory_cache import TTLCache, cache as default_cache
from indicator_engine.models.indicator import SourceResult
from indicator_engine.orchestrator.rate_limiter import ConcurrencyLimiter
from news_ingestion.ai_classifier import AIClassifier, ClassificationOutcome, OutcomeKind
from news_ingestion.classifiers import (
    balance_by_category, is_article_relevant, is_fuzzy_duplicate, relevance_priority,
)
from news_ingestion.content_scraper import SCRAPE_TIMEOUT_S, scrape_article
from news_ingestion.database import NEWS_DB_PATH, NewsStore, run_blocking
from news_ingestion.errors import (
    ClassificationTransient, ErrorKind, FeedFetchFailure, PersistenceFailure,
    StoreUnavailable, rejected_message,
)
from news_ingestion.models import ProcessedNewsArticle, RawNewsArticle
from source_connectors.base import Connector, close_client, get_client
from source_connectors.rss import default_feeds

log = logging.getLogger("pulso.pipeline")

# ── Config (override via environment variables) ────────────────
CLASSIFY_CONCURRENCY = int(os.environ.get("CLASSIFY_CONCURRENCY", "5"))
RUN_DEADLINE_S       = float(os.environ.get("RUN_DEADLINE_S", "50"))
MAX_ARTICLES_PER_RUN = int(os.environ.get("MAX_ARTICLES_PER_RUN", "30"))
RECENT_TITLES        = 200                 # stored titles the fuzzy filter compares against
MAX_ERROR_SAMPLES    = 20

NEWS_CACHE_PREFIX = "news:"


class PipelineState(str, Enum):
    IDLE        = "idle"
    FETCHING    = "fetching"
    CLASSIFYING = "classifying"
    PERSISTING  = "persisting"
    DONE        = "done"


@dataclass
class PipelineRunResult:
    run_id:           str
    status:           str = "running"       # success | partial | failed
    fetched_count:    int = 0
    skipped_count:    int = 0               # already processed or rejected
    filtered_count:   int = 0               # dropped by editorial filters
    processed_count:  int = 0
    rejected_count:   int = 0
    error_count:      int = 0
    feed_error_count: int = 0
    added:            int = 0
    updated:          int = 0
    errors:           List[str] = field(default_factory=list)
    duration:         float = 0.0
    joined_in_flight: bool = False          # a force request that shared a normal run

    @property
    def success(self) -> bool:
        return self.error_count == 0

    def record_error(self, message: str, counts: bool = True):
        if counts:
            self.error_count += 1
        if len(self.errors) < MAX_ERROR_SAMPLES:
            self.errors.append(message)

    def to_dict(self) -> dict:
        return {
            "run_id":           self.run_id,
            "success":          self.success,
            "status":           self.status,
            "fetched_count":    self.fetched_count,
            "skipped_count":    self.skipped_count,
            "filtered_count":   self.filtered_count,
            "processed_count":  self.processed_count,
            "rejected_count":   self.rejected_count,
            "error_count":      self.error_count,
            "feed_error_count": self.feed_error_count,
            "added":            self.added,
            "updated":          self.updated,
            "errors":           list(self.errors),
            "duration":         round(self.duration, 2),
            "joined_in_flight": self.joined_in_flight,
        }


class NewsPipeline:

    def __init__(self, store: NewsStore, classifier: AIClassifier,
                 feeds: Optional[Sequence[Connector]] = None,
                 cache: Optional[TTLCache] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 editorial_filters: bool = True,
                 scrape_content: bool = True,
                 scrape_timeout: float = SCRAPE_TIMEOUT_S,
                 concurrency: int = CLASSIFY_CONCURRENCY,
                 run_deadline: float = RUN_DEADLINE_S,
                 max_articles: int = MAX_ARTICLES_PER_RUN,
                 clock=time.time):
        self.store             = store
        self.classifier        = classifier
        self.feeds             = list(feeds) if feeds is not None else default_feeds()
        self.cache             = cache if cache is not None else default_cache
        self.editorial_filters = editorial_filters
        self.scrape_content    = scrape_content
        self.scrape_timeout    = scrape_timeout
        self.concurrency       = concurrency
        self.run_deadline      = run_deadline
        self.max_articles      = max_articles
        self.state             = PipelineState.IDLE
        self.last_result: Optional[PipelineRunResult] = None
        self._client           = client
        self._clock            = clock

    # ══════════════════════════════════════════════════════════════
    # PIPELINE STAGES
    # ══════════════════════════════════════════════════════════════

    async def stage_fetch(self, result: PipelineRunResult) -> List[RawNewsArticle]:
        """Stage 1: every feed concurrently. Failed feeds are recorded, not raised."""
        client = self._client or await get_client()
        fetched = await asyncio.gather(
            *[feed.fetch(client) for feed in self.feeds], return_exceptions=True,
        )

        raw: List[RawNewsArticle] = []
        for feed, res in zip(self.feeds, fetched):
            if isinstance(res, Exception):
                res = SourceResult.unavailable(feed.name, str(res))
            if not res.available:
                failure = FeedFetchFailure(feed.name, res.error or "unavailable")
                log.warning(str(failure))
                result.feed_error_count += 1
                result.record_error(str(failure), counts=False)
                continue
            raw.extend(a for a in res.payload if isinstance(a, RawNewsArticle))

        result.fetched_count = len(raw)
        log.info(f"Fetched {len(raw)} articles from {len(self.feeds) - result.feed_error_count}"
                 f"/{len(self.feeds)} feeds")
        return raw

    async def stage_deduplicate(self, raw: List[RawNewsArticle],
                                result: PipelineRunResult) -> List[RawNewsArticle]:
        """
        Stage 2: one article per source_id (first feed wins), then drop
        anything the store already settled: processed, or rejected.
        """
        unique: Dict[str, RawNewsArticle] = {}
        for article in raw:
            unique.setdefault(article.source_id, article)

        existing = await run_blocking(self.store.get_articles, unique)
        pending = []
        for source_id, article in unique.items():
            prev = existing.get(source_id)
            if prev is not None and not prev.is_retryable:
                result.skipped_count += 1
                continue
            pending.append(article)

        log.info(f"Dedup: {len(raw)} raw → {len(unique)} unique → {len(pending)} to classify")
        return pending

    async def known_titles(self, pending: List[RawNewsArticle]) -> List[str]:
        """Recently stored titles, minus the rows this run is about to retry."""
        retrying = {a.source_id for a in pending}
        rows = await run_blocking(self.store.recent_titles, RECENT_TITLES)
        return [title for source_id, title in rows if source_id not in retrying]

    def stage_filter(self, articles: List[RawNewsArticle], result: PipelineRunResult,
                     known_titles: Sequence[str] = ()) -> List[RawNewsArticle]:
        """
        Stage 3: editorial pre-filters. Dropped articles never reach the store.
        A title too close to one already stored or queued this run is dropped.
        """
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        kept: List[RawNewsArticle] = []
        titles: List[str] = list(known_titles)

        for article in articles:
            ok, reason = is_article_relevant(article, now)
            if not ok:
                log.debug(f"Filtered '{article.title[:50]}': {reason}")
                result.filtered_count += 1
                continue
            if is_fuzzy_duplicate(article.title, titles):
                log.debug(f"Filtered '{article.title[:50]}': similar title already stored or queued")
                result.filtered_count += 1
                continue
            titles.append(article.title)
            kept.append(article.with_priority(relevance_priority(article)))

        balanced = balance_by_category(kept)
        balanced.sort(key=lambda a: a.priority, reverse=True)
        selected = balanced[:self.max_articles]
        result.filtered_count += len(kept) - len(selected)

        log.info(f"Filter: {len(selected)} pass, {len(articles) - len(selected)} dropped")
        return selected

    async def stage_classify(self, articles: List[RawNewsArticle],
                             result: PipelineRunResult):
        """
        Stage 4: scrape + classify + persist each article, bounded fan-out.
        Whatever is still running at the deadline is cancelled and
        stored as a transient timeout, unless its outcome was already known.
        """
        if not articles:
            return
        categories = await run_blocking(self.store.category_slugs)
        limiter = ConcurrencyLimiter(self.concurrency)
        # source_id -> finished article, set before its write starts
        settled: Dict[str, ProcessedNewsArticle] = {}

        tasks = {
            asyncio.create_task(self._process_one(article, categories, limiter, result, settled)): article
            for article in articles
        }
        done, pending = await asyncio.wait(tasks, timeout=self.run_deadline)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            log.warning(f"Deadline of {self.run_deadline:.0f}s hit: {len(pending)} articles left unfinished")

        self.state = PipelineState.PERSISTING
        for task in pending:
            raw = tasks[task]
            article = settled.get(raw.source_id)
            if article is None:
                article = ProcessedNewsArticle.from_raw(raw)
                self._mark_transient(article, "timeout", f"run deadline of {self.run_deadline:.0f}s reached")
            await self._persist(article, result)

        for task in done:
            exc = task.exception()
            if exc is not None:
                log.error(f"Unexpected failure processing '{tasks[task].title[:50]}': {exc}")
                result.record_error(f"{tasks[task].source_id}: {exc}")

    async def _process_one(self, raw: RawNewsArticle, categories: List[str],
                           limiter: ConcurrencyLimiter, result: PipelineRunResult,
                           settled: Dict[str, ProcessedNewsArticle]):
        article = ProcessedNewsArticle.from_raw(raw)
        async with limiter:
            if self.scrape_content:
                await self._scrape(article)
            try:
                outcome = await self.classifier.classify(article.title, article.content, categories)
            except Exception as e:
                log.error(f"Classifier raised on '{raw.title[:50]}': {e}")
                outcome = ClassificationOutcome.transient("upstream", str(e)[:200])

        if outcome.kind is OutcomeKind.ACCEPTED:
            # Unknown categories would break the foreign key; fall back to the feed's
            article.category     = outcome.category if outcome.category in categories else raw.category
            article.title        = outcome.clean_title or raw.title
            article.summary      = outcome.summary
            article.key_points   = list(outcome.key_points)
            article.is_processed = True
        elif outcome.kind is OutcomeKind.REJECTED:
            article.processing_error = rejected_message(outcome.reason)
            article.error_kind       = ErrorKind.CLASSIFICATION_REJECTED
        else:
            self._mark_transient(article, outcome.failure or "upstream", outcome.detail or "")

        settled[raw.source_id] = article
        await self._persist(article, result)

    async def _scrape(self, article: ProcessedNewsArticle):
        """Swap the feed excerpt for the page's text when the page yields enough of it."""
        client = self._client or await get_client()
        scraped = await scrape_article(client, article.url, timeout=self.scrape_timeout)
        if scraped.success:
            article.content = scraped.content
        else:
            log.debug(f"Keeping excerpt for '{article.title[:50]}': {scraped.error}")
        article.image_url = article.image_url or scraped.image_url

    @staticmethod
    def _mark_transient(article: ProcessedNewsArticle, failure: str, detail: str):
        article.is_processed     = False
        article.processing_error = str(ClassificationTransient(failure, detail))
        article.error_kind       = ErrorKind.CLASSIFICATION_TRANSIENT

    async def _persist(self, article: ProcessedNewsArticle, result: PipelineRunResult):
        """Upsert one article and bump the run counters right away."""
        try:
            action = await run_blocking(self.store.upsert_article, article)
        except PersistenceFailure as e:
            log.error(str(e))
            result.record_error(str(e))
            return

        if action == "added":
            result.added += 1
        else:
            result.updated += 1

        if article.is_processed:
            result.processed_count += 1
        elif article.error_kind is ErrorKind.CLASSIFICATION_REJECTED:
            result.rejected_count += 1
        else:
            result.record_error(f"{article.title[:60]}: {article.processing_error}")

    # ══════════════════════════════════════════════════════════════
    # FULL RUN
    # ══════════════════════════════════════════════════════════════

    async def run(self) -> PipelineRunResult:
        """Incremental run: only new or retryable articles are classified."""
        result = PipelineRunResult(run_id=f"news-{int(time.time())}-{uuid.uuid4().hex[:6]}")
        start = time.monotonic()
        log.info(f"═══ Starting news run {result.run_id} ═══")

        try:
            await run_blocking(self.store.ping)
            self.state = PipelineState.FETCHING
            raw = await self.stage_fetch(result)
            pending = await self.stage_deduplicate(raw, result)
            if self.editorial_filters:
                pending = self.stage_filter(pending, result, await self.known_titles(pending))

            self.state = PipelineState.CLASSIFYING
            await self.stage_classify(pending, result)
            self.state = PipelineState.PERSISTING
        except StoreUnavailable as e:
            return self._finish_failed(result, start, e)

        result.status = "partial" if (result.error_count or result.feed_error_count) else "success"
        try:
            await run_blocking(self.store.set_last_updated, self._clock())
        except StoreUnavailable as e:
            log.error(str(e))
            result.record_error(str(e))
            result.status = "partial"
        self.cache.invalidate(prefix=NEWS_CACHE_PREFIX)

        result.duration = time.monotonic() - start
        self.state = PipelineState.DONE
        self.last_result = result
        log.info(
            f"═══ News run {result.status} in {result.duration:.1f}s: "
            f"processed={result.processed_count} rejected={result.rejected_count} "
            f"errors={result.error_count} feed_errors={result.feed_error_count} "
            f"skipped={result.skipped_count} ═══"
        )
        return result

    async def force_reprocess(self) -> PipelineRunResult:
        """Destructive reset: drop every article row, then run from scratch."""
        try:
            cleared = await run_blocking(self.store.clear_store)
        except StoreUnavailable as e:
            result = PipelineRunResult(run_id=f"force-{int(time.time())}-{uuid.uuid4().hex[:6]}")
            return self._finish_failed(result, time.monotonic(), e)
        log.warning(f"Force reprocess: {cleared} articles cleared")
        return await self.run()

    def _finish_failed(self, result: PipelineRunResult, start: float,
                       error: Exception) -> PipelineRunResult:
        log.error(f"News run {result.run_id} failed: {error}")
        result.status = "failed"
        result.record_error(f"StoreUnavailable: {error}")
        result.duration = time.monotonic() - start
        self.state = PipelineState.DONE
        self.last_result = result
        return result


# ══════════════════════════════════════════════════════════════
# CLI
# ══════════════════════════════════════════════════════════════

def print_status(store: NewsStore, classifier: AIClassifier):
    counts = store.status_counts()
    last = store.get_last_updated()
    print("\n══════════════════════════════════════════")
    print("  Pulso — News Store Status")
    print("══════════════════════════════════════════")
    print(f"  Articles:      {counts['article_count']}")
    print(f"  Processed:     {counts['processed']}")
    print(f"  Rejected:      {counts['rejected']}")
    print(f"  Retryable:     {counts['retryable']}")
    print(f"  Last updated:  {datetime.fromtimestamp(last, tz=timezone.utc).isoformat() if last else 'never'}")
    print(f"  AI available:  {classifier.available}")
    print("══════════════════════════════════════════\n")


async def _run_once(pipeline: NewsPipeline, force: bool) -> PipelineRunResult:
    try:
        return await (pipeline.force_reprocess() if force else pipeline.run())
    finally:
        await close_client()


def main(argv=None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    parser = argparse.ArgumentParser(description="Pulso news ingestion pipeline")
    parser.add_argument(
        "--mode",
        choices=["run", "force", "status", "purge"],
        default="run",
        help=(
            "run=incremental run  "
            "force=clear store then run  "
            "status=print store status  "
            "purge=delete articles older than --hours"
        ),
    )
    parser.add_argument("--hours", type=float, default=24 * 30,
                        help="age cutoff for --mode purge (default 30 days)")
    parser.add_argument("--no-filters", action="store_true",
                        help="skip the editorial pre-filters")
    parser.add_argument("--no-scrape", action="store_true",
                        help="classify from the feed excerpt without fetching article pages")
    args = parser.parse_args(argv)

    try:
        store = NewsStore(os.environ.get("NEWS_DB_PATH", NEWS_DB_PATH))
    except StoreUnavailable as e:
        log.error(str(e))
        return 1
    classifier = AIClassifier()

    try:
        if args.mode in ("status", "purge"):
            try:
                if args.mode == "status":
                    print_status(store, classifier)
                else:
                    n = store.purge_older_than(args.hours)
                    print(f"\nPurged {n} articles older than {args.hours:.0f}h")
            except StoreUnavailable as e:
                log.error(str(e))
                return 1
            return 0

        pipeline = NewsPipeline(store, classifier, editorial_filters=not args.no_filters,
                                scrape_content=not args.no_scrape)
        result = asyncio.run(_run_once(pipeline, force=args.mode == "force"))
        print(f"\nResult: {result.to_dict()}")
        return 1 if result.status == "failed" else 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
