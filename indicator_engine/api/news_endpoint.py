"""
Pulso — News API Endpoint
──────────────────────────
/api/news/processed?category=&limit=&refresh=

THIS ENDPOINT NEVER WAITS ON THE PIPELINE.
It reads the store (through the news: cache) and returns at once.
If the store is stale, or the caller asked for refresh, a background
run is triggered and the response says how old the data is.
"""

import logging
from typing import Optional

from indicator_engine.cache.memory_cache import TTLCache
from indicator_engine.cache.ttl_config import ttl_for
from indicator_engine.orchestrator.scheduler import get_scheduler_status
from news_ingestion.database import NewsStore, run_blocking
from news_ingestion.errors import StoreUnavailable
from news_ingestion.refresh import RefreshCoordinator

log = logging.getLogger("pulso.api.news")

DEFAULT_LIMIT = 20
MAX_LIMIT     = 100


def news_cache_key(category: Optional[str], limit: int) -> str:
    return f"news:{(category or 'all').lower()}:{limit}"


async def get_processed_news_response(coordinator: RefreshCoordinator, store: NewsStore,
                                      cache: TTLCache, category: Optional[str] = None,
                                      limit: int = DEFAULT_LIMIT, refresh: bool = False) -> dict:
    """
    Main handler for GET /api/news/processed.
    1. Check staleness from the store's last_updated record
    2. Stale or refresh=true → trigger a background run (no await)
    3. Serve processed articles from cache, else from the store
    """
    limit = max(1, min(int(limit or DEFAULT_LIMIT), MAX_LIMIT))
    staleness = await coordinator.is_store_stale()

    if staleness["stale"] or refresh:
        started = await coordinator.trigger_background_refresh()
        if started:
            log.info(f"News refresh triggered (stale={staleness['stale']} "
                     f"minutes_old={staleness['minutes_old']} requested={refresh})")

    key = news_cache_key(category, limit)
    articles = cache.get(key)
    if articles is None:
        try:
            rows = await run_blocking(store.list_articles, category=category, limit=limit)
        except StoreUnavailable as e:
            log.error(f"News store read failed: {e}")
            articles = []
        else:
            articles = [a.to_dict() for a in rows]
            cache.set(key, articles, ttl_for("news"))

    return {
        "success":       True,
        "count":         len(articles),
        "stale_minutes": staleness["minutes_old"],
        "is_stale":      staleness["stale"],
        "is_refreshing": coordinator.is_refreshing,
        "last_updated":  staleness["last_updated"],
        "articles":      articles,
    }


async def get_processing_status(coordinator: RefreshCoordinator, store: NewsStore,
                                ai_available: bool) -> dict:
    """Store counters, staleness, refresh flag and scheduler state."""
    try:
        counts = await run_blocking(store.status_counts)
    except StoreUnavailable as e:
        log.error(f"Status read failed: {e}")
        counts = {"article_count": None, "processed": None, "rejected": None, "retryable": None}

    staleness = await coordinator.is_store_stale()
    last = coordinator.last_result
    return {
        "is_ai_available": ai_available,
        "store":           {**counts, **staleness},
        "is_refreshing":   coordinator.is_refreshing,
        "runs_started":    coordinator.run_count,
        "last_run":        last.to_dict() if last else None,
        "scheduler":       get_scheduler_status(),
    }
