"""
Pulso — Indicators & News API
──────────────────────────────
FastAPI surface over the indicator aggregation engine and the news
ingestion pipeline.

  GET    /api/indicators?category=     one category
  GET    /api/indicators/overview      every category
  GET    /api/ticker                   compact ticker view
  GET    /api/dollar                   dollar quotes + gaps/spreads
  GET    /api/news/processed           stored news, staleness-annotated
  POST   /api/news/processed           run (or force) the pipeline
  GET    /api/cron/process-news        external cron entry point
  DELETE /api/cache?prefix=            drop cached views

  python app.py          (PORT, default 8000)
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

# .env has to be in os.environ before the modules below read their config
load_dotenv()

from indicator_engine.api.news_endpoint import (
    DEFAULT_LIMIT, MAX_LIMIT, get_processed_news_response, get_processing_status,
)
from indicator_engine.cache.memory_cache import TTLCache, cache as default_cache
from indicator_engine.models.indicator import Category
from indicator_engine.orchestrator.aggregator import IndicatorAggregator
from indicator_engine.orchestrator.scheduler import (
    get_scheduler_status, start_scheduler, stop_scheduler,
)
from news_ingestion.ai_classifier import AIClassifier
from news_ingestion.database import NEWS_DB_PATH, NewsStore, run_blocking
from news_ingestion.errors import StoreUnavailable
from news_ingestion.pipeline import NewsPipeline
from news_ingestion.refresh import RefreshCoordinator
from source_connectors.base import close_client

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
log = logging.getLogger("pulso.app")

ENABLE_SCHEDULER = os.environ.get("ENABLE_SCHEDULER", "true").lower() == "true"
RUN_NEWS_ON_START = os.environ.get("RUN_NEWS_ON_START", "false").lower() == "true"


@dataclass
class Services:
    store:       NewsStore
    classifier:  AIClassifier
    pipeline:    NewsPipeline
    coordinator: RefreshCoordinator
    aggregator:  IndicatorAggregator
    cache:       TTLCache


def build_services(cache: Optional[TTLCache] = None) -> Services:
    cache       = cache if cache is not None else default_cache
    store       = NewsStore(os.environ.get("NEWS_DB_PATH", NEWS_DB_PATH))
    classifier  = AIClassifier()
    pipeline    = NewsPipeline(store, classifier, cache=cache)
    return Services(
        store       = store,
        classifier  = classifier,
        pipeline    = pipeline,
        coordinator = RefreshCoordinator(store, pipeline),
        aggregator  = IndicatorAggregator(cache=cache),
        cache       = cache,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    svc = app.state.services
    if ENABLE_SCHEDULER:
        start_scheduler(svc.coordinator, svc.cache, run_news_now=RUN_NEWS_ON_START)
    if not svc.classifier.available:
        log.warning("ANTHROPIC_API_KEY not set: news runs will record transient 'unavailable' errors")
    yield
    stop_scheduler()
    await close_client()


app = FastAPI(
    title="Pulso API",
    description="Argentine market indicators and curated finance news, aggregated from public sources.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.get("/")
async def root():
    return {"status": "ok", "docs": "/docs", "api": "/api/indicators/overview"}


@app.get("/health")
async def health(svc: Services = Depends(get_services)):
    try:
        await run_blocking(svc.store.ping)
        store = {"status": "ok", **(await svc.coordinator.is_store_stale())}
    except StoreUnavailable as e:
        store = {"status": "unavailable", "error": str(e)}
    return {
        "status":    "healthy",
        "cache":     svc.cache.stats(),
        "scheduler": get_scheduler_status(),
        "store":     store,
        "timestamp": int(time.time()),
    }


# ── Indicators ────────────────────────────────────────────────

@app.get("/api/indicators", tags=["Indicators"])
async def get_indicators(category: str = Query(..., description="e.g. exchange-rate, crypto"),
                         svc: Services = Depends(get_services)):
    try:
        cat = Category.parse(category)
    except ValueError as e:
        raise HTTPException(400, str(e))
    indicators = await svc.aggregator.get_by_category(cat)
    return {
        "category":   cat.value,
        "count":      len(indicators),
        "indicators": [i.to_dict() for i in indicators],
    }


@app.get("/api/indicators/overview", tags=["Indicators"])
async def get_overview(svc: Services = Depends(get_services)):
    return await svc.aggregator.get_overview()


@app.get("/api/ticker", tags=["Indicators"])
async def get_ticker(svc: Services = Depends(get_services)):
    items = await svc.aggregator.get_ticker()
    return {"items": [t.to_dict() for t in items], "count": len(items)}


@app.get("/api/dollar", tags=["Indicators"])
async def get_dollar(svc: Services = Depends(get_services)):
    return await svc.aggregator.get_dollar_quotes()


# ── News ──────────────────────────────────────────────────────

@app.get("/api/news/processed", tags=["News"])
async def get_processed_news(
    category: Optional[str] = Query(None),
    limit:    int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    refresh:  bool = Query(False),
    status:   bool = Query(False, description="return processing status instead of articles"),
    svc: Services = Depends(get_services),
):
    if status:
        return await get_processing_status(svc.coordinator, svc.store, svc.classifier.available)
    return await get_processed_news_response(
        svc.coordinator, svc.store, svc.cache,
        category=category, limit=limit, refresh=refresh,
    )


@app.post("/api/news/processed", tags=["News"])
async def process_news(force: bool = Body(False, embed=True),
                       svc: Services = Depends(get_services)):
    result = await svc.coordinator.run(force=force)
    return result.to_dict()


@app.get("/api/cron/process-news", tags=["News"])
async def cron_process_news(authorization: Optional[str] = Header(None),
                            svc: Services = Depends(get_services)):
    secret = os.environ.get("CRON_SECRET", "")
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(401, "Unauthorized")
    result = await svc.coordinator.run()
    return result.to_dict()


# ── Cache ─────────────────────────────────────────────────────

@app.delete("/api/cache", tags=["Cache"])
async def invalidate_cache(prefix: Optional[str] = Query(None, description="e.g. news:"),
                           svc: Services = Depends(get_services)):
    if prefix:
        removed = svc.cache.invalidate(prefix=prefix)
    else:
        removed = svc.cache.stats()["size"]
        svc.cache.clear()
    log.info(f"Cache invalidated: prefix={prefix!r} removed={removed}")
    return {"removed": removed, "prefix": prefix}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("app:app", host="0.0.0.0", port=port, reload=False, log_level="info")
