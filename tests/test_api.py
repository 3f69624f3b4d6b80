"""HTTP-level tests for the FastAPI app, with the scheduler off and fakes behind it."""

import pytest
from fastapi.testclient import TestClient

import app as app_module
from indicator_engine.models.indicator import Category, SourceResult
from indicator_engine.orchestrator.aggregator import IndicatorAggregator
from news_ingestion.models import ProcessedNewsArticle
from news_ingestion.pipeline import NewsPipeline
from news_ingestion.refresh import RefreshCoordinator
from tests.fakes import FakeClassifier, StaticConnector, make_indicator, make_raw, mock_client


def _seed(store, source_id, title, category):
    article = ProcessedNewsArticle.from_raw(make_raw(source_id, title, category=category))
    article.summary      = f"Resumen: {title}"
    article.is_processed = True
    store.upsert_article(article)


@pytest.fixture
def services(store, cache, clock):
    classifier = FakeClassifier()
    pipeline = NewsPipeline(store, classifier, feeds=[], cache=cache,
                            client=mock_client({}), clock=clock)
    crypto = StaticConnector("crypto", SourceResult("CoinGecko", (
        make_indicator("btc", Category.CRYPTO, 95000, change_percent=1.5),)), provides={"btc"})
    aggregator = IndicatorAggregator(connectors={"crypto": crypto},
                                     category_sources={Category.CRYPTO: ["crypto"]},
                                     cache=cache, client=mock_client({}), clock=clock)
    return app_module.Services(
        store       = store,
        classifier  = classifier,
        pipeline    = pipeline,
        coordinator = RefreshCoordinator(store, pipeline, clock=clock),
        aggregator  = aggregator,
        cache       = cache,
    )


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(app_module, "ENABLE_SCHEDULER", False)
    monkeypatch.setattr(app_module.app.state, "services", services, raising=False)
    with TestClient(app_module.app) as c:
        yield c


class TestIndicators:

    def test_unknown_category_is_400(self, client):
        r = client.get("/api/indicators", params={"category": "nope"})
        assert r.status_code == 400
        assert "Unknown category" in r.json()["detail"]

    def test_category(self, client):
        r = client.get("/api/indicators", params={"category": "crypto"})
        assert r.status_code == 200
        body = r.json()
        assert body["category"] == "crypto"
        assert body["count"] == 1
        assert body["indicators"][0]["code"] == "btc"

    def test_overview(self, client):
        body = client.get("/api/indicators/overview").json()
        assert body["categories"]["crypto"][0]["code"] == "btc"

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["store"]["status"] == "ok"
        assert body["scheduler"] == {"running": False, "jobs": []}


class TestNews:

    def test_fresh_store_serves_without_refresh(self, client, services, clock):
        _seed(services.store, "n1", "Soja récord en Chicago", "agro")
        _seed(services.store, "n2", "El BCRA baja la tasa", "economia")
        services.store.set_last_updated(clock())

        body = client.get("/api/news/processed").json()

        assert body["success"]
        assert body["count"] == 2
        assert body["is_stale"] is False
        assert body["stale_minutes"] == 0
        assert services.coordinator.run_count == 0
        assert {"title", "summary", "category", "url"} <= set(body["articles"][0])

    def test_category_filter(self, client, services, clock):
        _seed(services.store, "n1", "Soja récord en Chicago", "agro")
        _seed(services.store, "n2", "El BCRA baja la tasa", "economia")
        services.store.set_last_updated(clock())

        body = client.get("/api/news/processed", params={"category": "agro"}).json()

        assert [a["source_id"] for a in body["articles"]] == ["n1"]

    def test_stale_store_triggers_background_run(self, client, services):
        body = client.get("/api/news/processed").json()

        assert body["is_stale"] is True
        assert body["stale_minutes"] is None
        assert services.coordinator.run_count == 1

    def test_refresh_flag_triggers_even_when_fresh(self, client, services, clock):
        services.store.set_last_updated(clock())
        client.get("/api/news/processed", params={"refresh": "true"})
        assert services.coordinator.run_count == 1

    def test_limit_out_of_range_is_422(self, client):
        assert client.get("/api/news/processed", params={"limit": 0}).status_code == 422
        assert client.get("/api/news/processed", params={"limit": 101}).status_code == 422

    def test_status(self, client, services):
        _seed(services.store, "n1", "Soja récord en Chicago", "agro")

        body = client.get("/api/news/processed", params={"status": "true"}).json()

        assert body["is_ai_available"] is True
        assert body["store"]["article_count"] == 1
        assert body["store"]["stale"] is True
        assert body["last_run"] is None

    def test_post_runs_pipeline(self, client, services, clock):
        body = client.post("/api/news/processed", json={"force": True}).json()

        assert body["status"] == "success"
        assert body["success"] is True
        assert services.store.get_last_updated() == clock()


class TestCron:

    def test_wrong_secret_is_401(self, client, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        r = client.get("/api/cron/process-news", headers={"Authorization": "Bearer wrong"})
        assert r.status_code == 401

    def test_right_secret_runs(self, client, services, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        r = client.get("/api/cron/process-news", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200
        assert r.json()["status"] == "success"
        assert services.coordinator.run_count == 1


class TestCache:

    def test_delete_by_prefix(self, client, services):
        services.cache.set("news:all:20", [], 120)
        services.cache.set("get_ticker:all", [], 60)

        body = client.delete("/api/cache", params={"prefix": "news:"}).json()

        assert body == {"removed": 1, "prefix": "news:"}
        assert services.cache.get("get_ticker:all") == []

    def test_delete_everything(self, client, services):
        services.cache.set("a", 1, 60)
        services.cache.set("b", 2, 60)

        body = client.delete("/api/cache").json()

        assert body["removed"] == 2
        assert services.cache.stats()["size"] == 0
