import pytest

from indicator_engine.cache.memory_cache import TTLCache
from indicator_engine.orchestrator.rate_limiter import reset_buckets
from news_ingestion.database import NewsStore
from tests.fakes import FakeClock


@pytest.fixture(autouse=True)
def fresh_rate_limits():
    reset_buckets()
    yield
    reset_buckets()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "news.db")


@pytest.fixture
def store(db_path):
    s = NewsStore(db_path)
    yield s
    s.close()
