"""
Pulso — News Store
───────────────────
SQLite-backed durable store for processed news.

  articles    one row per external source_id (upsert, never duplicated)
  categories  slugs an article may reference (foreign key target)
  meta        small key/value record; holds last_updated, the
              completion time of the last successful pipeline run

Rows are only removed by clear_store() (full reset) or an explicit
purge_older_than() from the operator CLI.

Uses WAL mode + NORMAL synchronous. One connection shared across
threads, serialised by a lock. Async callers go through run_blocking()
so a slow query or a busy lock never stalls the event loop.

Environment variables:
  NEWS_DB_PATH — sqlite file (default ./pulso_news.db)
"""

import asyncio
import functools
import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from news_ingestion.errors import ErrorKind, PersistenceFailure, StoreUnavailable
from news_ingestion.models import NEWS_CATEGORIES, ProcessedNewsArticle

log = logging.getLogger("pulso.store")

NEWS_DB_PATH = os.environ.get("NEWS_DB_PATH", "pulso_news.db")
BUSY_TIMEOUT_MS = 5000

SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
  slug TEXT PRIMARY KEY,
  name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS articles (
  source_id        TEXT PRIMARY KEY,
  feed_id          TEXT NOT NULL,
  source_name      TEXT NOT NULL,
  title            TEXT NOT NULL,
  content          TEXT NOT NULL DEFAULT '',
  summary          TEXT,
  key_points       TEXT NOT NULL DEFAULT '[]',
  url              TEXT NOT NULL,
  image_url        TEXT,
  category         TEXT NOT NULL REFERENCES categories(slug),
  priority         INTEGER NOT NULL DEFAULT 5,
  published_at     TEXT NOT NULL,
  is_processed     INTEGER NOT NULL DEFAULT 0,
  processing_error TEXT,
  error_kind       TEXT,
  persisted_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_articles_category ON articles(category);
CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at);

CREATE TABLE IF NOT EXISTS meta (
  k TEXT PRIMARY KEY,
  v TEXT NOT NULL
);
"""

_COLUMNS = ("source_id", "feed_id", "source_name", "title", "content", "summary",
            "key_points", "url", "image_url", "category", "priority", "published_at",
            "is_processed", "processing_error", "error_kind", "persisted_at")

_UPSERT = (
    f"INSERT INTO articles({','.join(_COLUMNS)}) VALUES({','.join('?' * len(_COLUMNS))}) "
    "ON CONFLICT(source_id) DO UPDATE SET "
    + ", ".join(f"{c}=excluded.{c}" for c in _COLUMNS if c != "source_id")
)

# Columns added after the first release; applied to older files on open
_ADDED_COLUMNS = {
    "image_url": "TEXT",
}

_CATEGORY_NAMES = {
    "agro":     "Agro",
    "economia": "Economía",
    "finanzas": "Finanzas",
    "mercados": "Mercados",
    "cripto":   "Cripto",
}


async def run_blocking(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking store call on the default executor and await its result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def _row_to_article(row: sqlite3.Row) -> ProcessedNewsArticle:
    kind = row["error_kind"]
    return ProcessedNewsArticle(
        source_id        = row["source_id"],
        feed_id          = row["feed_id"],
        source_name      = row["source_name"],
        title            = row["title"],
        content          = row["content"],
        url              = row["url"],
        image_url        = row["image_url"],
        published_at     = row["published_at"],
        category         = row["category"],
        priority         = row["priority"],
        summary          = row["summary"],
        key_points       = json.loads(row["key_points"] or "[]"),
        is_processed     = bool(row["is_processed"]),
        processing_error = row["processing_error"],
        error_kind       = ErrorKind(kind) if kind else None,
        persisted_at     = row["persisted_at"],
    )


class NewsStore:

    def __init__(self, path: str = NEWS_DB_PATH, busy_timeout_ms: int = BUSY_TIMEOUT_MS):
        self.path = path
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            if path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
            self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
            self.conn.execute("PRAGMA foreign_keys=ON;")
            self.conn.executescript(SCHEMA)
            self._add_missing_columns()
            self.conn.executemany(
                "INSERT OR IGNORE INTO categories(slug, name) VALUES(?, ?)",
                [(slug, _CATEGORY_NAMES.get(slug, slug.title())) for slug in NEWS_CATEGORIES],
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open news store at {path}: {e}") from e
        log.info(f"News store ready at {path}")

    def _add_missing_columns(self):
        have = {r["name"] for r in self.conn.execute("PRAGMA table_info(articles)")}
        for column, decl in _ADDED_COLUMNS.items():
            if column not in have:
                self.conn.execute(f"ALTER TABLE articles ADD COLUMN {column} {decl}")
                log.info(f"News store: added column articles.{column}")

    # ── Health ──────────────────────────────────────────────────

    def ping(self) -> None:
        """Raise StoreUnavailable if the store cannot answer a trivial query."""
        try:
            with self._lock:
                self.conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    # ── Categories ──────────────────────────────────────────────

    def category_slugs(self) -> List[str]:
        try:
            with self._lock:
                return [r[0] for r in self.conn.execute("SELECT slug FROM categories ORDER BY slug")]
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    # ── Articles ────────────────────────────────────────────────

    def upsert_article(self, article: ProcessedNewsArticle) -> str:
        """Insert or update by source_id. Returns "added" or "updated"."""
        persisted_at = datetime.now(timezone.utc).isoformat()
        values = (
            article.source_id, article.feed_id, article.source_name, article.title,
            article.content or "", article.summary, json.dumps(article.key_points or [], ensure_ascii=False),
            article.url, article.image_url, article.category, int(article.priority), article.published_at,
            int(article.is_processed), article.processing_error,
            article.error_kind.value if article.error_kind else None, persisted_at,
        )
        try:
            with self._lock:
                existed = self.conn.execute(
                    "SELECT 1 FROM articles WHERE source_id=?", (article.source_id,)
                ).fetchone() is not None
                self.conn.execute(_UPSERT, values)
        except sqlite3.Error as e:
            raise PersistenceFailure(article.source_id, str(e)) from e
        article.persisted_at = persisted_at
        return "updated" if existed else "added"

    def get_article(self, source_id: str) -> Optional[ProcessedNewsArticle]:
        try:
            with self._lock:
                row = self.conn.execute("SELECT * FROM articles WHERE source_id=?", (source_id,)).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
        return _row_to_article(row) if row else None

    def get_articles(self, source_ids: Iterable[str]) -> Dict[str, ProcessedNewsArticle]:
        ids = list(dict.fromkeys(source_ids))
        out: Dict[str, ProcessedNewsArticle] = {}
        try:
            with self._lock:
                # sqlite caps bound parameters; chunk to stay well under it
                for i in range(0, len(ids), 500):
                    chunk = ids[i:i + 500]
                    rows = self.conn.execute(
                        f"SELECT * FROM articles WHERE source_id IN ({','.join('?' * len(chunk))})", chunk
                    ).fetchall()
                    out.update({r["source_id"]: _row_to_article(r) for r in rows})
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
        return out

    def list_articles(self, category: Optional[str] = None, limit: Optional[int] = None,
                      processed_only: bool = True) -> List[ProcessedNewsArticle]:
        sql = "SELECT * FROM articles"
        clauses, params = [], []
        if processed_only:
            clauses.append("is_processed = 1")
        if category:
            clauses.append("category = ?")
            params.append(category.lower())
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY priority DESC, published_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            with self._lock:
                rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
        return [_row_to_article(r) for r in rows]

    def recent_titles(self, limit: int = 200) -> List[Tuple[str, str]]:
        """(source_id, title) of the most recently written rows, any status."""
        try:
            with self._lock:
                rows = self.conn.execute(
                    "SELECT source_id, title FROM articles"
                    " ORDER BY persisted_at DESC, rowid DESC LIMIT ?", (int(limit),)
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
        return [(r["source_id"], r["title"]) for r in rows]

    def count_articles(self, processed_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM articles" + (" WHERE is_processed = 1" if processed_only else "")
        try:
            with self._lock:
                return self.conn.execute(sql).fetchone()[0]
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    def status_counts(self) -> Dict[str, int]:
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT COUNT(*),"
                    " SUM(CASE WHEN is_processed = 1 THEN 1 ELSE 0 END),"
                    " SUM(CASE WHEN error_kind = ? THEN 1 ELSE 0 END),"
                    " SUM(CASE WHEN is_processed = 0 AND (error_kind IS NULL OR error_kind != ?) THEN 1 ELSE 0 END)"
                    " FROM articles",
                    (ErrorKind.CLASSIFICATION_REJECTED.value, ErrorKind.CLASSIFICATION_REJECTED.value),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
        total, processed, rejected, retryable = (v or 0 for v in row)
        return {"article_count": total, "processed": processed,
                "rejected": rejected, "retryable": retryable}

    # ── Metadata ────────────────────────────────────────────────

    def get_last_updated(self) -> Optional[float]:
        try:
            with self._lock:
                row = self.conn.execute("SELECT v FROM meta WHERE k='last_updated'").fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e
        return float(row[0]) if row else None

    def set_last_updated(self, ts: Optional[float] = None) -> None:
        ts = time.time() if ts is None else ts
        try:
            with self._lock:
                self.conn.execute(
                    "INSERT INTO meta(k, v) VALUES('last_updated', ?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                    (repr(float(ts)),),
                )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot record last_updated: {e}") from e

    # ── Maintenance ─────────────────────────────────────────────

    def clear_store(self) -> int:
        """Delete every article and the last_updated marker. Returns rows deleted."""
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                n = self.conn.execute("DELETE FROM articles").rowcount
                self.conn.execute("DELETE FROM meta WHERE k='last_updated'")
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreUnavailable(f"clear failed: {e}") from e
        log.warning(f"News store cleared ({n} articles)")
        return n

    def purge_older_than(self, hours: float) -> int:
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
        try:
            with self._lock:
                n = self.conn.execute("DELETE FROM articles WHERE published_at < ?", (cutoff,)).rowcount
        except sqlite3.Error as e:
            raise StoreUnavailable(f"purge failed: {e}") from e
        log.info(f"Purged {n} articles published before {cutoff[:16]}")
        return n

    def _rollback(self):
        try:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            log.warning(f"Rollback failed: {e}")

    def close(self) -> None:
        with self._lock:
            self.conn.close()
