"""
Pulso — News Models
────────────────────
RawNewsArticle is what a feed connector yields.
ProcessedNewsArticle is the durable row, keyed by source_id.
"""

import hashlib
from dataclasses import dataclass, field, replace
from typing import List, Optional

from news_ingestion.errors import ErrorKind

# Categories an article may be filed under. The store seeds these
# into its categories table; articles reference them by slug.
NEWS_CATEGORIES = ("agro", "economia", "finanzas", "mercados", "cripto")


def external_key(link: str) -> str:
    """Stable de-duplication key for a feed item: sha1 of its link."""
    return hashlib.sha1(link.strip().encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class RawNewsArticle:
    source_id:    str              # external unique key
    feed_id:      str
    source_name:  str
    title:        str
    content:      str
    url:          str
    published_at: str              # ISO-8601, UTC
    category:     str = "economia" # feed default
    priority:     int = 5
    image_url:    Optional[str] = None

    def with_priority(self, priority: int) -> "RawNewsArticle":
        return replace(self, priority=priority)


@dataclass
class ProcessedNewsArticle:
    source_id:        str
    feed_id:          str
    source_name:      str
    title:            str
    content:          str
    url:              str
    published_at:     str
    category:         str
    priority:         int = 5
    image_url:        Optional[str] = None
    summary:          Optional[str] = None
    key_points:       List[str] = field(default_factory=list)
    is_processed:     bool = False
    processing_error: Optional[str] = None
    error_kind:       Optional[ErrorKind] = None
    persisted_at:     Optional[str] = None

    @classmethod
    def from_raw(cls, raw: RawNewsArticle) -> "ProcessedNewsArticle":
        return cls(
            source_id    = raw.source_id,
            feed_id      = raw.feed_id,
            source_name  = raw.source_name,
            title        = raw.title,
            content      = raw.content,
            url          = raw.url,
            published_at = raw.published_at,
            category     = raw.category,
            priority     = raw.priority,
            image_url    = raw.image_url,
        )

    @property
    def is_retryable(self) -> bool:
        return not self.is_processed and (self.error_kind is None or self.error_kind.retryable)

    def to_dict(self) -> dict:
        return {
            "source_id":        self.source_id,
            "feed_id":          self.feed_id,
            "source_name":      self.source_name,
            "title":            self.title,
            "content":          self.content,
            "summary":          self.summary,
            "key_points":       self.key_points,
            "url":              self.url,
            "image_url":        self.image_url,
            "category":         self.category,
            "priority":         self.priority,
            "published_at":     self.published_at,
            "persisted_at":     self.persisted_at,
            "is_processed":     self.is_processed,
            "processing_error": self.processing_error,
            "error_kind":       self.error_kind.value if self.error_kind else None,
        }
