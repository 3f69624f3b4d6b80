"""
Pulso — News Pipeline Error Taxonomy
─────────────────────────────────────
Every per-item failure is contained and recorded; only a store that
cannot be reached before any item is processed fails a whole run.

  CLASSIFICATION_REJECTED  policy rejection, terminal, never retried
  CLASSIFICATION_TRANSIENT timeout / quota / malformed, retried next run
  FEED_FETCH_FAILURE       one feed failed, isolated to that feed
  PERSISTENCE_FAILURE      one article's write failed, run continues

The kind is stored next to each article, so retry eligibility is
read from a typed column (ErrorKind.retryable) rather than inferred
from message text.
"""

from enum import Enum

REJECTED_PREFIX = "AI Rejected"


class ErrorKind(str, Enum):
    CLASSIFICATION_REJECTED  = "rejected"
    CLASSIFICATION_TRANSIENT = "transient"
    FEED_FETCH_FAILURE       = "feed_fetch_failure"
    PERSISTENCE_FAILURE      = "persistence_failure"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.CLASSIFICATION_REJECTED


class PipelineError(Exception):
    """Base for the failures a news run contains and records."""


class ClassificationTransient(PipelineError):
    """The classifier could not give an answer this time (timeout, quota, bad JSON...)."""

    def __init__(self, failure: str, detail: str):
        self.failure = failure      # "timeout" | "quota" | "malformed_response" | "upstream" | "unavailable"
        self.detail  = detail
        super().__init__(f"{failure}: {detail}")


class FeedFetchFailure(PipelineError):

    def __init__(self, feed: str, detail: str):
        self.feed   = feed
        self.detail = detail
        super().__init__(f"FeedFetchFailure: {feed}: {detail}")


class PersistenceFailure(PipelineError):

    def __init__(self, source_id: str, detail: str):
        self.source_id = source_id
        self.detail    = detail
        super().__init__(f"PersistenceFailure: {source_id}: {detail}")


class StoreUnavailable(PipelineError):
    """The durable store could not be opened or queried at all."""


def rejected_message(reason: str) -> str:
    return f"{REJECTED_PREFIX}: {reason or 'not relevant'}"
