"""
Pulso — Rate Limiter
─────────────────────
Token-bucket rate limiter per upstream provider.
Keeps a burst of page loads from hammering free public APIs.

Limits enforced (sustained):
  BCRA:           30 req/min
  DolarApi:       60 req/min
  ArgentinaDatos: 30 req/min
  CoinGecko:      10 req/min  (free tier, no key)
  CoinCap:        30 req/min
  Yahoo:          soft limits → 20 req/min to be safe
  RSS feeds:      shared bucket, generous

Connectors never sleep on an empty bucket: the attempt fails
and the next upstream in the chain is tried instead.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

log = logging.getLogger("pulso.rate_limiter")


class TokenBucket:
    """Token bucket: refills at `rate` tokens/second up to `capacity`."""

    def __init__(self, capacity: float, rate: float,
                 clock: Callable[[], float] = time.monotonic):
        self.capacity  = capacity
        self.rate      = rate       # tokens per second
        self._clock    = clock
        self._tokens   = capacity
        self._last     = clock()

    def _refill(self):
        now = self._clock()
        elapsed = now - self._last
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last   = now

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens if available. Never blocks."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False


# ── Provider configurations ───────────────────────────────────
# (capacity, rate_per_second)
# capacity = burst allowance; rate = sustained throughput

_PROVIDER_CONFIG: Dict[str, Tuple[float, float]] = {
    "bcra":            (10,  0.5),
    "dolarapi":        (20,  1.0),
    "argentinadatos":  (10,  0.5),
    "coingecko":       (5,   1 / 6),
    "coincap":         (10,  0.5),
    "yahoo":           (10,  1 / 3),
    "rss":             (30,  2.0),
}

# Singleton buckets
_buckets: Dict[str, TokenBucket] = {}


def get_bucket(provider: str) -> TokenBucket:
    if provider not in _buckets:
        cap, rate = _PROVIDER_CONFIG.get(provider, (5, 1 / 60))
        _buckets[provider] = TokenBucket(cap, rate)
    return _buckets[provider]


def try_acquire(provider: str, tokens: float = 1.0) -> bool:
    """Take a rate limit slot for a provider. False if the bucket is empty."""
    ok = get_bucket(provider).try_acquire(tokens)
    if not ok:
        log.warning(f"Rate limit reached for {provider}")
    return ok


def reset_buckets():
    """Forget all bucket state (tests, or after a config change)."""
    _buckets.clear()


# ── Fan-out limiter ───────────────────────────────────────────
# Bounds how many AI classification calls run at once

class ConcurrencyLimiter:
    """Semaphore limiting parallel calls to one collaborator."""

    def __init__(self, max_concurrent: int = 5):
        self.max_concurrent = max_concurrent
        self._sem = asyncio.Semaphore(max_concurrent)

    async def __aenter__(self):
        await self._sem.acquire()
        return self

    async def __aexit__(self, *args):
        self._sem.release()
