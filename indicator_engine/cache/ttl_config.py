"""
Pulso — TTL Configuration
──────────────────────────
Single source of truth for all cache durations.
Organised by indicator category: how fast the real world changes.
"""

import os

# ── Per category TTL (seconds) ────────────────────────────────

TTL = {
    # Live quotes
    "exchange-rate":   60,          # 1 minute (informal quotes move intraday)
    "crypto":          2 * 60,      # 2 minutes (CoinGecko free tier)

    # Slower-moving market data
    "market-index":    5 * 60,      # 5 minutes
    "agro-commodity":  5 * 60,      # 5 minutes (CBOT futures, delayed anyway)
    "energy":          5 * 60,
    "interest-rate":   5 * 60,      # BCRA publishes once a day
    "activity":        5 * 60,

    # Infrequently revised
    "inflation":       6 * 3600,    # 6 hours (INDEC monthly release)

    # Composite views
    "overview":        60,
    "ticker":          60,
    "news":            2 * 60,      # processed news read cache

    # Unavailable results are retried soon
    "unavailable":     30,
}

DEFAULT_TTL = int(os.environ.get("DEFAULT_CACHE_TTL", "60"))

# ── Periodic sweep of expired entries ─────────────────────────
SWEEP_INTERVAL_S = 5 * 60


def ttl_for(key: str) -> int:
    """TTL in seconds for a category or view name."""
    return TTL.get(getattr(key, "value", key), DEFAULT_TTL)
