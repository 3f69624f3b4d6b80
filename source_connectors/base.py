"""
Pulso — Source Connector Base
──────────────────────────────
All upstream adapters inherit from Connector.

A connector declares an ordered list of upstreams (primary first).
fetch() walks them through first_success(): the first upstream that
answers wins and the result is tagged is_fallback = (index > 0).
When every upstream fails the connector returns an explicit
"unavailable" SourceResult instead of raising, so the aggregation
engine can still render everything else.

Each upstream call:
  - takes a rate-limit slot for its provider (empty bucket = failure)
  - runs under UPSTREAM_TIMEOUT_S
  - raises UpstreamError on network, HTTP or parse failure
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, FrozenSet, List, NamedTuple, Optional, Sequence, Tuple

import httpx

from indicator_engine.cache.memory_cache import TTLCache, cache as default_cache
from indicator_engine.cache.ttl_config import ttl_for
from indicator_engine.models.indicator import SourceResult
from indicator_engine.orchestrator.rate_limiter import try_acquire

log = logging.getLogger("pulso.connectors")

UPSTREAM_TIMEOUT_S = float(os.environ.get("UPSTREAM_TIMEOUT_S", "8"))

HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "application/json",
    "Accept-Language": "es-AR,es;q=0.9,en;q=0.8",
}


# ══════════════════════════════════════════════════════════════
# ERRORS
# ══════════════════════════════════════════════════════════════
class UpstreamError(Exception):
    """One upstream call failed (network, HTTP status, parse, rate limit)."""


class UpstreamUnavailable(UpstreamError):
    """Every upstream in a connector's chain failed."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors) or "no upstreams configured")


# ══════════════════════════════════════════════════════════════
# HTTP CLIENT
# ══════════════════════════════════════════════════════════════
_http_client: Optional[httpx.AsyncClient] = None


async def get_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
            timeout=UPSTREAM_TIMEOUT_S,
            follow_redirects=True,
        )
    return _http_client


async def close_client():
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


async def get_json(client: httpx.AsyncClient, url: str, params: dict = None,
                   headers: dict = None) -> Any:
    try:
        r = await client.get(url, params=params, headers=headers or HEADERS)
    except httpx.TimeoutException as e:
        raise UpstreamError(f"timeout: {url[:60]}") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"network error: {e}") from e
    if r.status_code != 200:
        raise UpstreamError(f"HTTP {r.status_code} from {url[:60]}")
    try:
        return r.json()
    except ValueError as e:
        raise UpstreamError(f"invalid JSON from {url[:60]}") from e


async def get_bytes(client: httpx.AsyncClient, url: str, headers: dict = None) -> bytes:
    try:
        r = await client.get(url, headers=headers or HEADERS)
    except httpx.TimeoutException as e:
        raise UpstreamError(f"timeout: {url[:60]}") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"network error: {e}") from e
    if r.status_code != 200:
        raise UpstreamError(f"HTTP {r.status_code} from {url[:60]}")
    return r.content


# ══════════════════════════════════════════════════════════════
# FIRST-SUCCESS COMBINATOR
# ══════════════════════════════════════════════════════════════
class Upstream(NamedTuple):
    label:    str                               # reported as the result's source
    provider: str                               # rate-limit bucket
    call:     Callable[[], Awaitable[Any]]


async def first_success(upstreams: Sequence[Upstream],
                        timeout: float = UPSTREAM_TIMEOUT_S) -> Tuple[int, str, Any]:
    """
    Try upstreams in order; return (index, label, value) of the first
    that succeeds. Timeouts, UpstreamErrors and payload parse errors
    move on to the next.
    Raises UpstreamUnavailable when the chain is exhausted.
    """
    errors: List[str] = []
    for index, upstream in enumerate(upstreams):
        if not try_acquire(upstream.provider):
            errors.append(f"{upstream.label}: rate limited")
            continue
        try:
            value = await asyncio.wait_for(upstream.call(), timeout)
        except asyncio.TimeoutError:
            errors.append(f"{upstream.label}: timeout after {timeout:.0f}s")
            log.warning(f"{upstream.label}: timeout after {timeout:.0f}s")
            continue
        except UpstreamError as e:
            errors.append(f"{upstream.label}: {e}")
            log.warning(f"{upstream.label}: {e}")
            continue
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            # payload shape the parser did not expect
            errors.append(f"{upstream.label}: parse error: {type(e).__name__}: {e}")
            log.warning(f"{upstream.label}: parse error: {type(e).__name__}: {e}")
            continue
        if index > 0:
            log.info(f"{upstream.label}: served as fallback #{index}")
        return index, upstream.label, value
    raise UpstreamUnavailable(errors)


# ══════════════════════════════════════════════════════════════
# BASE CLASS
# ══════════════════════════════════════════════════════════════
class Connector(ABC):
    """
    Base class for all Pulso source connectors.

    Subclasses must implement:
      - name: str property
      - upstreams(client) -> [Upstream, ...]   primary first

    Each upstream call returns the complete payload (a list) or
    raises UpstreamError. Optional overrides:
      - ttl_key: TTL category for caching (None disables caching)
      - provides: logical indicator codes this connector can produce
      - fallback_disclaimer: text attached to fallback results
    """

    ttl_key: Optional[str] = None
    provides: FrozenSet[str] = frozenset()
    fallback_disclaimer: str = "Datos obtenidos de fuente secundaria"

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def upstreams(self, client: httpx.AsyncClient) -> List[Upstream]: ...

    async def fetch(self, client: httpx.AsyncClient,
                    cache: Optional[TTLCache] = None) -> SourceResult:
        """Public entry point. Cached per connector under its category TTL."""
        if self.ttl_key is None:
            return await self._fetch_chain(client)
        cache = cache if cache is not None else default_cache
        return await cache.get_or_load(
            f"source:{self.name}",
            ttl_for(self.ttl_key),
            lambda: self._fetch_chain(client),
            ttl_for_result=lambda r: ttl_for(self.ttl_key) if r.available else ttl_for("unavailable"),
        )

    async def _fetch_chain(self, client: httpx.AsyncClient) -> SourceResult:
        try:
            index, label, payload = await first_success(self.upstreams(client))
        except UpstreamUnavailable as e:
            log.error(f"{self.name} unavailable: {e}")
            return SourceResult.unavailable(self.name, str(e))

        is_fallback = index > 0
        items = tuple(payload)
        if is_fallback:
            items = tuple(
                p.as_fallback(self.fallback_disclaimer) if hasattr(p, "as_fallback") else p
                for p in items
            )
        return SourceResult(
            source      = label,
            payload     = items,
            is_fallback = is_fallback,
            disclaimer  = self.fallback_disclaimer if is_fallback else None,
        )


def pct_change(current: Optional[float], previous: Optional[float]) -> float:
    if current is None or not previous:
        return 0.0
    return (current - previous) / previous * 100
