"""
Pulso — Indicator Model
────────────────────────
Canonical shapes produced by connectors and served by the
aggregation engine. Every record is a frozen snapshot: a refresh
builds new objects, it never mutates cached ones.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class Category(str, Enum):
    EXCHANGE_RATE  = "exchange-rate"
    INTEREST_RATE  = "interest-rate"
    INFLATION      = "inflation"
    MARKET_INDEX   = "market-index"
    AGRO_COMMODITY = "agro-commodity"
    CRYPTO         = "crypto"
    ACTIVITY       = "activity"
    ENERGY         = "energy"

    @classmethod
    def parse(cls, raw: str) -> "Category":
        """Accept the enum value ("exchange-rate") or name ("EXCHANGE_RATE")."""
        raw = (raw or "").strip()
        for c in cls:
            if raw.lower() == c.value or raw.upper() == c.name:
                return c
        raise ValueError(f"Unknown category: {raw!r}")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Indicator:
    code:           str                 # logical identity used by the merge step
    name:           str
    short_name:     str
    category:       Category
    value:          Optional[float]
    change_percent: float = 0.0
    format:         str   = "decimal"   # "currency" | "percent" | "decimal"
    decimals:       int   = 2
    unit:           str   = ""
    source:         str   = ""
    last_updated:   str   = ""
    is_fallback:    bool  = False
    frequency:      str   = "daily"     # "realtime" | "daily" | "monthly"
    disclaimer:     Optional[str] = None
    previous_value: Optional[float] = None

    def as_fallback(self, disclaimer: str) -> "Indicator":
        return replace(self, is_fallback=True, disclaimer=self.disclaimer or disclaimer)

    def to_dict(self) -> dict:
        return {
            "code":           self.code,
            "name":           self.name,
            "short_name":     self.short_name,
            "category":       self.category.value,
            "value":          self.value,
            "change_percent": round(self.change_percent, 2),
            "format":         self.format,
            "decimals":       self.decimals,
            "unit":           self.unit,
            "source":         self.source,
            "last_updated":   self.last_updated,
            "is_fallback":    self.is_fallback,
            "frequency":      self.frequency,
            "disclaimer":     self.disclaimer,
        }


@dataclass(frozen=True)
class DollarQuote:
    type:         str          # "oficial" | "blue" | "mep" | "ccl" | "cripto" | "mayorista" | "turista"
    name:         str
    buy:          float
    sell:         float
    last_updated: str
    source:       str

    @property
    def spread(self) -> float:
        if self.buy and self.sell:
            return (self.sell - self.buy) / self.buy * 100
        return 0.0

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        ts = parse_timestamp(self.last_updated)
        if ts is None:
            return None
        return max(0.0, (now if now is not None else time.time()) - ts)

    def to_dict(self) -> dict:
        return {
            "type":         self.type,
            "name":         self.name,
            "buy":          self.buy,
            "sell":         self.sell,
            "spread":       round(self.spread, 2),
            "last_updated": self.last_updated,
            "source":       self.source,
        }


@dataclass(frozen=True)
class TickerItem:
    id:     str
    label:  str
    value:  str
    change: Optional[str]
    trend:  str          # "up" | "down" | "neutral"

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "value": self.value,
                "change": self.change, "trend": self.trend}


@dataclass(frozen=True)
class SourceResult(Generic[T]):
    """
    Connector output envelope.

    available=False is the explicit "unavailable" result: every
    upstream in the chain failed. The payload is then empty and
    `error` carries the diagnostic.
    """
    source:       str
    payload:      Tuple[T, ...] = ()
    last_updated: str  = field(default_factory=utc_now_iso)
    is_fallback:  bool = False
    disclaimer:   Optional[str] = None
    available:    bool = True
    error:        Optional[str] = None

    @classmethod
    def unavailable(cls, source: str, error: str) -> "SourceResult":
        return cls(source=source, payload=(), is_fallback=True,
                   disclaimer="Sin datos disponibles", available=False, error=error)

    def to_dict(self) -> dict:
        return {
            "source":       self.source,
            "payload":      [p.to_dict() if hasattr(p, "to_dict") else p for p in self.payload],
            "last_updated": self.last_updated,
            "is_fallback":  self.is_fallback,
            "disclaimer":   self.disclaimer,
            "available":    self.available,
            "error":        self.error,
        }


def parse_timestamp(raw: Any) -> Optional[float]:
    """ISO-8601 string (or epoch number) -> epoch seconds. None if unparseable."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
