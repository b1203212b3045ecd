"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from enum import Enum


class ResourceKind(Enum):
    """Kinds of upstream resources, each cached with its own TTL."""
    LIVE_GAME = "live-game"         # ~15 seconds
    SCOREBOARD = "scoreboard"       # ~30 seconds
    BOX_SCORE = "box-score"         # ~30 seconds
    STANDINGS = "standings"         # ~6 hours
    ROSTER = "roster"               # ~24 hours
    SCHEDULE = "schedule"           # ~12 hours
    PLAYER_STATS = "player-stats"   # ~5 minutes
    RANKINGS = "rankings"           # ~6 hours


class CacheSource(Enum):
    """Where a served payload came from."""
    FRESH = "fresh"        # Within TTL
    STALE = "stale"        # Past TTL, served because the budget is exhausted
    UPSTREAM = "upstream"  # Fetched from the provider


@dataclass
class CacheEntry:
    """
    A cached payload plus the metadata needed for read-time expiry.

    stored_at is epoch seconds. Freshness is always checked against an
    explicit `now` so callers with an injected clock stay consistent.
    """
    payload: Any
    stored_at: float
    ttl_seconds: int
    kind: ResourceKind

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def is_fresh(self, now: float) -> bool:
        """Fresh while elapsed time < TTL."""
        return (now - self.stored_at) < self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return not self.is_fresh(now)

    def to_envelope(self) -> Dict[str, Any]:
        """Serializable form written to the cache backend."""
        return {
            "payload": self.payload,
            "stored_at": self.stored_at,
            "ttl_seconds": self.ttl_seconds,
            "kind": self.kind.value,
        }

    @classmethod
    def from_envelope(cls, envelope: Dict[str, Any]) -> "CacheEntry":
        return cls(
            payload=envelope["payload"],
            stored_at=float(envelope["stored_at"]),
            ttl_seconds=int(envelope["ttl_seconds"]),
            kind=ResourceKind(envelope["kind"]),
        )


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    last_updated: str  # ISO timestamp of when the payload was fetched
    cache_source: str  # "fresh", "stale", or "upstream"
    kind: Optional[str] = None
    ttl_seconds: Optional[int] = None
    age_seconds: Optional[float] = None

    @classmethod
    def for_entry(cls, entry: CacheEntry, source: CacheSource, now: float) -> "CacheMeta":
        return cls(
            last_updated=iso_timestamp(entry.stored_at),
            cache_source=source.value,
            kind=entry.kind.value,
            ttl_seconds=entry.ttl_seconds,
            age_seconds=entry.age_seconds(now),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
        }
        if self.kind:
            result["_debug"] = {
                "kind": self.kind,
                "ttl": self.ttl_seconds,
                "age": round(self.age_seconds, 1) if self.age_seconds else None,
            }
        return result


def iso_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")
