"""
Caching layer with per-kind TTL, request coalescing, budget-aware
miss-fill and stale-on-exhaustion fallback.
"""
from .core import CacheEntry, CacheMeta, CacheSource, ResourceKind
from .keys import (
    ResourceRequest,
    build_cache_key,
    box_score_key,
    live_game_key,
    player_stats_key,
    rankings_key,
    roster_key,
    schedule_key,
    scoreboard_key,
    standings_key,
)
from .ttl_policies import (
    STATUS_TTL_CONFIG,
    TTL_CONFIG,
    build_status_ttl_config,
    build_ttl_config,
    get_box_score_ttl,
    get_ttl_for_kind,
    get_game_kind,
    get_scoreboard_kind,
    get_scoreboard_ttl,
)
from .store import CacheStore, MemoryCacheStore, RedisCacheStore
from .coalescer import RequestCoalescer
from .manager import FetchOrchestrator, build_orchestrator, get_orchestrator, reset_orchestrator

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheSource",
    "ResourceKind",
    # Keys
    "ResourceRequest",
    "build_cache_key",
    "box_score_key",
    "live_game_key",
    "player_stats_key",
    "rankings_key",
    "roster_key",
    "schedule_key",
    "scoreboard_key",
    "standings_key",
    # TTL policies
    "STATUS_TTL_CONFIG",
    "TTL_CONFIG",
    "build_status_ttl_config",
    "build_ttl_config",
    "get_box_score_ttl",
    "get_ttl_for_kind",
    "get_game_kind",
    "get_scoreboard_kind",
    "get_scoreboard_ttl",
    # Stores
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    # Coalescing
    "RequestCoalescer",
    # Orchestration
    "FetchOrchestrator",
    "build_orchestrator",
    "get_orchestrator",
    "reset_orchestrator",
]
