"""
Fetch orchestration: cache-first lookup, coalesced miss-fill under the
upstream budget, and write-back with per-kind TTL.
"""
import threading
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from config.settings import Settings, settings as default_settings
from gateway.budget import BudgetBucket, BudgetLimiter, build_bucket_config
from gateway.errors import BudgetExhausted

from .core import CacheEntry, CacheMeta, CacheSource, ResourceKind, iso_timestamp
from .coalescer import RequestCoalescer
from .keys import ResourceRequest
from .store import CacheStore, MemoryCacheStore, RedisCacheStore
from .ttl_policies import build_ttl_config, get_ttl_for_kind

logger = logging.getLogger("cache.manager")

# Daily budget allocation each resource kind is charged to
BUCKET_BY_KIND: Dict[ResourceKind, BudgetBucket] = {
    ResourceKind.LIVE_GAME: BudgetBucket.GAME_SUMMARY,
    ResourceKind.BOX_SCORE: BudgetBucket.GAME_SUMMARY,
    ResourceKind.SCOREBOARD: BudgetBucket.SCOREBOARD,
    ResourceKind.STANDINGS: BudgetBucket.STANDINGS,
    ResourceKind.SCHEDULE: BudgetBucket.SCHEDULE,
    ResourceKind.ROSTER: BudgetBucket.RESERVE,
    ResourceKind.PLAYER_STATS: BudgetBucket.RESERVE,
    ResourceKind.RANKINGS: BudgetBucket.RESERVE,
}


class FetchOrchestrator:
    """
    Facade over the cache store, coalescer, budget limiter and fetcher.

    - Fresh cache hits return immediately without touching the budget
    - Misses are coalesced so one key costs at most one upstream call
    - An exhausted budget serves the expired entry if one exists
    - Cache outages are bypassed; write-back failures are not fatal
    - Nothing is retried
    """

    def __init__(
        self,
        store: CacheStore,
        budget: BudgetLimiter,
        fetcher: Optional[Any] = None,
        coalescer: Optional[RequestCoalescer] = None,
        ttl_config: Optional[Dict[ResourceKind, int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Cache backend
            budget: Upstream admission control
            fetcher: UpstreamFetcher used by get_resource()
            coalescer: Shared in-flight registry (one is created if omitted)
            ttl_config: Per-kind TTL table, defaults to settings
            clock: Epoch-seconds clock, must match the store's
        """
        self._store = store
        self._budget = budget
        self._fetcher = fetcher
        self._coalescer = coalescer or RequestCoalescer()
        self._ttl_config = ttl_config if ttl_config is not None else build_ttl_config()
        self._clock = clock

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "hits_late": 0,
            "misses": 0,
            "upstream_calls": 0,
            "budget_rejections": 0,
            "write_failures": 0,
        }

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def budget(self) -> BudgetLimiter:
        return self._budget

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        try:
            return self._store.get(key)
        except Exception as e:
            # Store contract says get() never raises; treat a broken one as a miss
            logger.warning(f"Cache get error for key {key}: {e}")
            return None

    def _write_back(self, key: str, payload: Any, ttl: int, kind: ResourceKind) -> None:
        try:
            stored = self._store.set(key, payload, ttl, kind)
        except Exception as e:
            logger.warning(f"Cache set error for key {key}: {e}")
            stored = False
        if not stored:
            self._count("write_failures")
            logger.debug(f"Write-back skipped for {key}, serving uncached")

    def get_with_meta(
        self,
        key: str,
        kind: ResourceKind,
        producer: Callable[[], Any],
        ttl_seconds: Optional[int] = None,
    ) -> Tuple[Any, CacheMeta]:
        """
        Get a payload from cache or upstream.

        Args:
            key: Cache key
            kind: Resource kind, selects the TTL and budget bucket
            producer: Performs the upstream call on a miss
            ttl_seconds: Overrides the kind's TTL on write-back

        Returns:
            (payload, cache_meta) tuple

        Raises:
            BudgetExhausted: No budget and no stale entry to fall back on
            UpstreamError: Any failure of the upstream call
        """
        now = self._clock()
        entry = self._lookup(key)

        if entry is not None and entry.is_fresh(now):
            logger.debug(f"CACHE HIT (fresh): {key} [age={entry.age_seconds(now):.1f}s]")
            self._count("hits_fresh")
            return entry.payload, CacheMeta.for_entry(entry, CacheSource.FRESH, now)

        if entry is None:
            logger.info(f"CACHE MISS: {key}")
        else:
            logger.info(f"CACHE EXPIRED: {key} [age={entry.age_seconds(now):.1f}s]")
        self._count("misses")

        def fill() -> Tuple[Any, CacheMeta]:
            # A fill that finished between our lookup and joining the
            # coalescer has already written the key back
            latest = self._lookup(key)
            fill_now = self._clock()
            if latest is not None and latest.is_fresh(fill_now):
                logger.debug(f"CACHE HIT (filled while waiting): {key}")
                self._count("hits_late")
                return latest.payload, CacheMeta.for_entry(latest, CacheSource.FRESH, fill_now)
            fallback = latest if latest is not None else entry

            admission = self._budget.try_admit(bucket=BUCKET_BY_KIND.get(kind))
            if not admission:
                self._count("budget_rejections")
                if fallback is not None:
                    logger.info(
                        f"Budget exhausted ({admission.reason.value}), "
                        f"serving stale: {key}"
                    )
                    self._count("hits_stale")
                    return fallback.payload, CacheMeta.for_entry(fallback, CacheSource.STALE, self._clock())
                logger.warning(f"Budget exhausted ({admission.reason.value}), no cached copy: {key}")
                raise BudgetExhausted(admission.reason, admission.retry_after_seconds)

            self._count("upstream_calls")
            payload = producer()
            ttl = ttl_seconds if ttl_seconds is not None else get_ttl_for_kind(kind, self._ttl_config)
            self._write_back(key, payload, ttl, kind)
            return payload, CacheMeta(
                last_updated=iso_timestamp(self._clock()),
                cache_source=CacheSource.UPSTREAM.value,
                kind=kind.value,
                ttl_seconds=ttl,
                age_seconds=0,
            )

        return self._coalescer.get_or_fetch(key, fill)

    def get(
        self,
        key: str,
        kind: ResourceKind,
        producer: Callable[[], Any],
        ttl_seconds: Optional[int] = None,
    ) -> Any:
        """Payload only; see get_with_meta()."""
        payload, _ = self.get_with_meta(key, kind, producer, ttl_seconds)
        return payload

    def get_resource(
        self,
        kind: ResourceKind,
        identifiers: Sequence[Any] = (),
        params: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Any:
        """
        Get a logical resource through the upstream fetcher.

        Example:
            orchestrator.get_resource(ResourceKind.BOX_SCORE, ("nba", "401584793"))
        """
        request = ResourceRequest(kind, tuple(identifiers), dict(params or {}))
        return self.get_request(request, ttl_seconds=ttl_seconds)

    def get_request(
        self,
        request: ResourceRequest,
        kind: Optional[ResourceKind] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Any:
        """Get a described resource; kind overrides the request's kind for TTL."""
        if self._fetcher is None:
            raise RuntimeError("FetchOrchestrator has no upstream fetcher configured")
        # Reject malformed requests before they can spend budget
        self._fetcher.validate(request)
        return self.get(
            request.key,
            kind or request.kind,
            lambda: self._fetcher.fetch(request),
            ttl_seconds,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get cache and budget statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total_requests = stats["hits_fresh"] + stats["misses"]
        hit_rate = (stats["hits_fresh"] / total_requests * 100) if total_requests > 0 else 0
        stats["hit_rate_percent"] = round(hit_rate, 1)
        stats["cache_available"] = self._store.is_available()
        stats["coalescer"] = self._coalescer.get_stats()
        stats["budget"] = self._budget.status()
        return stats


def build_orchestrator(settings: Optional[Settings] = None) -> FetchOrchestrator:
    """Wire an orchestrator from settings."""
    # Import here to avoid circular imports
    from gateway.upstream import UpstreamFetcher

    s = settings or default_settings
    if s.redis_url:
        store: CacheStore = RedisCacheStore(
            url=s.redis_url,
            connect_timeout=s.cache_connect_timeout_seconds,
            stale_retention_seconds=s.cache_stale_retention_seconds,
        )
    else:
        logger.info("No cache URL configured, using in-process memory cache")
        store = MemoryCacheStore(stale_retention_seconds=s.cache_stale_retention_seconds)
    store.connect()

    buckets = None
    hard_limit = None
    if s.budget_buckets_enabled:
        hard_limit = s.daily_hard_budget
        buckets = build_bucket_config({
            BudgetBucket.SCOREBOARD: s.budget_bucket_scoreboard,
            BudgetBucket.GAME_SUMMARY: s.budget_bucket_game_summary,
            BudgetBucket.STANDINGS: s.budget_bucket_standings,
            BudgetBucket.SCHEDULE: s.budget_bucket_schedule,
            BudgetBucket.RESERVE: s.budget_bucket_reserve,
        })
    budget = BudgetLimiter(
        daily_limit=s.daily_budget,
        minute_limit=s.requests_per_minute,
        timezone=s.budget_timezone,
        hard_limit=hard_limit,
        buckets=buckets,
    )
    fetcher = UpstreamFetcher(
        timeout=s.upstream_timeout_seconds,
        budget=budget,
        user_agent=s.upstream_user_agent,
    )
    return FetchOrchestrator(
        store=store,
        budget=budget,
        fetcher=fetcher,
        coalescer=RequestCoalescer(timeout=s.coalesce_timeout_seconds),
        ttl_config=build_ttl_config(s),
    )


# Global orchestrator instance
_orchestrator: Optional[FetchOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> FetchOrchestrator:
    """Get or create the global orchestrator."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator


def reset_orchestrator() -> None:
    """Drop the global orchestrator (tests, settings reload)."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = None
