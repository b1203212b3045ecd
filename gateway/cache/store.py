"""
TTL cache stores.

A store maps a cache key to a CacheEntry. Reads never raise: an
unreachable backend is reported as a miss so the caller falls through to
upstream. Writes report success as a bool and never raise either.

Expired entries are kept for `stale_retention_seconds` beyond their TTL so
the orchestrator can serve them when the upstream budget is exhausted.
"""
import fnmatch
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol

import redis
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from gateway.errors import CacheUnavailable

from .core import CacheEntry, ResourceKind

logger = logging.getLogger("cache.store")


class CacheStore(Protocol):
    """
    Interface for cache backends.

    Implementations:
    - RedisCacheStore: network cache shared by all gateway processes
    - MemoryCacheStore: per-process dict (local dev, tests)
    """

    def get(self, key: str) -> Optional[CacheEntry]:
        """Entry for key (fresh or expired), or None on miss/outage."""
        ...

    def set(self, key: str, payload: Any, ttl_seconds: int, kind: ResourceKind) -> bool:
        """Store payload; False if the write did not happen."""
        ...

    def is_available(self) -> bool:
        ...


class RedisCacheStore:
    """
    Redis-backed store.

    Entries are JSON envelopes written with SETEX; the native expiry is
    ttl + stale retention, read-time freshness uses the envelope's
    stored_at. While the backend is down, operations are short-circuited
    and a reconnect is attempted at most every `retry_interval_seconds`.
    Outages are logged once per transition, not per request.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[Any] = None,
        connect_timeout: float = 3.0,
        stale_retention_seconds: int = 86400,
        retry_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisCacheStore needs a url or a client")
            client = redis.Redis.from_url(
                url,
                socket_connect_timeout=connect_timeout,
                socket_timeout=connect_timeout,
                decode_responses=True,
            )
        self._client = client
        self._stale_retention = stale_retention_seconds
        self._retry_interval = retry_interval_seconds
        self._clock = clock
        self._state_lock = threading.Lock()
        self._available = False
        self._last_failure_at: Optional[float] = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=1),
        retry=retry_if_exception_type(redis.RedisError),
        reraise=True,
    )
    def _ping(self) -> None:
        self._client.ping()

    def connect(self) -> bool:
        """
        Ping the backend at startup.

        Returns:
            True if the backend answered a ping
        """
        try:
            self._ping()
        except redis.RedisError as e:
            logger.warning(f"Cache backend not available, running without cache: {e}")
            self._mark_unavailable(e, log=False)
            return False
        self._mark_available()
        logger.info("Cache backend connected")
        return True

    def is_available(self) -> bool:
        with self._state_lock:
            return self._available

    def _should_attempt(self) -> bool:
        with self._state_lock:
            if self._available or self._last_failure_at is None:
                return True
            return (self._clock() - self._last_failure_at) >= self._retry_interval

    def _mark_available(self) -> None:
        with self._state_lock:
            recovered = not self._available and self._last_failure_at is not None
            self._available = True
            self._last_failure_at = None
        if recovered:
            logger.info("Cache backend recovered")

    def _mark_unavailable(self, error: Exception, log: bool = True) -> None:
        with self._state_lock:
            was_available = self._available
            self._available = False
            self._last_failure_at = self._clock()
        if was_available and log:
            logger.warning(f"Cache backend unavailable, bypassing cache: {error}")

    def _execute(self, operation: Callable[[], Any]) -> Any:
        """
        Run one backend operation.

        Raises:
            CacheUnavailable: Backend is down or the operation failed
        """
        if not self._should_attempt():
            raise CacheUnavailable("Cache backend unavailable")
        try:
            result = operation()
        except redis.RedisError as e:
            self._mark_unavailable(e)
            raise CacheUnavailable(str(e)) from e
        self._mark_available()
        return result

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = self._execute(lambda: self._client.get(key))
        except CacheUnavailable:
            return None

        if raw is None:
            return None
        try:
            return CacheEntry.from_envelope(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    def set(self, key: str, payload: Any, ttl_seconds: int, kind: ResourceKind) -> bool:
        entry = CacheEntry(
            payload=payload,
            stored_at=self._clock(),
            ttl_seconds=ttl_seconds,
            kind=kind,
        )
        try:
            data = json.dumps(entry.to_envelope())
        except (TypeError, ValueError) as e:
            logger.error(f"Cache set error for key {key}: payload not serializable: {e}")
            return False
        try:
            self._execute(lambda: self._client.setex(key, ttl_seconds + self._stale_retention, data))
        except CacheUnavailable:
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            return bool(self._execute(lambda: self._client.delete(key)))
        except CacheUnavailable:
            return False

    def clear_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a glob pattern.

        Returns:
            Number of keys removed
        """
        def clear() -> int:
            keys = list(self._client.scan_iter(match=pattern))
            return self._client.delete(*keys) if keys else 0

        try:
            removed = self._execute(clear)
        except CacheUnavailable:
            return 0
        if removed:
            logger.info(f"Cleared {removed} cache keys matching pattern: {pattern}")
        return removed


class MemoryCacheStore:
    """
    In-process store with the same envelope semantics as RedisCacheStore.

    Per-process: with several workers each one has its own cache.
    """

    def __init__(
        self,
        stale_retention_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stale_retention = stale_retention_seconds
        self._clock = clock

    def connect(self) -> bool:
        return True

    def is_available(self) -> bool:
        return True

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            # Native expiry: drop once past the stale retention window
            if entry.age_seconds(self._clock()) >= entry.ttl_seconds + self._stale_retention:
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, payload: Any, ttl_seconds: int, kind: ResourceKind) -> bool:
        entry = CacheEntry(
            payload=payload,
            stored_at=self._clock(),
            ttl_seconds=ttl_seconds,
            kind=kind,
        )
        with self._lock:
            self._entries[key] = entry
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear_pattern(self, pattern: str) -> int:
        with self._lock:
            to_delete = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in to_delete:
                del self._entries[key]
        if to_delete:
            logger.info(f"Cleared {len(to_delete)} cache keys matching pattern: {pattern}")
        return len(to_delete)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
