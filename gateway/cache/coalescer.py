"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same key, only one
producer call is made and all requesters share its outcome.
"""
import threading
import time
import logging
from typing import Dict, Optional, Callable, Any
from dataclasses import dataclass, field

from gateway.errors import UpstreamTimeout

logger = logging.getLogger("cache.coalescer")


@dataclass
class PendingFetch:
    """Tracks an in-progress producer call for one key."""
    key: str
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0

    def outcome(self, waiter: bool = False) -> Any:
        """
        Result of the fetch, or its error re-raised.

        Waiters share the initiator's exception object; each re-raise
        starts from a cleared traceback so frames from other threads never
        pile up on it.
        """
        if self.error is not None:
            if waiter:
                raise self.error.with_traceback(None)
            raise self.error
        return self.result


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one producer call.

    Pattern:
    - First request for a key registers a PendingFetch and runs the producer
    - Later requests for the key attach and wait on its Event
    - On completion every waiter receives the same result, or the same
      exception object, and the PendingFetch is removed
    - Nothing is retried: a failure is delivered to all waiters as-is

    Usage:
        coalescer = RequestCoalescer()
        result = coalescer.get_or_fetch(
            key="box-score:nba:401584793",
            producer=lambda: fetcher.fetch(request),
        )
    """

    def __init__(self, timeout: float = 30.0):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a waiter blocks on an in-flight request
        """
        self._in_flight: Dict[str, PendingFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._coalesced_total = 0

    def get_or_fetch(
        self,
        key: str,
        producer: Callable[[], Any],
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            key: Cache key identifying the logical request
            producer: Called at most once per in-flight key

        Returns:
            The produced payload (shared among all concurrent callers)

        Raises:
            UpstreamTimeout: If waiting for an in-flight request times out
            Exception: Any error from producer, re-raised in every caller
        """
        with self._lock:
            pending = self._in_flight.get(key)
            if pending is not None:
                pending.waiter_count += 1
                self._coalesced_total += 1
                is_initiator = False
                logger.debug(
                    f"Coalescing request for {key} "
                    f"(waiters: {pending.waiter_count})"
                )
            else:
                pending = PendingFetch(key=key)
                self._in_flight[key] = pending
                is_initiator = True
                logger.debug(f"Initiating fetch for {key}")

        if is_initiator:
            try:
                pending.result = producer()
            except Exception as e:
                pending.error = e
                logger.warning(f"Fetch failed for {key}: {e}")
            finally:
                # Remove before signalling so a caller arriving after
                # resolution starts a new fetch instead of reading this one
                with self._lock:
                    if self._in_flight.get(key) is pending:
                        del self._in_flight[key]
                pending.event.set()
            return pending.outcome()

        if not pending.event.wait(timeout=self._timeout):
            logger.error(f"Timeout waiting for coalesced request: {key}")
            raise UpstreamTimeout(f"Request for {key} timed out after {self._timeout}s")

        return pending.outcome(waiter=True)

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "coalesced_total": self._coalesced_total,
            }
