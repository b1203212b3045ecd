"""
Background cache warming.

A PreloadTask walks an ordered list of resource requests on a daemon
thread, fetching each through the orchestrator so the cache is warm
before clients ask. Cancellation is cooperative: the flag is checked
between items, never mid-fetch, so an in-flight fetch always completes.

One task per scope: starting a new preload for a scope cancels the
previous one. Finished tasks are dropped from the scheduler; only their
counts are kept.
"""
import logging
import threading
from enum import Enum
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from config.settings import settings
from gateway.cache.core import ResourceKind
from gateway.cache.keys import ResourceRequest
from gateway.cache.manager import FetchOrchestrator, get_orchestrator
from gateway.cache.ttl_policies import get_box_score_ttl, get_game_kind

logger = logging.getLogger("gateway.preload")

KindOf = Callable[[ResourceRequest], ResourceKind]
TtlOf = Callable[[ResourceRequest], Optional[int]]

PRELOAD_STATUSES = ("live", "in", "in_progress", "halftime", "end_period", "final", "post")


class PreloadState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PreloadTask:
    """Cancellable handle for one preload walk."""

    def __init__(
        self,
        scope: str,
        requests: Sequence[ResourceRequest],
        orchestrator: FetchOrchestrator,
        kind_of: Optional[KindOf] = None,
        interval: float = 0.05,
        pace_to_budget: bool = True,
        ttl_of: Optional[TtlOf] = None,
        on_finished: Optional[Callable[["PreloadTask"], None]] = None,
    ):
        self.scope = scope
        self._requests: List[ResourceRequest] = list(requests)
        self._orchestrator = orchestrator
        self._kind_of = kind_of or (lambda request: request.kind)
        self._ttl_of = ttl_of or (lambda request: None)
        self._on_finished = on_finished
        self._interval = interval
        self._pace_to_budget = pace_to_budget

        self._cancel_event = threading.Event()
        self._done_event = threading.Event()
        self._state_lock = threading.Lock()
        self._state = PreloadState.IDLE
        self._thread: Optional[threading.Thread] = None

        self.fetched = 0
        self.failed = 0

    @property
    def state(self) -> PreloadState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: PreloadState) -> None:
        with self._state_lock:
            self._state = state

    @property
    def is_running(self) -> bool:
        return self.state == PreloadState.RUNNING

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def start(self) -> "PreloadTask":
        if self._thread is not None:
            raise RuntimeError(f"Preload task for {self.scope} already started")
        self._set_state(PreloadState.RUNNING)
        self._thread = threading.Thread(
            target=self._run,
            name=f"preload-{self.scope}",
            daemon=True,
        )
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Stop before the next item. An in-flight fetch is allowed to finish."""
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task finishes; False on timeout."""
        return self._done_event.wait(timeout)

    def _pause(self, seconds: float) -> None:
        # Wakes early on cancel; the loop re-checks the flag
        if seconds > 0:
            self._cancel_event.wait(seconds)

    def _run(self) -> None:
        total = len(self._requests)
        logger.debug(f"Preload {self.scope} started ({total} items)")
        try:
            for index, request in enumerate(self._requests):
                if self._pace_to_budget and not self._cancel_event.is_set():
                    wait_for = self._orchestrator.budget.seconds_until_minute_reset()
                    if wait_for > 0:
                        logger.debug(f"Preload {self.scope} waiting {wait_for:.1f}s for minute budget")
                        self._pause(wait_for)

                if self._cancel_event.is_set():
                    self._set_state(PreloadState.CANCELLED)
                    logger.info(f"Preload {self.scope} cancelled after {index}/{total} items")
                    return

                try:
                    self._orchestrator.get_request(
                        request,
                        kind=self._kind_of(request),
                        ttl_seconds=self._ttl_of(request),
                    )
                    self.fetched += 1
                except Exception as e:
                    self.failed += 1
                    logger.warning(f"Preload of {request.key} failed: {e}")

                if index < total - 1:
                    self._pause(self._interval)

            self._set_state(PreloadState.COMPLETED)
            logger.debug(
                f"Preload {self.scope} complete "
                f"(fetched={self.fetched}, failed={self.failed})"
            )
        finally:
            self._requests = []
            try:
                if self._on_finished is not None:
                    self._on_finished(self)
            finally:
                self._done_event.set()


class PreloadScheduler:
    """
    Starts preload tasks, keeping at most one active task per scope.

    Usage:
        scheduler = PreloadScheduler(orchestrator)
        scheduler.start("nba:2026-01-12", *requests_for_games("nba", games, "2026-01-12"))
        ...
        scheduler.cancel("nba:2026-01-12")  # user switched date
    """

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        interval: float = 0.05,
        pace_to_budget: bool = True,
    ):
        self._orchestrator = orchestrator
        self._interval = interval
        self._pace_to_budget = pace_to_budget
        self._tasks: Dict[str, PreloadTask] = {}
        self._lock = threading.Lock()
        self._finished = {"completed": 0, "cancelled": 0, "fetched": 0, "failed": 0}

    def start(
        self,
        scope: str,
        requests: Iterable[ResourceRequest],
        kind_of: Optional[KindOf] = None,
        ttl_of: Optional[TtlOf] = None,
    ) -> PreloadTask:
        """
        Start warming `requests` in order, superseding any task for `scope`.

        Returns:
            The running task handle
        """
        task = PreloadTask(
            scope=scope,
            requests=list(requests),
            orchestrator=self._orchestrator,
            kind_of=kind_of,
            interval=self._interval,
            pace_to_budget=self._pace_to_budget,
            ttl_of=ttl_of,
            on_finished=self._forget,
        )
        with self._lock:
            previous = self._tasks.get(scope)
            if previous is not None and previous.is_running:
                logger.info(f"Superseding running preload for {scope}")
                previous.cancel()
            self._tasks[scope] = task
            task.start()
        return task

    def _forget(self, task: PreloadTask) -> None:
        with self._lock:
            if task.state == PreloadState.CANCELLED:
                self._finished["cancelled"] += 1
            else:
                self._finished["completed"] += 1
            self._finished["fetched"] += task.fetched
            self._finished["failed"] += task.failed
            if self._tasks.get(task.scope) is task:
                del self._tasks[task.scope]

    def cancel(self, scope: str) -> bool:
        """
        Cancel the task for a scope.

        Returns:
            True if a running task was cancelled
        """
        with self._lock:
            task = self._tasks.get(scope)
        if task is None or not task.is_running:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            tasks = list(self._tasks.values())
        running = [t for t in tasks if t.is_running]
        for task in running:
            task.cancel()
        return len(running)

    def get_task(self, scope: str) -> Optional[PreloadTask]:
        with self._lock:
            return self._tasks.get(scope)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active": {
                    scope: {
                        "state": task.state.value,
                        "fetched": task.fetched,
                        "failed": task.failed,
                    }
                    for scope, task in self._tasks.items()
                },
                **self._finished,
            }


def requests_for_games(
    league: str,
    games: Iterable[Tuple[str, Optional[str]]],
    game_date: Union[date, str, None] = None,
    today: Union[date, str, None] = None,
) -> Tuple[List[ResourceRequest], KindOf, TtlOf]:
    """
    Box-score requests worth preloading after a scoreboard load.

    Args:
        league: League id, e.g. "nba"
        games: (game_id, status) pairs in display order
        game_date: Date of the scoreboard the games came from
        today: Override for the current date (tests)

    Returns:
        (requests, kind_of, ttl_of) for live and final games. Requests
        share the box-score key clients use; kind_of picks the live-game
        kind for games still in progress and ttl_of keeps finished games
        for hours or days instead of seconds.
    """
    statuses: Dict[str, Optional[str]] = {}
    requests = []
    for game_id, status in games:
        if (status or "").lower() not in PRELOAD_STATUSES:
            continue
        statuses[str(game_id)] = status
        requests.append(ResourceRequest(ResourceKind.BOX_SCORE, (league, str(game_id))))

    def kind_of(request: ResourceRequest) -> ResourceKind:
        return get_game_kind(statuses.get(str(request.identifiers[1])))

    def ttl_of(request: ResourceRequest) -> Optional[int]:
        status = statuses.get(str(request.identifiers[1]))
        # Live games keep the orchestrator's live-game TTL
        if get_game_kind(status) == ResourceKind.LIVE_GAME:
            return None
        return get_box_score_ttl(status, game_date, today)

    return requests, kind_of, ttl_of


# Global scheduler instance
_scheduler: Optional[PreloadScheduler] = None
_scheduler_lock = threading.Lock()


def get_preload_scheduler() -> PreloadScheduler:
    """Get or create the global preload scheduler."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = PreloadScheduler(
                get_orchestrator(),
                interval=settings.preload_interval_seconds,
                pace_to_budget=settings.preload_pace_to_budget,
            )
        return _scheduler


def reset_preload_scheduler() -> None:
    """Cancel running tasks and drop the global scheduler (tests, settings reload)."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is not None:
            _scheduler.cancel_all()
        _scheduler = None
