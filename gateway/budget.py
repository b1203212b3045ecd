"""
Upstream call budget.

Two windows are enforced:
1. Daily quota, reset at day rollover in a fixed reference timezone
2. Per-minute quota, reset 60s after the window's own start (not aligned
   to the wall clock, so callers don't all resume on the same second)

Optionally the daily quota is split into per-resource buckets. Protected
buckets (scoreboards, game summaries, standings) may run past the daily
soft cap up to a hard cap; unprotected buckets stop at the soft cap, so a
bulk preload can't starve the requests users are waiting on.

On top of that an adaptive backoff closes admission for a while after
upstream throttling (429/403), server errors or timeouts.

Counters live in process memory only; a restart resets them.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from gateway.errors import BudgetReason

logger = logging.getLogger("gateway.budget")

MINUTE_WINDOW_SECONDS = 60
WARNING_RATIO = 0.9

# Backoff schedule in seconds, keyed by error class
BACKOFF_INITIAL = {
    429: 30,
    403: 60,
    "timeout": 15,
    "5xx": 30,
    "consecutive": 60,  # 3+ errors in a row
}
BACKOFF_MAX = {
    429: 300,
    403: 600,
    "timeout": 120,
    "5xx": 300,
    "consecutive": 600,
}
CONSECUTIVE_ERROR_THRESHOLD = 3
SUCCESSES_TO_HALVE_BACKOFF = 5
FULL_RESET_AFTER_SECONDS = 600


class BudgetBucket(Enum):
    """Daily budget allocation a request is charged to."""
    SCOREBOARD = "scoreboard"
    GAME_SUMMARY = "game_summary"
    STANDINGS = "standings"
    SCHEDULE = "schedule"
    RESERVE = "reserve"


PROTECTED_BUCKETS = (
    BudgetBucket.SCOREBOARD,
    BudgetBucket.GAME_SUMMARY,
    BudgetBucket.STANDINGS,
)


@dataclass
class BucketConfig:
    daily_limit: int
    protected: bool = False


def build_bucket_config(limits: Dict[BudgetBucket, int]) -> Dict[BudgetBucket, BucketConfig]:
    """Bucket table from per-bucket daily limits; protection is fixed per bucket."""
    return {
        bucket: BucketConfig(daily_limit=limit, protected=bucket in PROTECTED_BUCKETS)
        for bucket, limit in limits.items()
    }


@dataclass
class Admission:
    """Outcome of a budget check."""
    admitted: bool
    reason: Optional[BudgetReason] = None
    retry_after_seconds: Optional[float] = None

    def __bool__(self) -> bool:
        return self.admitted


class BudgetLimiter:
    """
    Thread-safe admission control for upstream calls.

    try_admit() checks and increments under one lock, so two concurrent
    callers can never both take the last unit of budget.
    """

    def __init__(
        self,
        daily_limit: int = 2000,
        minute_limit: int = 60,
        timezone: str = "UTC",
        clock: Callable[[], float] = time.time,
        hard_limit: Optional[int] = None,
        buckets: Optional[Dict[BudgetBucket, BucketConfig]] = None,
    ):
        """
        Args:
            daily_limit: Daily soft cap; every unprotected request stops here
            minute_limit: Requests per minute window
            timezone: Reference timezone for the daily rollover
            clock: Epoch-seconds clock
            hard_limit: Daily cap for protected buckets (defaults to daily_limit)
            buckets: Optional per-bucket allocations
        """
        if hard_limit is not None and hard_limit < daily_limit:
            raise ValueError("hard_limit must not be below daily_limit")
        self.daily_limit = daily_limit
        self.hard_limit = hard_limit if hard_limit is not None else daily_limit
        self._buckets: Dict[BudgetBucket, BucketConfig] = dict(buckets or {})
        self.minute_limit = minute_limit
        self._tz = ZoneInfo(timezone)
        self._clock = clock
        self._lock = threading.Lock()

        now = clock()
        self._daily_used = 0
        self._bucket_used: Dict[BudgetBucket, int] = {b: 0 for b in self._buckets}
        self._window_date = self._date_of(now)
        self._minute_used = 0
        self._minute_window_started_at = now

        self._backoff_until: Optional[float] = None
        self._current_backoff = 0.0
        self._consecutive_errors = 0
        self._consecutive_successes = 0
        self._last_error_at: Optional[float] = None
        self._rejections = 0

    def _date_of(self, epoch: float):
        return datetime.fromtimestamp(epoch, tz=self._tz).date()

    def _seconds_until_next_day(self, now: float) -> float:
        local = datetime.fromtimestamp(now, tz=self._tz)
        midnight = datetime.combine(local.date() + timedelta(days=1), datetime.min.time(), tzinfo=self._tz)
        return max(0.0, midnight.timestamp() - now)

    def _roll_windows(self, now: float) -> None:
        """Reset any window the clock has moved past. Caller holds the lock."""
        today = self._date_of(now)
        if today != self._window_date:
            logger.info(
                f"New budget day {today}, resetting daily quota "
                f"(previous usage: {self._daily_used}/{self.daily_limit})"
            )
            self._daily_used = 0
            self._bucket_used = {b: 0 for b in self._buckets}
            self._window_date = today

        if now - self._minute_window_started_at >= MINUTE_WINDOW_SECONDS:
            self._minute_used = 0
            self._minute_window_started_at = now

        if self._backoff_until is not None and now >= self._backoff_until:
            logger.info("Upstream backoff period expired")
            self._backoff_until = None

        if self._last_error_at is not None and now - self._last_error_at > FULL_RESET_AFTER_SECONDS:
            self._consecutive_errors = 0
            self._current_backoff = 0.0
            self._last_error_at = None

    def _daily_rejection(self, cost: int, bucket: Optional[BudgetBucket]) -> Optional[BudgetReason]:
        """Reason the day's quotas refuse `cost`, or None. Caller holds the lock."""
        if self._daily_used + cost > self.hard_limit:
            return BudgetReason.DAILY_EXHAUSTED

        config = self._buckets.get(bucket) if bucket is not None else None
        if config is not None and self._bucket_used[bucket] + cost > config.daily_limit:
            return BudgetReason.BUCKET_EXHAUSTED

        # Past the soft cap only protected buckets get through
        protected = config is not None and config.protected
        if self._daily_used + cost > self.daily_limit and not protected:
            return BudgetReason.DAILY_EXHAUSTED
        return None

    def try_admit(self, cost: int = 1, bucket: Optional[BudgetBucket] = None) -> Admission:
        """
        Admit `cost` upstream calls, or reject with a reason.

        Counters are only incremented on admission.

        Args:
            cost: Number of upstream calls, at least 1
            bucket: Allocation to charge; ignored when no buckets are configured

        Raises:
            ValueError: cost below 1
        """
        if cost < 1:
            raise ValueError(f"cost must be at least 1, got {cost}")

        with self._lock:
            now = self._clock()
            self._roll_windows(now)

            daily_reason = self._daily_rejection(cost, bucket)
            if daily_reason is not None:
                self._rejections += 1
                if daily_reason == BudgetReason.BUCKET_EXHAUSTED:
                    logger.info(f"Budget bucket {bucket.value} exhausted for {self._window_date}")
                return Admission(
                    False,
                    daily_reason,
                    self._seconds_until_next_day(now),
                )

            if self._backoff_until is not None:
                self._rejections += 1
                return Admission(False, BudgetReason.BACKOFF, self._backoff_until - now)

            if self._minute_used + cost > self.minute_limit:
                self._rejections += 1
                return Admission(
                    False,
                    BudgetReason.MINUTE_EXHAUSTED,
                    self._minute_window_started_at + MINUTE_WINDOW_SECONDS - now,
                )

            self._daily_used += cost
            self._minute_used += cost
            if bucket in self._bucket_used:
                self._bucket_used[bucket] += cost

            warning_at = int(self.daily_limit * WARNING_RATIO)
            if warning_at <= self._daily_used < warning_at + cost:
                logger.warning(
                    f"Approaching daily upstream budget: "
                    f"{self._daily_used}/{self.daily_limit}"
                )
            return Admission(True)

    def seconds_until_minute_reset(self) -> float:
        """0 if the minute window has room, else seconds until it reopens."""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            if self._minute_used < self.minute_limit:
                return 0.0
            return max(0.0, self._minute_window_started_at + MINUTE_WINDOW_SECONDS - now)

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_successes += 1
            self._consecutive_errors = 0
            if self._consecutive_successes >= SUCCESSES_TO_HALVE_BACKOFF:
                if self._current_backoff > 0:
                    self._current_backoff = self._current_backoff / 2
                    logger.debug(f"Halved backoff to {self._current_backoff:.0f}s after consecutive successes")
                self._consecutive_successes = 0

    def record_error(self, status_code: int = 0, is_timeout: bool = False) -> None:
        """
        Open a backoff window after upstream throttling or failure.

        Errors other than 429/403/5xx/timeout (e.g. 404) don't back off.
        """
        with self._lock:
            now = self._clock()
            self._consecutive_successes = 0
            self._consecutive_errors += 1
            self._last_error_at = now

            if is_timeout:
                backoff_key: Any = "timeout"
            elif status_code in (429, 403):
                backoff_key = status_code
            elif status_code >= 500:
                backoff_key = "5xx"
            else:
                return

            if self._consecutive_errors >= CONSECUTIVE_ERROR_THRESHOLD:
                backoff_key = "consecutive"

            if self._current_backoff == 0:
                self._current_backoff = float(BACKOFF_INITIAL[backoff_key])
            else:
                self._current_backoff = min(self._current_backoff * 2, float(BACKOFF_MAX[backoff_key]))

            self._backoff_until = now + self._current_backoff
            logger.warning(
                f"Upstream backoff triggered: status={status_code} timeout={is_timeout} "
                f"backoff={self._current_backoff:.0f}s "
                f"consecutive_errors={self._consecutive_errors}"
            )

    def status(self) -> Dict[str, Any]:
        """Snapshot of the budget state."""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            return {
                "daily": {
                    "used": self._daily_used,
                    "limit": self.daily_limit,
                    "remaining": max(0, self.daily_limit - self._daily_used),
                    "hard_limit": self.hard_limit,
                    "window_date": self._window_date.isoformat(),
                },
                "buckets": {
                    bucket.value: {
                        "used": self._bucket_used[bucket],
                        "limit": config.daily_limit,
                        "protected": config.protected,
                    }
                    for bucket, config in self._buckets.items()
                },
                "minute": {
                    "used": self._minute_used,
                    "limit": self.minute_limit,
                    "remaining": max(0, self.minute_limit - self._minute_used),
                },
                "backoff": {
                    "active": self._backoff_until is not None,
                    "seconds_remaining": (
                        round(self._backoff_until - now, 1) if self._backoff_until is not None else None
                    ),
                    "consecutive_errors": self._consecutive_errors,
                },
                "rejections": self._rejections,
            }

    def reset(self) -> None:
        """Clear all counters and backoff state."""
        with self._lock:
            now = self._clock()
            self._daily_used = 0
            self._bucket_used = {b: 0 for b in self._buckets}
            self._window_date = self._date_of(now)
            self._minute_used = 0
            self._minute_window_started_at = now
            self._backoff_until = None
            self._current_backoff = 0.0
            self._consecutive_errors = 0
            self._consecutive_successes = 0
            self._last_error_at = None
            self._rejections = 0
