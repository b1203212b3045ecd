"""
Tests for the upstream budget limiter.
"""
import threading

import pytest

from gateway.budget import BudgetBucket, BudgetLimiter, build_bucket_config
from gateway.errors import BudgetReason


class TestDailyBudget:

    def test_admits_up_to_daily_limit(self, clock):
        limiter = BudgetLimiter(daily_limit=2000, minute_limit=100000, clock=clock)

        results = [limiter.try_admit() for _ in range(2001)]

        admitted = [r for r in results if r.admitted]
        rejected = [r for r in results if not r.admitted]
        assert len(admitted) == 2000
        assert len(rejected) == 1
        assert rejected[0].reason == BudgetReason.DAILY_EXHAUSTED
        assert limiter.status()["daily"]["remaining"] == 0

    def test_rejection_does_not_consume_budget(self, clock):
        limiter = BudgetLimiter(daily_limit=1, minute_limit=100, clock=clock)
        assert limiter.try_admit()
        assert not limiter.try_admit()
        assert limiter.status()["daily"]["used"] == 1

    def test_daily_window_resets_at_midnight_utc(self, clock):
        # Clock starts at 18:00 UTC
        limiter = BudgetLimiter(daily_limit=1, minute_limit=100, clock=clock)
        assert limiter.try_admit()

        rejected = limiter.try_admit()
        assert rejected.reason == BudgetReason.DAILY_EXHAUSTED
        assert rejected.retry_after_seconds == 6 * 3600

        clock.advance(6 * 3600)
        assert limiter.try_admit()

    def test_reference_timezone_decides_rollover(self, clock):
        # 18:00 UTC is 13:00 in New York; midnight there is 11 hours away
        limiter = BudgetLimiter(daily_limit=1, minute_limit=100, timezone="America/New_York", clock=clock)
        assert limiter.try_admit()

        clock.advance(6 * 3600)
        assert not limiter.try_admit()

        clock.advance(5 * 3600)
        assert limiter.try_admit()

    def test_cost_larger_than_remaining_is_rejected(self, clock):
        limiter = BudgetLimiter(daily_limit=3, minute_limit=100, clock=clock)
        assert limiter.try_admit(cost=2)
        assert not limiter.try_admit(cost=2)
        assert limiter.try_admit(cost=1)

    def test_cost_below_one_rejected(self, clock):
        limiter = BudgetLimiter(daily_limit=3, minute_limit=100, clock=clock)
        for cost in (0, -1):
            with pytest.raises(ValueError):
                limiter.try_admit(cost=cost)
        status = limiter.status()
        assert status["daily"]["used"] == 0
        assert status["minute"]["used"] == 0
        assert status["rejections"] == 0


class TestMinuteBudget:

    def test_minute_limit_rejects(self, clock):
        limiter = BudgetLimiter(daily_limit=100, minute_limit=2, clock=clock)
        assert limiter.try_admit()
        assert limiter.try_admit()

        rejected = limiter.try_admit()
        assert rejected.reason == BudgetReason.MINUTE_EXHAUSTED
        assert rejected.retry_after_seconds == 60

    def test_minute_window_resets_from_its_own_start(self, clock):
        clock.advance(17)  # not aligned to a wall-clock minute
        limiter = BudgetLimiter(daily_limit=100, minute_limit=1, clock=clock)
        assert limiter.try_admit()

        clock.advance(59)
        assert not limiter.try_admit()
        assert limiter.seconds_until_minute_reset() == 1

        clock.advance(1)
        assert limiter.seconds_until_minute_reset() == 0
        assert limiter.try_admit()


class TestConcurrentAdmission:

    def test_last_unit_admitted_once(self, clock):
        limiter = BudgetLimiter(daily_limit=1, minute_limit=100, clock=clock)
        barrier = threading.Barrier(20)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            admission = limiter.try_admit()
            with lock:
                results.append(admission.admitted)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert results.count(True) == 1
        assert results.count(False) == 19

    def test_many_threads_never_exceed_limit(self, clock):
        limiter = BudgetLimiter(daily_limit=500, minute_limit=100000, clock=clock)
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(100):
                if limiter.try_admit():
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(admitted) == 500


class TestBackoff:

    def test_throttling_opens_backoff(self, clock):
        limiter = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        limiter.record_error(429)

        rejected = limiter.try_admit()
        assert rejected.reason == BudgetReason.BACKOFF
        assert rejected.retry_after_seconds == 30

        clock.advance(30)
        assert limiter.try_admit()

    def test_not_found_does_not_back_off(self, clock):
        limiter = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        limiter.record_error(404)
        assert limiter.try_admit()

    def test_backoff_doubles_then_switches_to_consecutive_schedule(self, clock):
        limiter = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        limiter.record_error(0, is_timeout=True)  # 15s
        limiter.record_error(0, is_timeout=True)  # 30s
        assert limiter.try_admit().retry_after_seconds == 30

        limiter.record_error(500)  # third in a row: consecutive schedule, capped at 600
        assert limiter.try_admit().retry_after_seconds == 60
        assert limiter.status()["backoff"]["consecutive_errors"] == 3

    def test_successes_halve_backoff(self, clock):
        limiter = BudgetLimiter(daily_limit=100, minute_limit=100, clock=clock)
        limiter.record_error(503)  # 30s
        clock.advance(30)
        for _ in range(5):
            limiter.record_success()

        limiter.record_error(503)  # 15s doubled back to 30s
        assert limiter.try_admit().retry_after_seconds == 30

    def test_reset_clears_state(self, clock):
        limiter = BudgetLimiter(daily_limit=1, minute_limit=1, clock=clock)
        limiter.try_admit()
        limiter.record_error(429)
        limiter.reset()

        status = limiter.status()
        assert status["daily"]["used"] == 0
        assert not status["backoff"]["active"]
        assert limiter.try_admit()


class TestBuckets:

    def make_limiter(self, clock, **limits):
        buckets = build_bucket_config({BudgetBucket[name.upper()]: limit for name, limit in limits.items()})
        return BudgetLimiter(daily_limit=2, minute_limit=100, clock=clock, hard_limit=3, buckets=buckets)

    def test_protected_bucket_passes_soft_cap_up_to_hard_cap(self, clock):
        limiter = self.make_limiter(clock, scoreboard=10, schedule=10)
        assert limiter.try_admit(bucket=BudgetBucket.SCHEDULE)
        assert limiter.try_admit(bucket=BudgetBucket.SCHEDULE)

        assert limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)
        rejected = limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)
        assert rejected.reason == BudgetReason.DAILY_EXHAUSTED
        assert limiter.status()["daily"]["used"] == 3

    def test_unprotected_bucket_stops_at_soft_cap(self, clock):
        limiter = self.make_limiter(clock, scoreboard=10, schedule=10)
        assert limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)
        assert limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)

        rejected = limiter.try_admit(bucket=BudgetBucket.SCHEDULE)
        assert rejected.reason == BudgetReason.DAILY_EXHAUSTED
        # Unbucketed calls count as unprotected
        assert not limiter.try_admit()
        assert limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)

    def test_bucket_limit_rejects_until_next_day(self, clock):
        limiter = self.make_limiter(clock, game_summary=1, scoreboard=1)
        assert limiter.try_admit(bucket=BudgetBucket.GAME_SUMMARY)

        rejected = limiter.try_admit(bucket=BudgetBucket.GAME_SUMMARY)
        assert rejected.reason == BudgetReason.BUCKET_EXHAUSTED
        assert rejected.retry_after_seconds == 6 * 3600
        # Other buckets keep their own allocation
        assert limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)

        clock.advance(6 * 3600)
        assert limiter.try_admit(bucket=BudgetBucket.GAME_SUMMARY)

    def test_status_reports_buckets(self, clock):
        limiter = self.make_limiter(clock, game_summary=5, reserve=4)
        limiter.try_admit(bucket=BudgetBucket.RESERVE)

        status = limiter.status()
        assert status["daily"]["hard_limit"] == 3
        assert status["buckets"] == {
            "game_summary": {"used": 0, "limit": 5, "protected": True},
            "reserve": {"used": 1, "limit": 4, "protected": False},
        }

    def test_bucket_ignored_without_configuration(self, clock):
        limiter = BudgetLimiter(daily_limit=1, minute_limit=100, clock=clock)
        assert limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)
        assert not limiter.try_admit(bucket=BudgetBucket.SCOREBOARD)
        assert limiter.status()["buckets"] == {}

    def test_hard_limit_below_soft_cap_rejected(self, clock):
        with pytest.raises(ValueError):
            BudgetLimiter(daily_limit=10, hard_limit=5, clock=clock)
