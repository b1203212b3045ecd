"""
Shared test doubles: a controllable clock and an in-memory redis client.
"""
import fnmatch
import threading

import pytest
import redis

from gateway.budget import BudgetLimiter
from gateway.cache.manager import FetchOrchestrator
from gateway.cache.store import MemoryCacheStore
from gateway.cache.ttl_policies import build_ttl_config
from config.settings import Settings


# 2026-01-12 18:00:00 UTC
START_TIME = 1768240800.0


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeRedis:
    """Subset of the redis client API used by RedisCacheStore."""

    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.down = False
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise redis.ConnectionError("Connection refused")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def setex(self, key, seconds, value):
        self._check()
        self.data[key] = value
        self.expiries[key] = seconds
        return True

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match=None):
        self._check()
        return [k for k in list(self.data) if match is None or fnmatch.fnmatchcase(k, match)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def ttl_config():
    return build_ttl_config(Settings(cache_ttl_box_score=30, cache_ttl_live_game=15))


@pytest.fixture
def memory_store(clock):
    return MemoryCacheStore(stale_retention_seconds=3600, clock=clock)


@pytest.fixture
def budget(clock):
    return BudgetLimiter(daily_limit=2000, minute_limit=10000, clock=clock)


@pytest.fixture
def orchestrator(memory_store, budget, ttl_config, clock):
    return FetchOrchestrator(
        store=memory_store,
        budget=budget,
        ttl_config=ttl_config,
        clock=clock,
    )
