"""Pytest configuration for engagement engine tests."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engagement.config import EngineConfig
from engagement.errors import StoreUnavailable
from engagement.metrics import MetricsCollector
from engagement.store import CounterStore, MemoryStore

TEST_SECRET = "test-secret"


class FakeClock:
    """Manually advanced clock (unix seconds)."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(CounterStore):
    """Behaves like a Redis that refuses every connection."""

    def __init__(self, namespace: str = "test"):
        super().__init__(namespace=namespace)
        self.calls = 0

    def _fail(self, operation: str):
        self.calls += 1
        raise StoreUnavailable(operation, ConnectionError("Connection refused"))

    async def _execute_batch(self, ops):
        self._fail("batch")

    async def increment(self, key):
        self._fail("increment")

    async def decrement(self, key):
        self._fail("decrement")

    async def set_add(self, key, member):
        self._fail("set_add")

    async def set_remove(self, key, member):
        self._fail("set_remove")

    async def set_contains(self, key, member):
        self._fail("set_contains")

    async def set_members(self, key):
        self._fail("set_members")

    async def set_intersect(self, *keys):
        self._fail("set_intersect")

    async def sorted_set_incr_by(self, key, member, delta=1, ttl_seconds=None):
        self._fail("sorted_set_incr_by")

    async def sorted_set_top_k(self, key, k, descending=True):
        self._fail("sorted_set_top_k")

    async def sorted_set_scores(self, key):
        self._fail("sorted_set_scores")

    async def sorted_set_trim(self, key, keep_top_n):
        self._fail("sorted_set_trim")

    async def list_range(self, key, start=0, stop=-1):
        self._fail("list_range")

    async def expire(self, key, ttl_seconds):
        self._fail("expire")

    async def ttl(self, key):
        self._fail("ttl")

    async def get(self, key):
        self._fail("get")

    async def set(self, key, value, ttl_seconds=None):
        self._fail("set")

    async def delete(self, key):
        self._fail("delete")

    async def ping(self):
        return False


@pytest.fixture
def config():
    """In-process engine config with a known token secret."""
    return EngineConfig(
        store_backend="memory",
        namespace="test",
        jwt_secret=TEST_SECRET,
        rate_limit_max_requests=1000,
        log_level="WARNING",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(namespace="test", clock=clock)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def metrics():
    return MetricsCollector(window_size=100)
