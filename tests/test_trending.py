"""
Tests for the trending velocity engine.

compute_velocity is pure and tested directly; TrendingEngine runs on the
in-process store with a fake clock so bucket boundaries are deterministic.
"""

import asyncio

import pytest

from engagement.trending import TrendingEngine, compute_velocity, hour_bucket


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def engine(store, config, clock):
    return TrendingEngine(store, config, clock=clock)


def _views(engine, category_id, counts):
    async def record():
        for product_id, n in counts.items():
            for _ in range(n):
                await engine.record_view(category_id, product_id)
    _run(record())


class TestHourBucket:
    def test_floor(self):
        assert hour_bucket(0) == 0
        assert hour_bucket(3599) == 0
        assert hour_bucket(3600) == 1
        assert hour_bucket(7201.5) == 2


class TestComputeVelocity:
    def test_current_minus_previous(self):
        ranked = compute_velocity({"p1": 5, "p2": 3}, {"p1": 4})
        assert ranked == [("p2", 3.0), ("p1", 1.0)]

    def test_negative_velocity(self):
        assert compute_velocity({"p1": 0}, {"p1": 3}) == [("p1", -3.0)]

    def test_products_only_in_previous_ignored(self):
        assert compute_velocity({"p1": 1}, {"p9": 10}) == [("p1", 1.0)]

    def test_ties_keep_current_order(self):
        ranked = compute_velocity({"b": 2, "a": 2, "c": 2}, {})
        assert [pid for pid, _ in ranked] == ["b", "a", "c"]

    def test_empty(self):
        assert compute_velocity({}, {"p1": 1}) == []


class TestTrendingEngine:
    def test_current_hour_only_ranks_by_count(self, engine):
        _views(engine, "c1", {"p1": 1, "p2": 4, "p3": 2})
        assert _run(engine.get_trending("c1", 3)) == ["p2", "p3", "p1"]

    def test_acceleration_beats_volume(self, engine, clock):
        _views(engine, "c1", {"steady": 10, "rising": 1})
        clock.advance(3600)
        _views(engine, "c1", {"steady": 8, "rising": 6})
        assert _run(engine.get_trending("c1", 2)) == ["rising", "steady"]

    def test_empty_current_bucket(self, engine, clock):
        _views(engine, "c1", {"p1": 3})
        clock.advance(3600)
        assert _run(engine.get_trending("c1", 4)) == []

    def test_k_limits_result(self, engine):
        _views(engine, "c1", {"p1": 1, "p2": 2, "p3": 3})
        assert _run(engine.get_trending("c1", 1)) == ["p3"]
        assert _run(engine.get_trending("c1", 0)) == []

    def test_bucket_expires_after_two_hours(self, engine, store, clock):
        _views(engine, "c1", {"p1": 1})
        bucket = engine.current_bucket()
        assert _run(store.ttl(f"category:c1:hourlyViews:{bucket}")) == 7200
        clock.advance(7200)
        assert _run(engine.bucket_scores("c1", bucket)) == {}

    def test_categories_are_independent(self, engine):
        _views(engine, "c1", {"p1": 2})
        _views(engine, "c2", {"p9": 1})
        assert _run(engine.get_trending("c2", 4)) == ["p9"]


class TestPopular:
    def test_ranked_with_exclusion(self, engine):
        async def record():
            for pid, n in {"p1": 3, "p2": 2, "p3": 1}.items():
                for _ in range(n):
                    await engine.record_popular("c1", pid)
        _run(record())
        assert _run(engine.get_popular("c1", 2)) == ["p1", "p2"]
        assert _run(engine.get_popular("c1", 2, exclude="p1")) == ["p2", "p3"]

    def test_cold_category(self, engine):
        assert _run(engine.get_popular("nope", 4)) == []
