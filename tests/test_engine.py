"""
Tests for the EngagementEngine boundary: view fan-out, recommendation
merging, cart wire format and the degrade-on-failure policy.
"""

import asyncio

import pytest

from engagement.engine import EngagementEngine
from engagement.errors import StoreUnavailable
from engagement.schemas import CartLine


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def engine(store, config, clock, metrics):
    return EngagementEngine(store, config, clock=clock, metrics=metrics)


@pytest.fixture
def degraded_engine(failing_store, config, metrics):
    return EngagementEngine(failing_store, config, metrics=metrics)


class TestRecordView:
    def test_repeated_views_fan_out(self, engine, store):
        async def views():
            for _ in range(3):
                assert await engine.record_view("u1", "c1", "p1") is True
        _run(views())

        assert _run(engine.get_recently_viewed("u1")) == ["p1", "p1", "p1"]
        assert _run(engine.get_trending("c1", 4)) == ["p1"]
        assert _run(store.sorted_set_scores("category:c1:popularProducts")) == {"p1": 3.0}
        assert _run(engine.affinity.get_top_categories("u1")) == ["c1"]

    def test_views_by_many_identities_share_trending(self, engine):
        async def views():
            for identity in ("u1", "u2", "u3"):
                await engine.record_view(identity, "c1", "p2")
            await engine.record_view("u1", "c1", "p1")
        _run(views())
        assert _run(engine.get_trending("c1", 4)) == ["p2", "p1"]


class TestRecommendations:
    def _seed(self, engine):
        async def seed():
            for _ in range(3):
                await engine.record_view("u9", "c1", "p2")
            await engine.record_view("u9", "c1", "p3")
            await engine.record_view("u9", "c1", "p1")
            await engine.record_co_occurrence("p1", "p4")
            await engine.record_co_occurrence("p1", "p4")
            await engine.record_co_occurrence("p1", "p2")
        _run(seed())

    def test_similar_merges_popular_then_bought_together(self, engine):
        self._seed(engine)
        assert _run(engine.get_similar("p1", "c1", 4)) == ["p2", "p3", "p4"]

    def test_similar_respects_k(self, engine):
        self._seed(engine)
        assert _run(engine.get_similar("p1", "c1", 1)) == ["p2"]

    def test_similar_without_category(self, engine):
        self._seed(engine)
        assert _run(engine.get_similar("p1", None, 4)) == ["p4", "p2"]

    def test_bought_together(self, engine):
        self._seed(engine)
        assert _run(engine.get_bought_together("p1", 1)) == ["p4"]

    def test_record_order(self, engine):
        assert _run(engine.record_order(["a", "b", "c"])) == 3
        assert sorted(_run(engine.get_bought_together("b", 4))) == ["a", "c"]

    def test_personalized_from_top_categories(self, engine):
        async def seed():
            await engine.record_view("u1", "shoes", "s1")
            await engine.record_view("u1", "shoes", "s2")
            await engine.record_view("u1", "shoes", "s2")
            await engine.record_view("u1", "bags", "b1")
        _run(seed())
        assert _run(engine.get_personalized("u1", 3)) == ["s2", "s1", "b1"]

    def test_personalized_cold_identity(self, engine):
        assert _run(engine.get_personalized("nobody", 4)) == []

    def test_complete_the_look(self, engine):
        async def seed():
            await engine.index_product("top1", "tops", ["casual"])
            await engine.index_product("jeans1", "bottoms", ["casual"])
            await engine.set_complementary("tops", ["bottoms"])
        _run(seed())
        assert _run(engine.get_complete_the_look("top1", 4)) == ["jeans1"]

    def test_style_matches(self, engine):
        assert _run(engine.record_style_match("a", "b")) is True
        assert _run(engine.get_style_matches("a", 4)) == ["b"]


class TestLikes:
    def test_toggle_round_trip(self, engine):
        assert _run(engine.toggle_like("u1", "p1")) == {"liked": True}
        assert _run(engine.get_like_count("p1")) == 1
        assert _run(engine.get_liked_products("u1")) == ["p1"]
        assert _run(engine.toggle_like("u1", "p1")) == {"liked": False}
        assert _run(engine.get_like_count("p1")) == 0


class TestViewers:
    def test_reads_mirror(self, engine, store):
        _run(store.set("product:p1:viewers", "5", ttl_seconds=300))
        assert _run(engine.get_viewer_count("p1")) == 5

    def test_falls_back_to_local_rooms(self, engine):
        engine.presence.registry.join("conn-1", "p1")
        assert _run(engine.get_viewer_count("p1")) == 1

    def test_realtime_join_records_view(self, engine):
        async def scenario():
            async def sender(message):
                return None
            session = engine.presence.open_session(sender)
            await session.connect(engine.verifier.issue("u1"))
            await session.join_product("p1", "c1")
            await session.join_product("p2")
        _run(scenario())
        assert _run(engine.get_recently_viewed("u1")) == ["p2", "p1"]
        assert _run(engine.get_trending("c1", 4)) == ["p1"]
        assert _run(engine.get_viewer_count("p2")) == 1


class TestCart:
    def test_wire_format(self, engine):
        line = CartLine.model_validate({"id": "p1", "selectedSize": "M", "selectedColor": "red"})
        _run(engine.add_to_cart("u1", line))
        cart = _run(engine.add_to_cart("u1", line))
        assert cart == {
            "items": [{"id": "p1", "selectedSize": "M", "selectedColor": "red", "quantity": 2}]
        }

    def test_update_remove_clear(self, engine):
        _run(engine.add_to_cart("u1", CartLine.model_validate({"id": "p1"})))
        _run(engine.add_to_cart("u1", CartLine.model_validate({"id": "p2"})))
        assert _run(engine.update_cart_item("u1", "p1", 3))["items"][0]["quantity"] == 3
        assert [i["id"] for i in _run(engine.remove_from_cart("u1", "p1"))["items"]] == ["p2"]
        assert _run(engine.clear_cart("u1")) == {"items": []}
        assert _run(engine.get_cart("u1")) == {"items": []}


class TestDegradation:
    def test_reads_return_defaults(self, degraded_engine):
        e = degraded_engine
        assert _run(e.get_like_count("p1")) == 0
        assert _run(e.get_liked_products("u1")) == []
        assert _run(e.get_recently_viewed("u1")) == []
        assert _run(e.get_similar("p1", "c1", 4)) == []
        assert _run(e.get_trending("c1", 4)) == []
        assert _run(e.get_bought_together("p1", 4)) == []
        assert _run(e.get_complete_the_look("p1", 4)) == []
        assert _run(e.get_personalized("u1", 4)) == []
        assert _run(e.get_viewer_count("p1")) == 0
        assert _run(e.get_cart("u1")) == {"items": []}

    def test_tracking_writes_degrade(self, degraded_engine):
        assert _run(degraded_engine.record_view("u1", "c1", "p1")) is False
        assert _run(degraded_engine.record_co_occurrence("a", "b")) is False
        assert _run(degraded_engine.record_order(["a", "b"])) == 0

    def test_degradations_counted(self, degraded_engine, metrics):
        _run(degraded_engine.get_like_count("p1"))
        _run(degraded_engine.get_like_count("p2"))
        _run(degraded_engine.record_view("u1", "c1", "p1"))
        assert metrics.get_summary()["degraded"] == {"get_like_count": 2, "record_view": 1}

    def test_user_visible_writes_raise(self, degraded_engine):
        with pytest.raises(StoreUnavailable):
            _run(degraded_engine.toggle_like("u1", "p1"))
        with pytest.raises(StoreUnavailable):
            _run(degraded_engine.add_to_cart("u1", CartLine.model_validate({"id": "p1"})))
        with pytest.raises(StoreUnavailable):
            _run(degraded_engine.clear_cart("u1"))

    def test_wrong_type_value_degrades(self, engine, store):
        _run(store.set_add("product:p1:likes", "oops"))
        assert _run(engine.get_like_count("p1")) == 0

    def test_health(self, engine, degraded_engine):
        assert _run(engine.health())["status"] == "ok"
        assert _run(degraded_engine.health()) == {
            "status": "degraded", "store": "down", "live_connections": 0,
        }
