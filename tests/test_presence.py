"""
Tests for the presence tracker: session state machine, room broadcasts,
viewer-count mirror and cleanup on disconnect.
"""

import asyncio
import random
from collections import defaultdict

import pytest

from engagement.errors import InvalidIdentity
from engagement.identity import TokenVerifier
from engagement.presence import (
    VIEWER_COUNT_EVENT,
    ConnectionState,
    PresenceTracker,
    ViewerRegistry,
)

from conftest import TEST_SECRET


def _run(coro):
    return asyncio.run(coro)


class RecordingSender:
    """Collects outbound messages for one connection."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    def counts(self, product_id):
        return [
            m["data"]["count"] for m in self.messages
            if m["event"] == VIEWER_COUNT_EVENT and m["data"]["productId"] == product_id
        ]


@pytest.fixture
def verifier():
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def tracker(store, verifier, config):
    return PresenceTracker(store, verifier, config)


async def _open(tracker, verifier, identity):
    sender = RecordingSender()
    session = tracker.open_session(sender)
    await session.connect(verifier.issue(identity))
    return session, sender


class TestConnect:
    def test_valid_token(self, tracker, verifier):
        async def scenario():
            session, _ = await _open(tracker, verifier, "u1")
            return session
        session = _run(scenario())
        assert session.state is ConnectionState.CONNECTED
        assert session.identity == "u1"

    def test_invalid_token_disconnects(self, tracker):
        session = tracker.open_session(RecordingSender())
        with pytest.raises(InvalidIdentity):
            _run(session.connect("not-a-jwt"))
        assert session.state is ConnectionState.DISCONNECTED
        assert tracker.registry.connection_count() == 0

    def test_missing_token(self, tracker):
        session = tracker.open_session(RecordingSender())
        with pytest.raises(InvalidIdentity) as exc:
            _run(session.connect(None))
        assert exc.value.reason == "no token provided"

    def test_join_before_connect_rejected(self, tracker):
        session = tracker.open_session(RecordingSender())
        with pytest.raises(RuntimeError):
            _run(session.join_product("p1"))


class SlowSender(RecordingSender):
    """Sender whose delivery can be slowed down after the room is set up."""

    def __init__(self):
        super().__init__()
        self.delay = 0.0

    async def __call__(self, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        await super().__call__(message)


class TestRooms:
    def test_join_broadcasts_room_size(self, tracker, verifier):
        async def scenario():
            a, sender_a = await _open(tracker, verifier, "u1")
            b, sender_b = await _open(tracker, verifier, "u2")
            await a.join_product("p7")
            await b.join_product("p7")
            return sender_a, sender_b
        sender_a, sender_b = _run(scenario())
        assert sender_a.counts("p7") == [1, 2]
        assert sender_b.counts("p7") == [2]

    def test_overlapping_joins_end_on_latest_count(self, tracker, verifier):
        async def scenario():
            senders = {}
            for name in ("w0", "w1", "w2", "a", "b"):
                sender = SlowSender()
                session = tracker.open_session(sender, connection_id=name)
                await session.connect(verifier.issue(name))
                senders[name] = (session, sender)
            for name in ("w0", "w1", "w2"):
                await senders[name][0].join_product("p")
            for _, sender in senders.values():
                sender.delay = 0.05

            async def late_join():
                await asyncio.sleep(0.01)
                await senders["b"][0].join_product("p")

            await asyncio.gather(senders["a"][0].join_product("p"), late_join())
            return {name: sender.counts("p")[-1] for name, (_, sender) in senders.items()}

        last_seen = _run(scenario())
        assert tracker.count("p") == 5
        assert last_seen == {"w0": 5, "w1": 5, "w2": 5, "a": 5, "b": 5}

    def test_broadcast_only_to_room(self, tracker, verifier):
        async def scenario():
            a, sender_a = await _open(tracker, verifier, "u1")
            b, sender_b = await _open(tracker, verifier, "u2")
            await a.join_product("p1")
            await b.join_product("p2")
            return sender_a, sender_b
        sender_a, sender_b = _run(scenario())
        assert sender_a.counts("p2") == []
        assert sender_b.counts("p1") == []

    def test_disconnect_decrements_for_remaining_viewer(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            b, sender_b = await _open(tracker, verifier, "u2")
            await a.join_product("p7")
            await b.join_product("p7")
            await a.disconnect()
            return a, sender_b
        a, sender_b = _run(scenario())
        assert sender_b.counts("p7")[-1] == 1
        assert tracker.count("p7") == 1
        assert a.state is ConnectionState.DISCONNECTED

    def test_switching_product_leaves_previous_room(self, tracker, verifier):
        async def scenario():
            a, sender_a = await _open(tracker, verifier, "u1")
            b, sender_b = await _open(tracker, verifier, "u2")
            await b.join_product("p1")
            await a.join_product("p1")
            await a.join_product("p2")
            return a, sender_b
        a, sender_b = _run(scenario())
        assert tracker.count("p1") == 1
        assert tracker.count("p2") == 1
        assert sender_b.counts("p1") == [1, 2, 1]
        assert tracker.registry.room_of(a.connection_id) == "p2"

    def test_leave_room_not_in_is_noop(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
            await a.leave_product("p2")
            return a
        a = _run(scenario())
        assert a.state is ConnectionState.IN_ROOM
        assert tracker.count("p1") == 1

    def test_leave_returns_to_connected(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
            return a, await a.leave_product("p1")
        a, count = _run(scenario())
        assert count == 0
        assert a.state is ConnectionState.CONNECTED
        assert a.product_id is None

    def test_rejoin_same_product_keeps_single_membership(self, tracker, verifier):
        async def scenario():
            a, sender_a = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
            await a.join_product("p1")
            return sender_a
        sender_a = _run(scenario())
        assert tracker.count("p1") == 1
        assert sender_a.counts("p1") == [1, 1]

    def test_empty_product_id_rejected(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("")
        with pytest.raises(ValueError):
            _run(scenario())


class TestDisconnect:
    def test_idempotent(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
            await a.disconnect()
            await a.disconnect()
            return a
        a = _run(scenario())
        assert a.state is ConnectionState.DISCONNECTED
        assert tracker.count("p1") == 0

    def test_cleanup_survives_cancellation(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
            task = asyncio.create_task(a.disconnect())
            await asyncio.sleep(0)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            for _ in range(10):
                await asyncio.sleep(0)
            return a
        a = _run(scenario())
        assert tracker.count("p1") == 0
        assert a.state is ConnectionState.DISCONNECTED
        assert tracker.registry.connection_count() == 0

    def test_operations_after_disconnect_rejected(self, tracker, verifier):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.disconnect()
            await a.join_product("p1")
        with pytest.raises(RuntimeError):
            _run(scenario())


class TestMirrorAndForwarding:
    def test_count_mirrored_with_ttl(self, tracker, verifier, store, config):
        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
        _run(scenario())
        assert _run(store.get("product:p1:viewers")) == "1"
        assert _run(store.ttl("product:p1:viewers")) == config.viewer_mirror_ttl

    def test_store_failure_does_not_break_presence(self, failing_store, verifier, config):
        tracker = PresenceTracker(failing_store, verifier, config)

        async def scenario():
            a, sender_a = await _open(tracker, verifier, "u1")
            await a.join_product("p1")
            return sender_a
        sender_a = _run(scenario())
        assert sender_a.counts("p1") == [1]

    def test_failing_sender_is_skipped(self, tracker, verifier):
        async def broken(message):
            raise ConnectionResetError("socket closed")

        async def scenario():
            bad = tracker.open_session(broken)
            await bad.connect(verifier.issue("u1"))
            await bad.join_product("p1")
            good, sender_good = await _open(tracker, verifier, "u2")
            await good.join_product("p1")
            return sender_good
        sender_good = _run(scenario())
        assert sender_good.counts("p1") == [2]

    def test_join_forwards_view(self, store, verifier, config):
        seen = []

        async def on_view(identity, product_id, category_id):
            seen.append((identity, product_id, category_id))

        tracker = PresenceTracker(store, verifier, config, on_view=on_view)

        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            await a.join_product("p1", "c1")
            await a.join_product("p2")
        _run(scenario())
        assert seen == [("u1", "p1", "c1"), ("u1", "p2", None)]

    def test_failing_view_handler_does_not_break_join(self, store, verifier, config):
        async def on_view(identity, product_id, category_id):
            raise RuntimeError("downstream down")

        tracker = PresenceTracker(store, verifier, config, on_view=on_view)

        async def scenario():
            a, _ = await _open(tracker, verifier, "u1")
            return await a.join_product("p1")
        assert _run(scenario()) == 1


class TestRegistry:
    def test_join_other_room_requires_leave(self):
        registry = ViewerRegistry()
        registry.join("c1", "p1")
        with pytest.raises(ValueError):
            registry.join("c1", "p2")

    def test_leave_unknown_room(self):
        assert ViewerRegistry().leave("c1", "p1") == 0

    def test_trackers_do_not_share_rooms(self, store, verifier, config):
        first = PresenceTracker(store, verifier, config)
        second = PresenceTracker(store, verifier, config)
        first.registry.join("c1", "p1")
        assert second.count("p1") == 0


class TestRandomSequences:
    def test_counts_match_room_membership(self, tracker, verifier):
        rng = random.Random(11)
        products = ["p1", "p2", "p3"]

        async def scenario():
            sessions = [await _open(tracker, verifier, f"u{i}") for i in range(6)]
            for _ in range(300):
                index = rng.randrange(len(sessions))
                session, _sender = sessions[index]
                action = rng.random()
                if session.state is ConnectionState.DISCONNECTED:
                    sessions[index] = await _open(tracker, verifier, session.identity)
                    continue
                if action < 0.5:
                    await session.join_product(rng.choice(products))
                elif action < 0.85:
                    await session.leave_product(session.product_id or rng.choice(products))
                else:
                    await session.disconnect()

                rooms = defaultdict(set)
                for s, _sender in sessions:
                    if s.product_id is not None:
                        rooms[s.product_id].add(s.connection_id)
                for pid in products:
                    assert tracker.count(pid) == len(rooms[pid])
                    assert tracker.registry.members(pid) == rooms[pid]
                    for s, sender in sessions:
                        if s.product_id == pid:
                            assert sender.counts(pid)[-1] == tracker.count(pid)
                for s, _sender in sessions:
                    assert tracker.registry.room_of(s.connection_id) == s.product_id
        _run(scenario())
