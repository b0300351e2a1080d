"""
Presence tracker: live "N people are viewing this" counts.

Each websocket connection gets a ViewerSession, a small state machine:

    UNAUTHENTICATED --connect(ok)--> CONNECTED --join--> IN_ROOM(pid)
          |                              ^                  |
          | connect(bad token)           +------leave-------+
          v                                                 |
    DISCONNECTED <-------------------disconnect-------------+

A connection watches at most one product: joining a new product leaves the
old room first. Disconnect always leaves the current room, even when the
surrounding task is being cancelled, so no count keeps a phantom viewer.

Counts come from the in-process ViewerRegistry (authoritative for this
process). Every change is broadcast to the connections in that room only,
then mirrored to product:{pid}:viewers with a short TTL for other readers.
The registry is owned by a PresenceTracker instance; nothing is global.
"""

import asyncio
import threading
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from engagement import key_policy
from engagement.config import EngineConfig
from engagement.errors import InvalidIdentity, StoreUnavailable
from engagement.identity import TokenVerifier
from engagement.logger import get_logger
from engagement.store import CounterStore

logger = get_logger("presence")

Sender = Callable[[Dict[str, Any]], Awaitable[None]]
ViewHandler = Callable[[str, str, Optional[str]], Awaitable[Any]]

VIEWER_COUNT_EVENT = "viewerCount"


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CONNECTED = "connected"
    IN_ROOM = "in_room"
    DISCONNECTED = "disconnected"


class ViewerRegistry:
    """
    In-process rooms: connection -> product, product -> connections,
    connection -> sender.

    Methods are synchronous and lock-protected, so each one is a single
    atomic step from the event loop's point of view.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rooms: Dict[str, str] = {}
        self._viewers: Dict[str, Set[str]] = {}
        self._senders: Dict[str, Sender] = {}

    def register(self, connection_id: str, sender: Sender) -> None:
        with self._lock:
            self._senders[connection_id] = sender

    def unregister(self, connection_id: str) -> None:
        """Stop delivering to a connection. Room membership is left to leave()."""
        with self._lock:
            self._senders.pop(connection_id, None)

    def join(self, connection_id: str, product_id: str) -> int:
        with self._lock:
            current = self._rooms.get(connection_id)
            if current is not None and current != product_id:
                raise ValueError(
                    f"connection {connection_id} is still in room {current}; leave it first"
                )
            self._rooms[connection_id] = product_id
            room = self._viewers.setdefault(product_id, set())
            room.add(connection_id)
            return len(room)

    def leave(self, connection_id: str, product_id: str) -> int:
        with self._lock:
            if self._rooms.get(connection_id) == product_id:
                del self._rooms[connection_id]
            room = self._viewers.get(product_id)
            if room is None:
                return 0
            room.discard(connection_id)
            if not room:
                del self._viewers[product_id]
                return 0
            return len(room)

    def room_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._rooms.get(connection_id)

    def count(self, product_id: str) -> int:
        with self._lock:
            return len(self._viewers.get(product_id, ()))

    def members(self, product_id: str) -> Set[str]:
        with self._lock:
            return set(self._viewers.get(product_id, ()))

    def senders_for(self, product_id: str) -> List[Tuple[str, Sender]]:
        with self._lock:
            return [
                (cid, self._senders[cid])
                for cid in self._viewers.get(product_id, ())
                if cid in self._senders
            ]

    def connection_count(self) -> int:
        with self._lock:
            return len(self._senders)


class ViewerSession:
    """State machine for one connection. Transitions run one at a time."""

    def __init__(self, tracker: "PresenceTracker", connection_id: str, sender: Sender):
        self.tracker = tracker
        self.connection_id = connection_id
        self.sender = sender
        self.state = ConnectionState.UNAUTHENTICATED
        self.identity: Optional[str] = None
        self.product_id: Optional[str] = None
        self._lock = asyncio.Lock()

    async def connect(self, token: Optional[str]) -> str:
        """Verify the identity token. A bad token ends the session immediately."""
        async with self._lock:
            if self.state is not ConnectionState.UNAUTHENTICATED:
                raise RuntimeError(f"connect() called in state {self.state.value}")
            try:
                identity = self.tracker.verifier.verify(token)
            except InvalidIdentity as e:
                self.state = ConnectionState.DISCONNECTED
                logger.info("presence: connection=%s rejected reason=%s", self.connection_id, e.reason)
                raise
            self.identity = identity
            self.tracker.registry.register(self.connection_id, self.sender)
            self.state = ConnectionState.CONNECTED
            logger.debug("presence: connection=%s identity=%s connected", self.connection_id, identity)
            return identity

    async def join_product(self, product_id: str, category_id: Optional[str] = None) -> int:
        if not product_id:
            raise ValueError("productId is required")
        async with self._lock:
            self._require_open("join_product")
            if self.product_id is not None:
                await self._leave(self.product_id)

            self.tracker.registry.join(self.connection_id, product_id)
            self.product_id = product_id
            self.state = ConnectionState.IN_ROOM

            count = await self.tracker.publish(product_id)
            await self.tracker.forward_view(self.identity, product_id, category_id)
            return count

    async def leave_product(self, product_id: str) -> int:
        """Leave `product_id`. Leaving a room this connection is not in is a no-op."""
        if not product_id:
            raise ValueError("productId is required")
        async with self._lock:
            self._require_open("leave_product")
            if self.product_id != product_id:
                return self.tracker.count(product_id)
            return await self._leave(product_id)

    async def disconnect(self) -> None:
        """Final transition. Runs the room cleanup even if the caller is cancelled."""
        if self.state is ConnectionState.DISCONNECTED:
            return
        await asyncio.shield(self._cleanup())

    async def _cleanup(self) -> None:
        async with self._lock:
            if self.state is ConnectionState.DISCONNECTED:
                return
            self.tracker.registry.unregister(self.connection_id)
            if self.product_id is not None:
                await self._leave(self.product_id)
            self.state = ConnectionState.DISCONNECTED
            logger.debug("presence: connection=%s disconnected", self.connection_id)

    async def _leave(self, product_id: str) -> int:
        self.tracker.registry.leave(self.connection_id, product_id)
        self.product_id = None
        self.state = ConnectionState.CONNECTED
        return await self.tracker.publish(product_id)

    def _require_open(self, operation: str) -> None:
        if self.state in (ConnectionState.UNAUTHENTICATED, ConnectionState.DISCONNECTED):
            raise RuntimeError(f"{operation}() called in state {self.state.value}")


class PresenceTracker:
    """Owns the viewer registry; broadcasts counts and forwards view events."""

    def __init__(
        self,
        store: CounterStore,
        verifier: TokenVerifier,
        config: EngineConfig,
        on_view: Optional[ViewHandler] = None,
        registry: Optional[ViewerRegistry] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.on_view = on_view
        self.registry = registry or ViewerRegistry()
        self.mirror_ttl = config.viewer_mirror_ttl
        self._publish_locks: Dict[str, asyncio.Lock] = {}

    def open_session(self, sender: Sender, connection_id: Optional[str] = None) -> ViewerSession:
        return ViewerSession(self, connection_id or uuid.uuid4().hex, sender)

    def count(self, product_id: str) -> int:
        return self.registry.count(product_id)

    async def publish(self, product_id: str) -> int:
        """
        Broadcast the current count to the room, then mirror it to the store.

        Publishes for one product run one at a time and read the count only
        once they hold the product lock, so the last message every viewer
        receives carries the latest count.
        """
        lock = self._publish_locks.setdefault(product_id, asyncio.Lock())
        async with lock:
            count = max(self.registry.count(product_id), 0)
            await self._broadcast(product_id, count)
            await self._mirror(product_id, count)
        return count

    async def _broadcast(self, product_id: str, count: int) -> None:
        message = {"event": VIEWER_COUNT_EVENT, "data": {"productId": product_id, "count": count}}
        for connection_id, sender in self.registry.senders_for(product_id):
            try:
                await sender(message)
            except Exception as e:
                # The dead connection's own disconnect will clean its room up
                logger.warning(
                    "presence: broadcast failed connection=%s product_id=%s error=%s",
                    connection_id, product_id, e,
                )

    async def _mirror(self, product_id: str, count: int) -> None:
        try:
            await self.store.set(key_policy.viewers(product_id), count, ttl_seconds=self.mirror_ttl)
        except StoreUnavailable as e:
            logger.warning("presence: viewer mirror skipped product_id=%s error=%s", product_id, e.message)

    async def forward_view(self, identity: Optional[str], product_id: str, category_id: Optional[str]) -> None:
        if self.on_view is None or identity is None:
            return
        try:
            await self.on_view(identity, product_id, category_id)
        except Exception as e:
            logger.warning(
                "presence: view forwarding failed identity=%s product_id=%s error=%s",
                identity, product_id, e,
            )
