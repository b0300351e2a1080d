"""
Counter/set store for engagement data (counters, sets, sorted sets, lists).

Redis is the shared store. It is advisory data only: like counts, viewer
counts and recommendation sets are allowed to be approximate and to expire.

Two implementations share one async contract:
- RedisStore:  redis.asyncio client with a short per-call timeout. Any
               connection error, command error or timeout is raised as
               StoreUnavailable so callers can degrade instead of failing.
- MemoryStore: in-process copy of the same semantics (TTL, Redis tie
               ordering, empty containers removed). Used for tests and for
               single-process development (STORE_BACKEND=memory).

Every key is prefixed with the configured namespace: {namespace}:{key}.
All operations are atomic per key. Multi-key writes that must land together
go through a Batch, which maps to a MULTI/EXEC pipeline on Redis.
"""

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from engagement.config import EngineConfig
from engagement.errors import StoreUnavailable
from engagement.logger import get_logger

logger = get_logger("store")

ScoredMember = Tuple[str, float]


class Batch:
    """
    Commands queued for submission as one unit.

    Usage:
        batch = store.batch()
        batch.list_push_front(key, product_id)
        batch.list_trim(key, 0, 9)
        batch.expire(key, 604800)
        await batch.execute()
    """

    def __init__(self, store: "CounterStore"):
        self._store = store
        self._ops: List[Tuple[str, tuple]] = []

    def _queue(self, op: str, *args: Any) -> "Batch":
        self._ops.append((op, args))
        return self

    def increment(self, key: str) -> "Batch":
        return self._queue("increment", key)

    def decrement(self, key: str) -> "Batch":
        return self._queue("decrement", key)

    def set_add(self, key: str, member: str) -> "Batch":
        return self._queue("set_add", key, member)

    def set_remove(self, key: str, member: str) -> "Batch":
        return self._queue("set_remove", key, member)

    def sorted_set_incr_by(self, key: str, member: str, delta: float = 1) -> "Batch":
        return self._queue("sorted_set_incr_by", key, member, delta)

    def sorted_set_trim(self, key: str, keep_top_n: int) -> "Batch":
        return self._queue("sorted_set_trim", key, keep_top_n)

    def list_push_front(self, key: str, value: str) -> "Batch":
        return self._queue("list_push_front", key, value)

    def list_trim(self, key: str, start: int, stop: int) -> "Batch":
        return self._queue("list_trim", key, start, stop)

    def expire(self, key: str, ttl_seconds: int) -> "Batch":
        return self._queue("expire", key, ttl_seconds)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> "Batch":
        return self._queue("set", key, value, ttl_seconds)

    def delete(self, key: str) -> "Batch":
        return self._queue("delete", key)

    def __len__(self) -> int:
        return len(self._ops)

    async def execute(self) -> List[Any]:
        """Submit all queued commands together. Returns per-command results."""
        if not self._ops:
            return []
        ops, self._ops = self._ops, []
        return await self._store._execute_batch(ops)


class CounterStore:
    """Async contract shared by every store backend."""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace

    def _key(self, key: str) -> str:
        """Prefix key with namespace."""
        if not self.namespace:
            return key
        return f"{self.namespace}:{key}"

    def batch(self) -> Batch:
        return Batch(self)

    async def _execute_batch(self, ops: List[Tuple[str, tuple]]) -> List[Any]:
        raise NotImplementedError

    async def increment(self, key: str) -> int:
        raise NotImplementedError

    async def decrement(self, key: str) -> int:
        raise NotImplementedError

    async def set_add(self, key: str, member: str) -> bool:
        raise NotImplementedError

    async def set_remove(self, key: str, member: str) -> bool:
        raise NotImplementedError

    async def set_contains(self, key: str, member: str) -> bool:
        raise NotImplementedError

    async def set_members(self, key: str) -> Set[str]:
        raise NotImplementedError

    async def set_intersect(self, *keys: str) -> Set[str]:
        raise NotImplementedError

    async def sorted_set_incr_by(
        self, key: str, member: str, delta: float = 1, ttl_seconds: Optional[int] = None
    ) -> float:
        raise NotImplementedError

    async def sorted_set_top_k(
        self, key: str, k: Optional[int], descending: bool = True
    ) -> List[ScoredMember]:
        raise NotImplementedError

    async def sorted_set_scores(self, key: str) -> Dict[str, float]:
        raise NotImplementedError

    async def sorted_set_trim(self, key: str, keep_top_n: int) -> int:
        raise NotImplementedError

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        raise NotImplementedError

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds, or None when the key is missing or persistent."""
        raise NotImplementedError

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


#
# Redis
#

class RedisStore(CounterStore):
    """
    Redis-backed store (redis.asyncio).

    Connection priority:
    1. redis_url (e.g. rediss:// for hosted Redis)
    2. redis_host + redis_port + redis_db (local)
    """

    def __init__(self, config: EngineConfig, client: Optional[redis.Redis] = None):
        super().__init__(namespace=config.namespace)
        self._timeout = config.store_timeout_seconds

        if client is not None:
            self.client = client
        elif config.redis_url:
            self.client = redis.from_url(
                config.redis_url,
                decode_responses=True,
                socket_connect_timeout=self._timeout,
                socket_timeout=self._timeout,
            )
        else:
            self.client = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
                socket_connect_timeout=self._timeout,
                socket_timeout=self._timeout,
            )

    async def _call(self, operation: str, awaitable) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning("store: op=%s result=error error=%s", operation, e)
            raise StoreUnavailable(operation, e) from e

    async def _execute_batch(self, ops: List[Tuple[str, tuple]]) -> List[Any]:
        async def run() -> List[Any]:
            async with self.client.pipeline(transaction=True) as pipe:
                for op, args in ops:
                    self._queue_on_pipeline(pipe, op, args)
                return await pipe.execute()

        return await self._call("batch", run())

    def _queue_on_pipeline(self, pipe, op: str, args: tuple) -> None:
        if op == "increment":
            pipe.incr(self._key(args[0]))
        elif op == "decrement":
            pipe.decr(self._key(args[0]))
        elif op == "set_add":
            pipe.sadd(self._key(args[0]), args[1])
        elif op == "set_remove":
            pipe.srem(self._key(args[0]), args[1])
        elif op == "sorted_set_incr_by":
            pipe.zincrby(self._key(args[0]), args[2], args[1])
        elif op == "sorted_set_trim":
            pipe.zremrangebyrank(self._key(args[0]), 0, -(args[1] + 1))
        elif op == "list_push_front":
            pipe.lpush(self._key(args[0]), args[1])
        elif op == "list_trim":
            pipe.ltrim(self._key(args[0]), args[1], args[2])
        elif op == "expire":
            pipe.expire(self._key(args[0]), args[1])
        elif op == "set":
            pipe.set(self._key(args[0]), args[1], ex=args[2])
        elif op == "delete":
            pipe.delete(self._key(args[0]))
        else:
            raise ValueError(f"Unsupported batch operation: {op}")

    async def increment(self, key: str) -> int:
        return int(await self._call("increment", self.client.incr(self._key(key))))

    async def decrement(self, key: str) -> int:
        return int(await self._call("decrement", self.client.decr(self._key(key))))

    async def set_add(self, key: str, member: str) -> bool:
        return bool(await self._call("set_add", self.client.sadd(self._key(key), member)))

    async def set_remove(self, key: str, member: str) -> bool:
        return bool(await self._call("set_remove", self.client.srem(self._key(key), member)))

    async def set_contains(self, key: str, member: str) -> bool:
        return bool(await self._call("set_contains", self.client.sismember(self._key(key), member)))

    async def set_members(self, key: str) -> Set[str]:
        return set(await self._call("set_members", self.client.smembers(self._key(key))))

    async def set_intersect(self, *keys: str) -> Set[str]:
        if not keys:
            return set()
        prefixed = [self._key(k) for k in keys]
        return set(await self._call("set_intersect", self.client.sinter(*prefixed)))

    async def sorted_set_incr_by(
        self, key: str, member: str, delta: float = 1, ttl_seconds: Optional[int] = None
    ) -> float:
        if ttl_seconds is None:
            return float(await self._call(
                "sorted_set_incr_by", self.client.zincrby(self._key(key), delta, member)
            ))
        results = await self.batch().sorted_set_incr_by(key, member, delta).expire(key, ttl_seconds).execute()
        return float(results[0])

    async def sorted_set_top_k(
        self, key: str, k: Optional[int], descending: bool = True
    ) -> List[ScoredMember]:
        stop = -1 if not k or k <= 0 else k - 1
        if descending:
            rows = await self._call(
                "sorted_set_top_k", self.client.zrevrange(self._key(key), 0, stop, withscores=True)
            )
        else:
            rows = await self._call(
                "sorted_set_top_k", self.client.zrange(self._key(key), 0, stop, withscores=True)
            )
        return [(member, float(score)) for member, score in rows]

    async def sorted_set_scores(self, key: str) -> Dict[str, float]:
        rows = await self._call(
            "sorted_set_scores", self.client.zrange(self._key(key), 0, -1, withscores=True)
        )
        return {member: float(score) for member, score in rows}

    async def sorted_set_trim(self, key: str, keep_top_n: int) -> int:
        return int(await self._call(
            "sorted_set_trim", self.client.zremrangebyrank(self._key(key), 0, -(keep_top_n + 1))
        ))

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        return list(await self._call("list_range", self.client.lrange(self._key(key), start, stop)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", self.client.expire(self._key(key), ttl_seconds)))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = int(await self._call("ttl", self.client.ttl(self._key(key))))
        return remaining if remaining >= 0 else None

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(self._key(key)))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self._call("set", self.client.set(self._key(key), value, ex=ttl_seconds))

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", self.client.delete(self._key(key))))

    async def ping(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(await asyncio.wait_for(self.client.ping(), timeout=self._timeout))
        except Exception:
            return False

    async def flush(self) -> None:
        """Drop every key in the namespace. Maintenance and tests only."""
        async def run() -> None:
            keys = [k async for k in self.client.scan_iter(match=self._key("*"), count=100)]
            if keys:
                await self.client.delete(*keys)

        await self._call("flush", run())

    async def close(self) -> None:
        await self.client.aclose()


#
# In-process
#

class MemoryStore(CounterStore):
    """
    In-process store with Redis semantics.

    Values are kept as Redis would: strings for plain values and counters,
    Python sets for sets, lists for lists and member->score dicts for sorted
    sets. Expired keys are purged lazily on access.
    """

    def __init__(self, namespace: str = "", clock: Callable[[], float] = time.time):
        super().__init__(namespace=namespace)
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.RLock()

    # -- internals (caller holds the lock) --

    def _alive(self, key: str) -> bool:
        deadline = self._expires_at.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._data

    def _read(self, key: str, kind: type, operation: str) -> Any:
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, kind):
            raise StoreUnavailable(operation, TypeError(f"WRONGTYPE for key {key}"))
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self._data and not self._data[key] and not isinstance(self._data[key], str):
            self._data.pop(key, None)
            self._expires_at.pop(key, None)

    def _incr(self, key: str, delta: int) -> int:
        raw = self._read(key, str, "increment")
        try:
            value = int(raw or 0) + delta
        except ValueError as e:
            raise StoreUnavailable("increment", e) from e
        self._data[key] = str(value)
        return value

    def _op_increment(self, key: str) -> int:
        return self._incr(self._key(key), 1)

    def _op_decrement(self, key: str) -> int:
        return self._incr(self._key(key), -1)

    def _op_set_add(self, key: str, member: str) -> bool:
        k = self._key(key)
        members = self._read(k, set, "set_add")
        if members is None:
            members = self._data[k] = set()
        added = member not in members
        members.add(member)
        return added

    def _op_set_remove(self, key: str, member: str) -> bool:
        k = self._key(key)
        members = self._read(k, set, "set_remove")
        if not members or member not in members:
            return False
        members.discard(member)
        self._drop_if_empty(k)
        return True

    def _op_sorted_set_incr_by(self, key: str, member: str, delta: float = 1) -> float:
        k = self._key(key)
        scores = self._read(k, dict, "sorted_set_incr_by")
        if scores is None:
            scores = self._data[k] = {}
        scores[member] = float(scores.get(member, 0.0) + delta)
        return scores[member]

    def _op_sorted_set_trim(self, key: str, keep_top_n: int) -> int:
        k = self._key(key)
        scores = self._read(k, dict, "sorted_set_trim")
        if not scores or len(scores) <= keep_top_n:
            return 0
        ascending = sorted(scores.items(), key=lambda kv: (kv[1], kv[0]))
        doomed = ascending[: len(ascending) - max(keep_top_n, 0)]
        for member, _ in doomed:
            del scores[member]
        self._drop_if_empty(k)
        return len(doomed)

    def _op_list_push_front(self, key: str, value: str) -> int:
        k = self._key(key)
        items = self._read(k, list, "list_push_front")
        if items is None:
            items = self._data[k] = []
        items.insert(0, str(value))
        return len(items)

    def _op_list_trim(self, key: str, start: int, stop: int) -> bool:
        k = self._key(key)
        items = self._read(k, list, "list_trim")
        if items is None:
            return True
        self._data[k] = _slice(items, start, stop)
        self._drop_if_empty(k)
        return True

    def _op_expire(self, key: str, ttl_seconds: int) -> bool:
        k = self._key(key)
        if not self._alive(k):
            return False
        self._expires_at[k] = self._clock() + ttl_seconds
        return True

    def _op_set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        k = self._key(key)
        self._data[k] = str(value)
        if ttl_seconds:
            self._expires_at[k] = self._clock() + ttl_seconds
        else:
            self._expires_at.pop(k, None)
        return True

    def _op_delete(self, key: str) -> int:
        k = self._key(key)
        existed = self._alive(k)
        self._data.pop(k, None)
        self._expires_at.pop(k, None)
        return int(existed)

    def _run(self, op: str, *args: Any) -> Any:
        with self._lock:
            return getattr(self, f"_op_{op}")(*args)

    # -- contract --

    async def _execute_batch(self, ops: List[Tuple[str, tuple]]) -> List[Any]:
        with self._lock:
            return [getattr(self, f"_op_{op}")(*args) for op, args in ops]

    async def increment(self, key: str) -> int:
        return self._run("increment", key)

    async def decrement(self, key: str) -> int:
        return self._run("decrement", key)

    async def set_add(self, key: str, member: str) -> bool:
        return self._run("set_add", key, member)

    async def set_remove(self, key: str, member: str) -> bool:
        return self._run("set_remove", key, member)

    async def set_contains(self, key: str, member: str) -> bool:
        with self._lock:
            members = self._read(self._key(key), set, "set_contains")
            return bool(members) and member in members

    async def set_members(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._read(self._key(key), set, "set_members") or ())

    async def set_intersect(self, *keys: str) -> Set[str]:
        if not keys:
            return set()
        with self._lock:
            sets = [self._read(self._key(k), set, "set_intersect") or set() for k in keys]
            return set.intersection(*sets)

    async def sorted_set_incr_by(
        self, key: str, member: str, delta: float = 1, ttl_seconds: Optional[int] = None
    ) -> float:
        with self._lock:
            score = self._op_sorted_set_incr_by(key, member, delta)
            if ttl_seconds is not None:
                self._op_expire(key, ttl_seconds)
            return score

    async def sorted_set_top_k(
        self, key: str, k: Optional[int], descending: bool = True
    ) -> List[ScoredMember]:
        with self._lock:
            scores = self._read(self._key(key), dict, "sorted_set_top_k") or {}
            rows = sorted(scores.items(), key=lambda kv: (kv[1], kv[0]), reverse=descending)
        if k and k > 0:
            rows = rows[:k]
        return rows

    async def sorted_set_scores(self, key: str) -> Dict[str, float]:
        rows = await self.sorted_set_top_k(key, None, descending=False)
        return dict(rows)

    async def sorted_set_trim(self, key: str, keep_top_n: int) -> int:
        return self._run("sorted_set_trim", key, keep_top_n)

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        with self._lock:
            items = self._read(self._key(key), list, "list_range") or []
            return _slice(items, start, stop)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return self._run("expire", key, ttl_seconds)

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            k = self._key(key)
            if not self._alive(k) or k not in self._expires_at:
                return None
            return max(int(round(self._expires_at[k] - self._clock())), 0)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(self._key(key), str, "get")

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self._run("set", key, value, ttl_seconds)

    async def delete(self, key: str) -> int:
        return self._run("delete", key)

    async def ping(self) -> bool:
        return True

    async def flush(self) -> None:
        with self._lock:
            self._data.clear()
            self._expires_at.clear()

    def keys(self) -> Iterable[str]:
        """Live (un-expired) keys, namespace included. Debugging and tests."""
        with self._lock:
            return [k for k in list(self._data) if self._alive(k)]


def _slice(items: List[str], start: int, stop: int) -> List[str]:
    """LRANGE/LTRIM index semantics: inclusive stop, negatives count from the end."""
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if stop < 0:
        stop = n + stop
    if start > stop or start >= n:
        return []
    return items[start: stop + 1]


def create_store(config: EngineConfig) -> CounterStore:
    """Build the store selected by config.store_backend."""
    backend = (config.store_backend or "redis").lower()
    if backend == "memory":
        logger.info("Using in-process memory store (namespace=%s)", config.namespace)
        return MemoryStore(namespace=config.namespace)
    if backend == "redis":
        logger.info("Using Redis store (namespace=%s, timeout_ms=%s)", config.namespace, config.store_timeout_ms)
        return RedisStore(config)
    raise ValueError(f"Unknown store backend: {config.store_backend}")
