"""
Fixed-window rate limiting per identity.

INCR rate-limit:{identity}; the first hit in a window sets the window TTL.
Requests beyond the limit get RateLimited (HTTP 429). If the store is down
the request is let through: a rate limiter must not take the write paths
down with it.
"""

from engagement import key_policy
from engagement.config import EngineConfig
from engagement.errors import RateLimited, StoreUnavailable
from engagement.logger import get_logger
from engagement.store import CounterStore

logger = get_logger("rate_limit")


class RateLimiter:

    def __init__(self, store: CounterStore, config: EngineConfig):
        self.store = store
        self.window_seconds = config.rate_limit_window_seconds
        self.max_requests = config.rate_limit_max_requests

    async def hit(self, identity: str) -> int:
        """Count one request. Returns the count in the current window."""
        key = key_policy.rate_limit(identity)
        try:
            count = await self.store.increment(key)
            if count == 1:
                await self.store.expire(key, self.window_seconds)
        except StoreUnavailable as e:
            logger.warning("rate_limit: store unavailable, allowing identity=%s error=%s", identity, e.message)
            return 0

        if self.max_requests > 0 and count > self.max_requests:
            logger.info("rate_limit: identity=%s exceeded %d requests", identity, self.max_requests)
            raise RateLimited(identity, self.max_requests, self.window_seconds)
        return count
