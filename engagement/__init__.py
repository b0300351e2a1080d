"""
Engagement - real-time engagement and recommendation engine

Live product viewer counts, likes, recently viewed products, co-occurrence,
trending and complementary recommendations, and session carts, all backed by
a shared counter/set store (Redis).
"""

__version__ = '0.1.0'

from engagement.config import EngineConfig, get_config, set_config
from engagement.engine import EngagementEngine
from engagement.errors import EngagementError, InvalidIdentity, RateLimited, StoreUnavailable
from engagement.store import CounterStore, MemoryStore, RedisStore, create_store

__all__ = [
    'EngagementEngine',
    'EngineConfig',
    'get_config',
    'set_config',
    'EngagementError',
    'InvalidIdentity',
    'RateLimited',
    'StoreUnavailable',
    'CounterStore',
    'MemoryStore',
    'RedisStore',
    'create_store',
]
