"""
Trending velocity engine.

Views are counted per category in hourly buckets
(category:{cid}:hourlyViews:{floor(ts / 3600)}) that live for two hours, so
at any moment the current and the previous bucket exist. Trending ranks the
products seen in the current bucket by

    velocity = current_views - previous_views (0 if absent)

Known limitation: if the previous bucket already expired (no traffic for over
an hour) every product's previous count is 0, so quiet categories look like
they are accelerating. Velocity can also be negative; ranking handles it.

The same view also feeds the long-lived popularity set used for "similar
products" (category:{cid}:popularProducts, 30 days).
"""

import time
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from engagement import key_policy
from engagement.config import EngineConfig
from engagement.logger import get_logger
from engagement.store import CounterStore

logger = get_logger("trending")


def hour_bucket(timestamp: float, bucket_seconds: int = 3600) -> int:
    """Bucket index for a unix timestamp in seconds."""
    return int(timestamp // bucket_seconds)


def compute_velocity(
    current: Mapping[str, float],
    previous: Mapping[str, float],
) -> List[Tuple[str, float]]:
    """
    Rank products seen in the current bucket by change since the previous one.

    Products only present in `previous` are ignored. Sort is descending by
    velocity and stable, so ties keep the order of `current`.
    """
    velocities = [
        (product_id, float(score) - float(previous.get(product_id, 0)))
        for product_id, score in current.items()
    ]
    return sorted(velocities, key=lambda pv: pv[1], reverse=True)


class TrendingEngine:

    def __init__(
        self,
        store: CounterStore,
        config: EngineConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.clock = clock
        self.bucket_seconds = config.bucket_seconds
        self.hourly_views_ttl = config.hourly_views_ttl
        self.popular_products_ttl = config.popular_products_ttl

    def current_bucket(self) -> int:
        return hour_bucket(self.clock(), self.bucket_seconds)

    async def record_view(self, category_id: str, product_id: str) -> None:
        """Count one view in the current hourly bucket and refresh its TTL."""
        key = key_policy.hourly_views(category_id, self.current_bucket())
        await self.store.sorted_set_incr_by(key, product_id, 1, ttl_seconds=self.hourly_views_ttl)

    async def bucket_scores(self, category_id: str, bucket: int) -> Dict[str, float]:
        return await self.store.sorted_set_scores(key_policy.hourly_views(category_id, bucket))

    async def get_trending(self, category_id: str, k: int) -> List[str]:
        if k <= 0:
            return []
        bucket = self.current_bucket()
        current = await self.bucket_scores(category_id, bucket)
        if not current:
            return []
        previous = await self.bucket_scores(category_id, bucket - 1)
        ranked = compute_velocity(current, previous)
        logger.debug(
            "trending: category_id=%s bucket=%d current=%d previous=%d",
            category_id, bucket, len(current), len(previous),
        )
        return [product_id for product_id, _ in ranked[:k]]

    #
    # Category popularity ("similar products")
    #

    async def record_popular(self, category_id: str, product_id: str) -> None:
        await self.store.sorted_set_incr_by(
            key_policy.popular_products(category_id), product_id, 1,
            ttl_seconds=self.popular_products_ttl,
        )

    async def get_popular(
        self, category_id: str, k: int, exclude: Optional[str] = None
    ) -> List[str]:
        """Most viewed products in a category, optionally without one product."""
        if k <= 0:
            return []
        # One extra row so excluding the current product still leaves k
        fetch = k + 1 if exclude else k
        rows = await self.store.sorted_set_top_k(key_policy.popular_products(category_id), fetch)
        return [pid for pid, _ in rows if pid != exclude][:k]
