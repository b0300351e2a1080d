"""
Affinity recorder: likes, recently viewed products and viewed categories
per identity.

Identity is an opaque partition key (user id, or the client address for
anonymous visitors). Nothing here validates it.

Like toggle is a read-then-write sequence (SISMEMBER, then SADD+INCR or
SREM+DECR). Two concurrent toggles by the same identity on the same product
can both read the same state and double-count. Counts are best-effort; we do
not serialize toggles with a lock, and readers clamp negative drift to 0.
"""

from typing import List

from engagement import key_policy
from engagement.config import EngineConfig
from engagement.logger import get_logger
from engagement.store import CounterStore

logger = get_logger("affinity")


class AffinityRecorder:
    """Per-identity engagement state over the counter store."""

    def __init__(self, store: CounterStore, config: EngineConfig):
        self.store = store
        self.recently_viewed_capacity = config.recently_viewed_capacity
        self.recently_viewed_ttl = config.recently_viewed_ttl
        self.viewed_categories_ttl = config.viewed_categories_ttl

    #
    # Likes
    #

    async def toggle_like(self, identity: str, product_id: str) -> bool:
        """Flip the liked state for (identity, product). Returns the new state."""
        likes_key = key_policy.liked_products(identity)
        count_key = key_policy.like_count(product_id)

        is_liked = await self.store.set_contains(likes_key, product_id)
        if is_liked:
            await self.store.set_remove(likes_key, product_id)
            count = await self.store.decrement(count_key)
        else:
            await self.store.set_add(likes_key, product_id)
            count = await self.store.increment(count_key)

        logger.debug(
            "affinity: method=toggle_like identity=%s product_id=%s liked=%s count=%s",
            identity, product_id, not is_liked, count,
        )
        return not is_liked

    async def is_liked(self, identity: str, product_id: str) -> bool:
        return await self.store.set_contains(key_policy.liked_products(identity), product_id)

    async def get_liked_products(self, identity: str) -> List[str]:
        members = await self.store.set_members(key_policy.liked_products(identity))
        return sorted(members)

    async def get_like_count(self, product_id: str) -> int:
        raw = await self.store.get(key_policy.like_count(product_id))
        try:
            return max(int(raw or 0), 0)
        except ValueError:
            logger.warning("affinity: non-integer like count for product_id=%s value=%r", product_id, raw)
            return 0

    #
    # Recently viewed
    #

    async def record_view(self, identity: str, product_id: str) -> None:
        """
        Push product to the front of the identity's recently-viewed list.

        Push, trim and TTL refresh are submitted as one batch so readers never
        see an untrimmed list or a stale TTL.
        """
        key = key_policy.recently_viewed(identity)
        await (
            self.store.batch()
            .list_push_front(key, product_id)
            .list_trim(key, 0, self.recently_viewed_capacity - 1)
            .expire(key, self.recently_viewed_ttl)
            .execute()
        )

    async def get_recently_viewed(self, identity: str) -> List[str]:
        """Most-recent-first snapshot. Repeats are kept."""
        key = key_policy.recently_viewed(identity)
        return await self.store.list_range(key, 0, self.recently_viewed_capacity - 1)

    #
    # Viewed categories (feeds personalised recommendations)
    #

    async def record_category_view(self, identity: str, category_id: str) -> None:
        await self.store.sorted_set_incr_by(
            key_policy.viewed_categories(identity), category_id, 1,
            ttl_seconds=self.viewed_categories_ttl,
        )

    async def get_top_categories(self, identity: str, n: int = 3) -> List[str]:
        rows = await self.store.sorted_set_top_k(key_policy.viewed_categories(identity), n)
        return [category_id for category_id, _ in rows]
