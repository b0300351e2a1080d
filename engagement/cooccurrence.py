"""
Co-occurrence recommender ("bought/viewed together").

Each product keeps a sorted set of partner -> score. Updates are symmetric
(A->B and B->A in the same MULTI/EXEC) and both sides are trimmed back to
the top N by score right after the increment. Tie order among equal scores
is whatever the store gives (Redis: lexicographic by member).
"""

from itertools import combinations
from typing import Iterable, List

from engagement import key_policy
from engagement.config import EngineConfig
from engagement.logger import get_logger
from engagement.store import CounterStore

logger = get_logger("cooccurrence")


class CoOccurrenceRecommender:

    def __init__(self, store: CounterStore, config: EngineConfig):
        self.store = store
        self.top_n = config.co_occurrence_top_n
        self.style_match_ttl = config.style_match_ttl

    async def record_pair(self, product_a: str, product_b: str) -> None:
        """Bump the pair score in both directions and re-trim both sets."""
        if product_a == product_b:
            return
        key_a = key_policy.bought_with(product_a)
        key_b = key_policy.bought_with(product_b)
        await (
            self.store.batch()
            .sorted_set_incr_by(key_a, product_b, 1)
            .sorted_set_incr_by(key_b, product_a, 1)
            .sorted_set_trim(key_a, self.top_n)
            .sorted_set_trim(key_b, self.top_n)
            .execute()
        )

    async def record_order(self, product_ids: Iterable[str]) -> int:
        """Record every distinct pair in one order. Returns pairs recorded."""
        distinct = list(dict.fromkeys(pid for pid in product_ids if pid))
        pairs = 0
        for product_a, product_b in combinations(distinct, 2):
            await self.record_pair(product_a, product_b)
            pairs += 1
        logger.debug("cooccurrence: method=record_order products=%d pairs=%d", len(distinct), pairs)
        return pairs

    async def get_top(self, product_id: str, k: int) -> List[str]:
        """Up to k highest-scoring partners. Cold product -> []."""
        if k <= 0:
            return []
        rows = await self.store.sorted_set_top_k(key_policy.bought_with(product_id), k)
        return [partner for partner, _ in rows]

    async def record_style_match(self, product_a: str, product_b: str) -> None:
        if product_a == product_b:
            return
        key_a = key_policy.style_matches(product_a)
        key_b = key_policy.style_matches(product_b)
        await (
            self.store.batch()
            .sorted_set_incr_by(key_a, product_b, 1)
            .sorted_set_incr_by(key_b, product_a, 1)
            .expire(key_a, self.style_match_ttl)
            .expire(key_b, self.style_match_ttl)
            .execute()
        )

    async def get_style_matches(self, product_id: str, k: int) -> List[str]:
        if k <= 0:
            return []
        rows = await self.store.sorted_set_top_k(key_policy.style_matches(product_id), k)
        return [partner for partner, _ in rows]
