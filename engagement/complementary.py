"""
Complementary matcher ("complete the look").

Cross-category recommendations: for a product in category C with style tags
T, look at every category registered as complementary to C and pick products
that are both in that category and tagged with one of T.

Catalog sets are owned by the catalog service. index_product() and
set_complementary() exist so that service (and seed scripts and tests) can
write them in the same layout this module reads.

Results are in discovery order (complementary category, then style tag,
both sorted), deduplicated, and collection stops as soon as k are found.
There is no ranking.
"""

from typing import Iterable, List

from engagement import key_policy
from engagement.logger import get_logger
from engagement.store import CounterStore

logger = get_logger("complementary")


class ComplementaryMatcher:

    def __init__(self, store: CounterStore):
        self.store = store

    async def get_complementary(self, product_id: str, k: int) -> List[str]:
        if k <= 0:
            return []

        category_id = await self.store.get(key_policy.product_category(product_id))
        if not category_id:
            return []
        style_tags = sorted(await self.store.set_members(key_policy.product_style_tags(product_id)))
        if not style_tags:
            return []
        complementary = sorted(
            await self.store.set_members(key_policy.complementary_categories(category_id))
        )
        if not complementary:
            logger.debug("complementary: no complementary categories for category_id=%s", category_id)
            return []

        found: List[str] = []
        seen = set()
        for comp_category in complementary:
            for tag in style_tags:
                matches = await self.store.set_intersect(
                    key_policy.category_products(comp_category),
                    key_policy.style_tag_products(tag),
                )
                for match in sorted(matches):
                    if match == product_id or match in seen:
                        continue
                    seen.add(match)
                    found.append(match)
                    if len(found) >= k:
                        return found
        return found

    #
    # Catalog-side writers
    #

    async def index_product(self, product_id: str, category_id: str, style_tags: Iterable[str]) -> None:
        batch = self.store.batch()
        batch.set(key_policy.product_category(product_id), category_id)
        batch.set_add(key_policy.category_products(category_id), product_id)
        for tag in style_tags:
            batch.set_add(key_policy.product_style_tags(product_id), tag)
            batch.set_add(key_policy.style_tag_products(tag), product_id)
        await batch.execute()

    async def set_complementary(self, category_id: str, complementary_ids: Iterable[str]) -> None:
        key = key_policy.complementary_categories(category_id)
        batch = self.store.batch().delete(key)
        for comp in complementary_ids:
            if comp != category_id:
                batch.set_add(key, comp)
        await batch.execute()
