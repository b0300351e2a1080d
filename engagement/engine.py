"""
Engagement engine: the boundary the storefront services call.

Wires the store-backed components together and applies one error policy:

- Read paths (counts, recommendation lists, recently viewed, cart reads)
  never raise. Any failure is logged, counted as degraded and answered with
  an empty/zero default so page rendering and checkout carry on.
- Tracking writes (views, co-purchases) also degrade: losing one event is
  preferable to failing the page or the order that produced it.
- User-visible writes (like toggle, cart mutations) raise StoreUnavailable
  so the client can show a "try again" state.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from engagement.affinity import AffinityRecorder
from engagement.cart import SessionCartStore
from engagement.complementary import ComplementaryMatcher
from engagement.config import EngineConfig
from engagement.cooccurrence import CoOccurrenceRecommender
from engagement.errors import StoreUnavailable
from engagement import key_policy
from engagement.identity import TokenVerifier
from engagement.logger import get_logger
from engagement.metrics import MetricsCollector, metrics_collector
from engagement.presence import PresenceTracker
from engagement.rate_limit import RateLimiter
from engagement.schemas import CartLine
from engagement.store import CounterStore, create_store
from engagement.trending import TrendingEngine

logger = get_logger("engine")


class EngagementEngine:

    def __init__(
        self,
        store: CounterStore,
        config: EngineConfig,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.config = config
        self.metrics = metrics or metrics_collector

        self.affinity = AffinityRecorder(store, config)
        self.co_occurrence = CoOccurrenceRecommender(store, config)
        self.trending = TrendingEngine(store, config, clock=clock)
        self.complementary = ComplementaryMatcher(store)
        self.carts = SessionCartStore(store, config)
        self.rate_limiter = RateLimiter(store, config)
        self.verifier = TokenVerifier.from_config(config)
        self.presence = PresenceTracker(store, self.verifier, config, on_view=self._on_realtime_view)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "EngagementEngine":
        return cls(create_store(config), config)

    async def _degrade(self, operation: str, default: Any, awaitable: Awaitable) -> Any:
        try:
            return await awaitable
        except StoreUnavailable as e:
            logger.warning("engine: degraded op=%s error=%s", operation, e.message)
        except Exception as e:
            logger.error("engine: degraded op=%s unexpected error=%s", operation, e, exc_info=True)
        self.metrics.record_degraded(operation)
        return default

    #
    # Likes
    #

    async def toggle_like(self, identity: str, product_id: str) -> Dict[str, bool]:
        liked = await self.affinity.toggle_like(identity, product_id)
        return {"liked": liked}

    async def get_liked_products(self, identity: str) -> List[str]:
        return await self._degrade("get_liked_products", [], self.affinity.get_liked_products(identity))

    async def get_like_count(self, product_id: str) -> int:
        return await self._degrade("get_like_count", 0, self.affinity.get_like_count(product_id))

    #
    # Views
    #

    async def _record_view(self, identity: str, category_id: str, product_id: str) -> bool:
        await self.affinity.record_view(identity, product_id)
        await self.affinity.record_category_view(identity, category_id)
        await self.trending.record_popular(category_id, product_id)
        await self.trending.record_view(category_id, product_id)
        return True

    async def record_view(self, identity: str, category_id: str, product_id: str) -> bool:
        """Fan a product view out to affinity, popularity and trending."""
        return await self._degrade(
            "record_view", False, self._record_view(identity, category_id, product_id)
        )

    async def _on_realtime_view(self, identity: str, product_id: str, category_id: Optional[str]) -> None:
        if category_id:
            await self.record_view(identity, category_id, product_id)
        else:
            await self._degrade("record_recent_view", None, self.affinity.record_view(identity, product_id))

    async def get_recently_viewed(self, identity: str) -> List[str]:
        return await self._degrade("get_recently_viewed", [], self.affinity.get_recently_viewed(identity))

    #
    # Recommendations
    #

    async def _similar(self, product_id: str, category_id: Optional[str], k: int) -> List[str]:
        by_category: List[str] = []
        if category_id:
            by_category = await self.trending.get_popular(category_id, k, exclude=product_id)
        bought_together = await self.co_occurrence.get_top(product_id, k)
        merged = list(dict.fromkeys(by_category + bought_together))
        return [pid for pid in merged if pid != product_id][:k]

    async def get_similar(self, product_id: str, category_id: Optional[str], k: int) -> List[str]:
        """Popular in the same category, then bought together; deduplicated."""
        return await self._degrade("get_similar", [], self._similar(product_id, category_id, k))

    async def get_trending(self, category_id: str, k: int) -> List[str]:
        return await self._degrade("get_trending", [], self.trending.get_trending(category_id, k))

    async def get_bought_together(self, product_id: str, k: int) -> List[str]:
        return await self._degrade("get_bought_together", [], self.co_occurrence.get_top(product_id, k))

    async def get_complete_the_look(self, product_id: str, k: int) -> List[str]:
        return await self._degrade(
            "get_complete_the_look", [], self.complementary.get_complementary(product_id, k)
        )

    async def get_style_matches(self, product_id: str, k: int) -> List[str]:
        return await self._degrade(
            "get_style_matches", [], self.co_occurrence.get_style_matches(product_id, k)
        )

    async def _personalized(self, identity: str, k: int) -> List[str]:
        categories = await self.affinity.get_top_categories(identity, self.config.personalized_category_count)
        picks: List[str] = []
        for category_id in categories:
            for pid in await self.trending.get_popular(category_id, k):
                if pid not in picks:
                    picks.append(pid)
            if len(picks) >= k:
                break
        return picks[:k]

    async def get_personalized(self, identity: str, k: int) -> List[str]:
        """Popular products from the identity's most viewed categories."""
        return await self._degrade("get_personalized", [], self._personalized(identity, k))

    async def record_co_occurrence(self, product_a: str, product_b: str) -> bool:
        async def run() -> bool:
            await self.co_occurrence.record_pair(product_a, product_b)
            return True

        return await self._degrade("record_co_occurrence", False, run())

    async def record_order(self, product_ids: Iterable[str]) -> int:
        return await self._degrade("record_order", 0, self.co_occurrence.record_order(product_ids))

    async def record_style_match(self, product_a: str, product_b: str) -> bool:
        async def run() -> bool:
            await self.co_occurrence.record_style_match(product_a, product_b)
            return True

        return await self._degrade("record_style_match", False, run())

    #
    # Live viewers
    #

    async def _viewer_count(self, product_id: str) -> int:
        raw = await self.store.get(key_policy.viewers(product_id))
        if raw is None:
            return self.presence.count(product_id)
        return max(int(raw), 0)

    async def get_viewer_count(self, product_id: str) -> int:
        """Mirrored count (visible across processes); falls back to this process's rooms."""
        fallback = self.presence.count(product_id)
        return await self._degrade("get_viewer_count", fallback, self._viewer_count(product_id))

    #
    # Cart
    #

    async def get_cart(self, identity: str) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            return (await self.carts.get_cart(identity)).to_wire()

        return await self._degrade("get_cart", {"items": []}, run())

    async def add_to_cart(self, identity: str, line: CartLine) -> Dict[str, Any]:
        return (await self.carts.add_item(identity, line)).to_wire()

    async def update_cart_item(self, identity: str, line_id: str, quantity: int) -> Dict[str, Any]:
        return (await self.carts.update_quantity(identity, line_id, quantity)).to_wire()

    async def remove_from_cart(self, identity: str, line_id: str) -> Dict[str, Any]:
        return (await self.carts.remove_item(identity, line_id)).to_wire()

    async def clear_cart(self, identity: str) -> Dict[str, Any]:
        return (await self.carts.clear_cart(identity)).to_wire()

    #
    # Catalog indexes (written by the catalog service)
    #

    async def index_product(self, product_id: str, category_id: str, style_tags: Iterable[str]) -> None:
        await self.complementary.index_product(product_id, category_id, style_tags)

    async def set_complementary(self, category_id: str, complementary_ids: Iterable[str]) -> None:
        await self.complementary.set_complementary(category_id, complementary_ids)

    #
    # Lifecycle
    #

    async def health(self) -> Dict[str, Any]:
        store_ok = await self.store.ping()
        return {
            "status": "ok" if store_ok else "degraded",
            "store": "up" if store_ok else "down",
            "live_connections": self.presence.registry.connection_count(),
        }

    async def close(self) -> None:
        await self.store.close()
