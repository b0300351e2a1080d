"""
Session cart store.

The cart is one JSON document per identity at cart:{identity}:

    {"items": [{"id": "p1", "selectedSize": "M", "selectedColor": "black", "quantity": 2, ...}]}

Every mutation rewrites the whole document and refreshes its 7-day TTL.
Adding a line that matches an existing (id, size, color) adds to its
quantity instead of appending a duplicate. Inventory is not checked here;
that is the checkout service's job.

Read-modify-write is not atomic: two tabs adding at the same instant can
lose one update. Same trade-off as the other engagement counters.
"""

import json
from typing import List, Optional

from pydantic import ValidationError

from engagement import key_policy
from engagement.config import EngineConfig
from engagement.logger import get_logger
from engagement.schemas import CartDocument, CartLine
from engagement.store import CounterStore

logger = get_logger("cart")


class SessionCartStore:

    def __init__(self, store: CounterStore, config: EngineConfig):
        self.store = store
        self.ttl = config.cart_ttl

    async def _load(self, identity: str) -> CartDocument:
        raw = await self.store.get(key_policy.cart(identity))
        if not raw:
            return CartDocument()
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("cart: unreadable document identity=%s error=%s", identity, e)
            return CartDocument()

        items = data.get("items", []) if isinstance(data, dict) else None
        if not isinstance(items, list):
            logger.warning("cart: unexpected document shape identity=%s type=%s", identity, type(data).__name__)
            return CartDocument()

        lines: List[CartLine] = []
        for item in items:
            try:
                lines.append(CartLine.model_validate(item))
            except ValidationError as e:
                logger.warning("cart: dropping invalid line identity=%s error=%s", identity, e.errors()[:1])
        return CartDocument(items=lines)

    async def _save(self, identity: str, cart: CartDocument) -> CartDocument:
        await self.store.set(
            key_policy.cart(identity),
            json.dumps(cart.to_wire()),
            ttl_seconds=self.ttl,
        )
        return cart

    async def get_cart(self, identity: str) -> CartDocument:
        return await self._load(identity)

    async def add_item(self, identity: str, line: CartLine) -> CartDocument:
        cart = await self._load(identity)
        existing = self._find_match(cart, line)
        if existing is not None:
            existing.quantity += line.quantity
        else:
            cart.items.append(line)
        logger.info(
            "cart: method=add_item identity=%s product_id=%s quantity=%s merged=%s",
            identity, line.product_id, line.quantity, existing is not None,
        )
        return await self._save(identity, cart)

    async def update_quantity(self, identity: str, line_id: str, quantity: int) -> CartDocument:
        """Set the quantity of the first line with this id. Unknown id leaves lines unchanged."""
        if quantity < 1:
            raise ValueError("quantity must be at least 1; use remove_item to drop a line")
        cart = await self._load(identity)
        for line in cart.items:
            if line.product_id == line_id:
                line.quantity = quantity
                break
        return await self._save(identity, cart)

    async def remove_item(self, identity: str, line_id: str) -> CartDocument:
        """Remove every line with this id (all size/color variants)."""
        cart = await self._load(identity)
        cart.items = [line for line in cart.items if line.product_id != line_id]
        return await self._save(identity, cart)

    async def clear_cart(self, identity: str) -> CartDocument:
        await self.store.delete(key_policy.cart(identity))
        return CartDocument()

    @staticmethod
    def _find_match(cart: CartDocument, line: CartLine) -> Optional[CartLine]:
        key = line.merge_key()
        for existing in cart.items:
            if existing.merge_key() == key:
                return existing
        return None
