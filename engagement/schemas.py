"""
Pydantic v2 schemas for the engagement API.

Field aliases keep the wire format the storefront already uses
(camelCase: productId, selectedSize, ...). Python code uses snake_case.
Request schemas use extra="forbid" except cart lines, which carry an
arbitrary product snapshot (name, price, image) that is stored verbatim.
"""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


#
# Cart
#

class CartLine(BaseModel):
    """
    One cart line. Lines merge on (id, selectedSize, selectedColor).

    `id` is the product id and doubles as the line id for update/remove.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    product_id: str = Field(..., alias="id", min_length=1, description="Product id (also the line id)")
    selected_size: Optional[str] = Field(None, alias="selectedSize")
    selected_color: Optional[str] = Field(None, alias="selectedColor")
    quantity: int = Field(1, ge=1)

    def merge_key(self) -> Tuple[str, Optional[str], Optional[str]]:
        return (self.product_id, self.selected_size, self.selected_color)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CartDocument(BaseModel):
    """Stored and returned cart shape: {"items": [...]}."""
    items: List[CartLine] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return {"items": [line.to_wire() for line in self.items]}


class UpdateCartItemRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quantity: int = Field(..., ge=1)


#
# Likes
#

class LikeToggleResponse(BaseModel):
    liked: bool


class LikedProductsResponse(BaseModel):
    likes: List[str]


class LikeCountResponse(BaseModel):
    count: int


#
# Views and recommendations
#

class RecordViewRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    product_id: str = Field(..., alias="productId", min_length=1)
    category_id: str = Field(..., alias="categoryId", min_length=1)


class RecordViewResponse(BaseModel):
    recorded: bool


class CoPurchaseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    product_ids: List[str] = Field(..., alias="productIds", min_length=2)


class CoPurchaseResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pairs: int


class RecommendationResponse(BaseModel):
    """Recommendation list for one product (or identity)."""
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(None, alias="productId")
    strategy: str
    products: List[str]


class ViewerCountResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    count: int


#
# Real-time channel
#

class SocketMessage(BaseModel):
    """Inbound websocket frame: {"event": "joinProduct", "data": {...}}."""
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


#
# Errors
#

class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
