"""
Engagement API - FastAPI application.

HTTP routes for likes, views, recommendations and the session cart, plus the
/ws/products presence channel. Identity on HTTP comes from a Bearer token,
then the X-Identity header, then the client address (anonymous visitors).

Run locally:
    uvicorn engagement.main:app --port 8002
"""

import time as _time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from engagement import __version__
from engagement.config import EngineConfig, get_config
from engagement.engine import EngagementEngine
from engagement.errors import EngagementError, InvalidIdentity, RateLimited
from engagement.logger import get_logger, set_level
from engagement.metrics import metrics_collector, record_request_metrics
from engagement.presence import ViewerSession
from engagement.schemas import (
    CartLine,
    CoPurchaseRequest,
    CoPurchaseResponse,
    ErrorResponse,
    LikeCountResponse,
    LikedProductsResponse,
    LikeToggleResponse,
    RecommendationResponse,
    RecordViewRequest,
    RecordViewResponse,
    SocketMessage,
    UpdateCartItemRequest,
    ViewerCountResponse,
)
from engagement.store import CounterStore, create_store

logger = get_logger("main")

JOIN_EVENTS = {"joinProduct", "join"}
LEAVE_EVENTS = {"leaveProduct", "leave"}
MAX_LIMIT = 50

router = APIRouter()


#
# Dependencies
#

def get_engine(request: Request) -> EngagementEngine:
    return request.app.state.engine


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_identity: Optional[str] = Header(None),
) -> str:
    """
    Bearer token subject, else X-Identity, else the client address.

    A Bearer token that fails verification is rejected (401) rather than
    silently falling back to an anonymous identity.
    """
    token = _bearer_token(authorization)
    if token:
        return get_engine(request).verifier.verify(token)
    if x_identity and x_identity.strip():
        return x_identity.strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


async def rate_limited_identity(
    identity: str = Depends(resolve_identity),
    engine: EngagementEngine = Depends(get_engine),
) -> str:
    await engine.rate_limiter.hit(identity)
    return identity


def _limit(request: Request, limit: Optional[int]) -> int:
    if limit is None:
        return get_engine(request).config.default_limit
    return limit


#
# Middleware and error handling
#

class LatencyMetricsMiddleware(BaseHTTPMiddleware):
    """Records latency and error counts per route template (not per concrete path)."""

    async def dispatch(self, request: StarletteRequest, call_next) -> StarletteResponse:
        if request.method == "OPTIONS":
            return await call_next(request)
        t0 = _time.perf_counter()
        response = await call_next(request)
        duration_ms = round((_time.perf_counter() - t0) * 1000, 1)

        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        endpoint = f"{request.method} {path}"
        record_request_metrics(endpoint, duration_ms, is_error=response.status_code >= 500)
        logger.debug("[LATENCY] %s -> %d  %.1fms", endpoint, response.status_code, duration_ms)
        return response


async def engagement_error_handler(request: Request, exc: EngagementError) -> JSONResponse:
    logger.info(
        "main: %s %s -> %d error=%s", request.method, request.url.path, exc.status_code, exc.code
    )
    body = ErrorResponse(error=exc.code, message=exc.message, details=exc.details or None)
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.details.get("window_seconds", 0))}
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)


#
# Health Check Endpoints
#

@router.get("/health")
async def health_check(engine: EngagementEngine = Depends(get_engine)):
    """Store connectivity and live connection count."""
    return await engine.health()


@router.get("/metrics")
def get_metrics():
    """Latency percentiles, error rates and degraded operations."""
    return metrics_collector.get_summary()


#
# Likes
#

@router.post("/api/likes/{product_id}", response_model=LikeToggleResponse)
async def toggle_like(
    product_id: str,
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    result = await engine.toggle_like(identity, product_id)
    return LikeToggleResponse(**result)


@router.get("/api/likes/user", response_model=LikedProductsResponse)
async def liked_products(
    identity: str = Depends(resolve_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    return LikedProductsResponse(likes=await engine.get_liked_products(identity))


@router.get("/api/likes/product/{product_id}", response_model=LikeCountResponse)
async def like_count(product_id: str, engine: EngagementEngine = Depends(get_engine)):
    return LikeCountResponse(count=await engine.get_like_count(product_id))


#
# Views and recommendations
#

@router.post("/api/views", response_model=RecordViewResponse)
async def record_view(
    body: RecordViewRequest,
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    recorded = await engine.record_view(identity, body.category_id, body.product_id)
    return RecordViewResponse(recorded=recorded)


@router.get("/api/users/me/recently-viewed", response_model=RecommendationResponse)
async def recently_viewed(
    identity: str = Depends(resolve_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    products = await engine.get_recently_viewed(identity)
    return RecommendationResponse(strategy="recently_viewed", products=products)


@router.get("/api/users/me/recommendations", response_model=RecommendationResponse)
async def personalized(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    identity: str = Depends(resolve_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    products = await engine.get_personalized(identity, _limit(request, limit))
    return RecommendationResponse(strategy="personalized", products=products)


@router.get("/api/products/{product_id}/similar", response_model=RecommendationResponse)
async def similar_products(
    request: Request,
    product_id: str,
    category: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    engine: EngagementEngine = Depends(get_engine),
):
    products = await engine.get_similar(product_id, category, _limit(request, limit))
    return RecommendationResponse(product_id=product_id, strategy="similar", products=products)


@router.get("/api/products/{product_id}/bought-together", response_model=RecommendationResponse)
async def bought_together(
    request: Request,
    product_id: str,
    limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    engine: EngagementEngine = Depends(get_engine),
):
    products = await engine.get_bought_together(product_id, _limit(request, limit))
    return RecommendationResponse(product_id=product_id, strategy="bought_together", products=products)


@router.get("/api/products/{product_id}/trending", response_model=RecommendationResponse)
async def trending(
    request: Request,
    product_id: str,
    category: str = Query(..., min_length=1),
    limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    engine: EngagementEngine = Depends(get_engine),
):
    products = await engine.get_trending(category, _limit(request, limit))
    return RecommendationResponse(product_id=product_id, strategy="trending", products=products)


@router.get("/api/products/{product_id}/complete-the-look", response_model=RecommendationResponse)
async def complete_the_look(
    request: Request,
    product_id: str,
    limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    engine: EngagementEngine = Depends(get_engine),
):
    products = await engine.get_complete_the_look(product_id, _limit(request, limit))
    return RecommendationResponse(product_id=product_id, strategy="complete_the_look", products=products)


@router.get("/api/products/{product_id}/viewers", response_model=ViewerCountResponse)
async def viewer_count(product_id: str, engine: EngagementEngine = Depends(get_engine)):
    return ViewerCountResponse(product_id=product_id, count=await engine.get_viewer_count(product_id))


@router.post("/api/orders/co-purchase", response_model=CoPurchaseResponse)
async def co_purchase(
    body: CoPurchaseRequest,
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    """Called by order processing once an order is placed."""
    return CoPurchaseResponse(pairs=await engine.record_order(body.product_ids))


#
# Cart
#

@router.get("/api/cart")
async def get_cart(
    identity: str = Depends(resolve_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    return await engine.get_cart(identity)


@router.post("/api/cart")
async def add_to_cart(
    line: CartLine,
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    return await engine.add_to_cart(identity, line)


@router.patch("/api/cart/{item_id}")
async def update_cart_item(
    item_id: str,
    body: UpdateCartItemRequest,
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    return await engine.update_cart_item(identity, item_id, body.quantity)


@router.delete("/api/cart/{item_id}")
async def remove_from_cart(
    item_id: str,
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    return await engine.remove_from_cart(identity, item_id)


@router.delete("/api/cart")
async def clear_cart(
    identity: str = Depends(rate_limited_identity),
    engine: EngagementEngine = Depends(get_engine),
):
    return await engine.clear_cart(identity)


#
# Presence channel
#

async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"event": "error", "data": {"message": message}})


async def _dispatch(session: ViewerSession, websocket: WebSocket, raw: str) -> None:
    try:
        message = SocketMessage.model_validate_json(raw)
    except ValidationError:
        await _send_error(websocket, "expected {\"event\": ..., \"data\": {...}}")
        return

    product_id = message.data.get("productId")
    if not isinstance(product_id, str) or not product_id:
        await _send_error(websocket, "data.productId is required")
        return

    if message.event in JOIN_EVENTS:
        category_id = message.data.get("categoryId")
        if not isinstance(category_id, str):
            category_id = None
        await session.join_product(product_id, category_id)
    elif message.event in LEAVE_EVENTS:
        await session.leave_product(product_id)
    else:
        await _send_error(websocket, f"unknown event: {message.event}")


@router.websocket("/ws/products")
async def product_viewers(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Live viewer counts.

    Inbound:  {"event": "joinProduct" | "leaveProduct", "data": {"productId": ..., "categoryId": ...}}
    Outbound: {"event": "viewerCount", "data": {"productId": ..., "count": n}}
    """
    engine: EngagementEngine = websocket.app.state.engine
    token = token or _bearer_token(websocket.headers.get("authorization"))

    session = engine.presence.open_session(websocket.send_json)
    try:
        identity = await session.connect(token)
    except InvalidIdentity:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    metrics_collector.connection_opened()
    logger.info("main: websocket connection=%s identity=%s opened", session.connection_id, identity)
    try:
        while True:
            raw = await websocket.receive_text()
            await _dispatch(session, websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await session.disconnect()
        metrics_collector.connection_closed()
        logger.info("main: websocket connection=%s closed", session.connection_id)


#
# Application factory
#

def create_app(config: Optional[EngineConfig] = None, store: Optional[CounterStore] = None) -> FastAPI:
    """Build the API around one engine (and one presence registry)."""
    config = config or get_config()
    set_level(config.log_level)
    engine = EngagementEngine(store or create_store(config), config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if await engine.store.ping():
            logger.info("Store reachable (backend=%s namespace=%s)", config.store_backend, config.namespace)
        else:
            logger.warning("Store not reachable at startup; engagement features will degrade")
        yield
        await engine.close()

    app = FastAPI(
        title="Engagement Engine",
        description="Live viewer counts, likes, recommendations and session carts",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LatencyMetricsMiddleware)
    app.add_exception_handler(EngagementError, engagement_error_handler)
    app.include_router(router)
    return app


app = create_app()


#
# Development Server
#

if __name__ == "__main__":
    uvicorn.run(
        "engagement.main:app",
        host="0.0.0.0",
        port=8002,
        reload=True
    )
