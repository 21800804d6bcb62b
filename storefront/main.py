"""
Storefront — FastAPI エントリーポイント

CQRS に従い、Command (POST/PUT/DELETE) と Query (GET) を分ける。
ストア・Redis・設定は create_app() で組み立てて app.state に置き、
依存関数経由でハンドラに渡す(テストではインメモリストアを注入する)。

    uvicorn storefront.main:create_app --factory
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import create_async_engine

from . import commands, queries
from .auth import (
    CurrentUser,
    RemoteAuthProvider,
    SessionAuthProvider,
    get_current_user,
    require_admin,
)
from .config import Settings
from .errors import StorefrontError
from .events import EventPublisher
from .memory_store import InMemoryDocumentStore
from .repositories import Repositories
from .store import DocumentStore, SqlDocumentStore

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class AddToCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    quantity: int = 1


class UpdateCartItemRequest(BaseModel):
    quantity: int


class PlaceOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipping_address_id: str = Field(alias="shippingAddressId")
    billing_address_id: str | None = Field(None, alias="billingAddressId")
    payment_method: str | None = Field(None, alias="paymentMethod")


class UpdateStatusRequest(BaseModel):
    status: str


# ── 依存関数 ─────────────────────────────────────


def get_repos(request: Request) -> Repositories:
    return request.app.state.repos


def get_events(request: Request) -> EventPublisher:
    return request.app.state.events


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


router = APIRouter(prefix="/api/v1")


# ── Cart ─────────────────────────────────────────


@router.get("/cart")
async def get_cart(
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    cart = await commands.get_or_create_cart(repos, user.id)
    return {"success": True, "data": cart}


@router.post("/cart/add")
async def add_to_cart(
    req: AddToCartRequest,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    cart = await commands.add_to_cart(repos, user.id, req.product_id, req.quantity)
    return {"success": True, "data": cart}


@router.put("/cart/update/{item_id}")
async def update_cart_item(
    item_id: str,
    req: UpdateCartItemRequest,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    cart = await commands.update_cart_item(repos, user.id, item_id, req.quantity)
    return {"success": True, "data": cart}


@router.delete("/cart/remove/{item_id}")
async def remove_cart_item(
    item_id: str,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    cart = await commands.remove_cart_item(repos, user.id, item_id)
    return {"success": True, "data": cart}


@router.delete("/cart/clear")
async def clear_cart(
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    cart = await commands.clear_cart(repos, user.id)
    return {"success": True, "data": cart}


# ── Orders: Command ──────────────────────────────


@router.post("/orders")
async def place_order(
    req: PlaceOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
    events: EventPublisher = Depends(get_events),
    settings: Settings = Depends(get_settings),
):
    """カートから注文を作成する(チェックアウト)"""
    order = await commands.place_order(
        repos, events, settings,
        user.id,
        req.shipping_address_id,
        req.billing_address_id,
        req.payment_method,
    )
    return {"success": True, "data": order}


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
    events: EventPublisher = Depends(get_events),
    settings: Settings = Depends(get_settings),
):
    """注文をキャンセルし在庫を戻す"""
    order = await commands.cancel_order(repos, events, settings, user.id, order_id)
    return {"success": True, "message": "Order cancelled", "data": order}


@router.post("/orders/{order_id}/reorder")
async def reorder_items(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    cart = await commands.reorder_items(repos, user.id, order_id)
    return {"success": True, "data": cart}


# ── Orders: Query ────────────────────────────────


@router.get("/orders")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = None,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    orders, pagination = await queries.list_orders(repos, user.id, page, limit, status)
    return {"success": True, "data": orders, "pagination": pagination}


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repos),
):
    order = await queries.get_order(repos, user.id, order_id)
    return {"success": True, "data": order}


# ── Admin ────────────────────────────────────────


@router.get("/admin/orders")
async def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: str | None = None,
    search: str | None = None,
    date_from: datetime | None = Query(None, alias="dateFrom"),
    date_to: datetime | None = Query(None, alias="dateTo"),
    _admin: CurrentUser = Depends(require_admin),
    repos: Repositories = Depends(get_repos),
):
    orders, pagination = await queries.list_all_orders(
        repos, page, limit, status, search, date_from, date_to
    )
    return {"success": True, "data": orders, "pagination": pagination}


@router.get("/admin/orders/{order_id}")
async def admin_get_order(
    order_id: str,
    _admin: CurrentUser = Depends(require_admin),
    repos: Repositories = Depends(get_repos),
):
    order = await queries.get_any_order(repos, order_id)
    return {"success": True, "data": order}


@router.put("/admin/orders/{order_id}/status")
async def admin_update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    _admin: CurrentUser = Depends(require_admin),
    repos: Repositories = Depends(get_repos),
    events: EventPublisher = Depends(get_events),
    settings: Settings = Depends(get_settings),
):
    order = await commands.update_order_status(repos, events, settings, order_id, req.status)
    return {"success": True, "message": "Order status updated", "data": order}


# ── App ──────────────────────────────────────────


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        return InMemoryDocumentStore()
    return SqlDocumentStore(create_async_engine(settings.database_url, echo=False))


def create_app(
    settings: Settings | None = None,
    store: DocumentStore | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = store or build_store(settings)
    owns_redis = redis is None
    if redis is None:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.initialize()
        yield
        if owns_redis:
            await redis.aclose()
        await store.close()

    app = FastAPI(title="Storefront Service", lifespan=lifespan)
    repos = Repositories(store)
    app.state.settings = settings
    app.state.repos = repos
    app.state.events = EventPublisher(redis)
    if settings.auth_service_url:
        app.state.auth = RemoteAuthProvider(repos, settings.auth_service_url)
    else:
        app.state.auth = SessionAuthProvider(repos, settings.session_cookie_name)

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": {"code": exc.code, "message": exc.message}},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "storefront"}

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
