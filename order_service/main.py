"""
Order Service — FastAPI エントリーポイント

Command (状態を変える) と Query (読むだけ) のエンドポイントを分けて並べる。
呼び出し元の識別はゲートウェイが付与するヘッダーを信頼する:
    X-User-Id / X-User-Email / X-User-Role  (無ければゲスト)

ドメインの例外は OrderServiceError ハンドラで {"message": ..., ...} に変換する。
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import carts, commands, coupons, event_store, queries
from .orders import OrderFilters
from .aggregate import TransitionMetadata
from .config import Settings, get_settings
from .db import create_database
from .domain import Identity, NonEmptyStr, OrderStatus, PlaceOrderRequest
from .errors import Forbidden, OrderServiceError, Unauthorized
from .notifications import EventPublisher

logger = logging.getLogger(__name__)


# ── Request Models ──────────────────────────────


class CancelOrderRequest(BaseModel):
    reason: Annotated[str, Field(min_length=1, max_length=500)]


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    note: str | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    reason: str | None = None


class AddCartItemRequest(BaseModel):
    product_id: NonEmptyStr
    variant_id: str | None = None
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(ge=1)


class ValidateCouponRequest(BaseModel):
    code: NonEmptyStr
    subtotal: float = Field(ge=0)


# ── Dependencies ────────────────────────────────


def get_identity(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Identity:
    return Identity(user_id=x_user_id or None, email=x_user_email, role=x_user_role or "customer")


def require_user(identity: Annotated[Identity, Depends(get_identity)]) -> Identity:
    if not identity.is_authenticated:
        raise Unauthorized("Authentication required")
    return identity


def require_admin(identity: Annotated[Identity, Depends(require_user)]) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Admin access required")
    return identity


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


IdentityDep = Annotated[Identity, Depends(get_identity)]
UserDep = Annotated[Identity, Depends(require_user)]
AdminDep = Annotated[Identity, Depends(require_admin)]
SessionDep = Annotated[AsyncSession, Depends(get_session)]
PublisherDep = Annotated[EventPublisher, Depends(get_publisher)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]

router = APIRouter()


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/orders", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    request: Request,
    identity: IdentityDep,
    publisher: PublisherDep,
    settings: SettingsDep,
):
    """注文作成コマンド"""
    order = await commands.place_order(
        request.app.state.session_factory, publisher, req, identity, settings=settings
    )
    return {
        "message": "Order placed successfully",
        "data": {
            "order": order.model_dump(mode="json"),
            "order_number": order.order_number,
            "estimated_delivery": order.shipping.estimated_delivery,
        },
    }


@router.patch("/orders/{order_number}/cancel")
async def cancel_order(
    order_number: str,
    req: CancelOrderRequest,
    identity: UserDep,
    session: SessionDep,
    publisher: PublisherDep,
    settings: SettingsDep,
):
    """顧客による注文キャンセル"""
    order = await commands.cancel_order(
        session, publisher, order_number, identity, req.reason, settings=settings
    )
    return {
        "message": "Order cancelled successfully",
        "data": {
            "order_number": order.order_number,
            "status": order.status.value,
            "cancelled_at": order.cancelled_at,
            "cancellation_reason": order.cancellation_reason,
            "refund_amount": order.payment.refund_amount,
        },
    }


@router.put("/orders/{order_number}/status")
async def update_order_status(
    order_number: str,
    req: UpdateStatusRequest,
    identity: AdminDep,
    session: SessionDep,
    publisher: PublisherDep,
    settings: SettingsDep,
):
    """管理者によるステータス変更"""
    metadata = TransitionMetadata(
        updated_by=identity.user_id,
        note=req.note,
        tracking_number=req.tracking_number,
        carrier=req.carrier,
        cancel_reason=req.reason if req.status == OrderStatus.CANCELLED else None,
        return_reason=req.reason if req.status == OrderStatus.RETURNED else None,
    )
    order = await commands.change_status(
        session, publisher, order_number, req.status, metadata, settings=settings
    )
    return {
        "message": f'Order status updated to "{order.status.value}" successfully',
        "data": order.model_dump(mode="json"),
    }


# ── Cart Endpoints ──────────────────────────────


@router.get("/cart")
async def get_cart(identity: UserDep, session: SessionDep):
    cart = await carts.get_cart(session, identity.user_id)
    return {"data": cart.model_dump(mode="json")}


@router.post("/cart/items")
async def add_cart_item(req: AddCartItemRequest, identity: UserDep, session: SessionDep):
    cart = await carts.add_item(
        session, identity.user_id, req.product_id, req.variant_id, req.quantity
    )
    return {"message": "Item added to cart successfully", "data": cart.model_dump(mode="json")}


@router.patch("/cart/items/{item_id}")
async def update_cart_item(
    item_id: str,
    req: UpdateCartItemRequest,
    identity: UserDep,
    session: SessionDep,
):
    cart = await carts.update_item(session, identity.user_id, item_id, req.quantity)
    return {"message": "Cart item updated successfully", "data": cart.model_dump(mode="json")}


@router.delete("/cart/items/{item_id}")
async def remove_cart_item(item_id: str, identity: UserDep, session: SessionDep):
    cart = await carts.remove_item(session, identity.user_id, item_id)
    return {"message": "Item removed from cart successfully", "data": cart.model_dump(mode="json")}


@router.delete("/cart")
async def clear_cart(identity: UserDep, session: SessionDep):
    cart = await carts.clear_cart(session, identity.user_id)
    return {"message": "Cart cleared successfully", "data": cart.model_dump(mode="json")}


@router.get("/cart/validate")
async def validate_cart(identity: UserDep, session: SessionDep, include_details: bool = False):
    report = await carts.validate_cart(session, identity.user_id, include_details)
    return {"message": "Cart validation completed", "data": report}


@router.post("/coupons/validate")
async def validate_coupon(req: ValidateCouponRequest, identity: IdentityDep, session: SessionDep):
    """クーポンの事前チェック(使用回数は増やさない)"""
    result = await coupons.preview(session, req.code, req.subtotal, identity.user_id)
    return {"message": "Coupon is valid", "data": result}


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/orders")
async def list_orders(
    filters: Annotated[OrderFilters, Query()],
    identity: AdminDep,
    session: SessionDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
):
    """管理者向けの注文一覧"""
    result = await queries.list_orders(session, filters, page, limit, datetime.now(timezone.utc))
    return {"message": "Orders retrieved successfully", "data": result}


@router.get("/orders/my-orders")
async def my_orders(identity: UserDep, session: SessionDep, settings: SettingsDep):
    orders = await queries.list_user_orders(
        session, identity, datetime.now(timezone.utc), settings.return_window_days
    )
    return {"data": orders, "count": len(orders)}


@router.get("/orders/track/{order_number}")
async def track_order(order_number: str, identity: IdentityDep, session: SessionDep):
    info = await queries.track_order(session, order_number, identity)
    return {"message": "Order tracking information retrieved successfully", "data": info}


@router.get("/orders/{order_number}")
async def get_order(order_number: str, identity: IdentityDep, session: SessionDep, settings: SettingsDep):
    order = await queries.get_order(session, order_number, identity)
    return {
        "data": {
            **order.model_dump(mode="json"),
            "can_be_cancelled": order.can_be_cancelled,
            "can_be_returned": order.can_be_returned(
                datetime.now(timezone.utc), settings.return_window_days
            ),
        }
    }


# ── Event Store (デバッグ用) ─────────────────────


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID, session: SessionDep):
    """指定した注文のイベント履歴を返す"""
    return await event_store.load_events(session, aggregate_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


# ── Exception Handlers ──────────────────────────


async def handle_service_error(request: Request, exc: OrderServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_body()))


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error["loc"]]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        errors.append({"field": ".".join(loc), "message": error["msg"]})
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


# ── Application ─────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    publisher: EventPublisher | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    session_factory / publisher を渡さなければ lifespan で
    DB エンジンと Redis プールを作成する。
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        redis_pool = None
        if app.state.session_factory is None:
            app.state.session_factory, engine = await create_database(settings.database_url)
        if app.state.publisher is None:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
            app.state.publisher = EventPublisher(redis_pool, settings)
        yield
        if redis_pool is not None:
            await redis_pool.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.publisher = publisher

    app.include_router(router)
    app.add_exception_handler(OrderServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    return app


app = create_app()
