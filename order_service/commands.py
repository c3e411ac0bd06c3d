"""
Order Service — コマンドハンドラ (注文の作成と状態変更)

place_order の流れ (1 つのトランザクション):
    1. 明細をカタログから組み立てる (価格は必ずカタログの値)
    2. 価格計算
    3. クーポンの検証と使用回数の加算
    4. 在庫の引き当て (条件付き減算)
    5. 注文番号の採番と注文の登録
    6. OrderPlaced をイベントストアに追記
    7. カートを converted にしてクリア
    → commit
    8. Redis へ OrderPlaced を発行、注文確認の送信を依頼 (失敗しても注文は有効)

どこかで失敗すればロールバックされ、在庫もクーポン使用回数も元のまま。
注文番号が衝突した場合は新しいセッションで 1 からやり直す。
"""

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import aggregate, carts, catalog, coupons, event_store, inventory, orders
from .aggregate import TransitionMetadata
from .config import Settings, get_settings
from .domain import (
    Identity,
    LineItem,
    Order,
    OrderStatus,
    PaymentInfo,
    PlaceOrderRequest,
    ProductSnapshot,
    ShippingInfo,
    TrackingEntry,
    VariantInfo,
)
from .errors import (
    ConcurrentModification,
    DuplicateOrderNumber,
    InvalidTransition,
    OrderNotFound,
    PlacementTimeout,
    ValidationError,
)
from .events import OrderPlaced, OrderStatusChanged
from .notifications import EventPublisher
from .pricing import compute_pricing, estimate_delivery

logger = logging.getLogger(__name__)

def generate_order_number(now: datetime) -> str:
    """ORD-YYYYMMDD-HHMMSS-NNN (NNN は 000〜999 の乱数)"""
    return f"ORD-{now:%Y%m%d-%H%M%S}-{random.randrange(1000):03d}"


# ── 注文作成 ────────────────────────────────────


def _validate_request(request: PlaceOrderRequest, identity: Identity) -> None:
    if not identity.is_authenticated and request.guest_info is None:
        raise ValidationError(
            "Guest information is required for guest orders",
            errors=[{"field": "guest_info", "message": "Required for guest orders"}],
        )
    if not identity.is_authenticated and not request.cart_items:
        raise ValidationError(
            "Cart items are required for guest orders or user must be logged in",
            errors=[{"field": "cart_items", "message": "Required for guest orders"}],
        )
    if not request.same_as_billing and request.billing_address is None:
        raise ValidationError(
            "Billing address is required",
            errors=[{"field": "billing_address", "message": "Required when same_as_billing is false"}],
        )


async def _line_items(
    session: AsyncSession,
    request: PlaceOrderRequest,
    identity: Identity,
) -> tuple[list[LineItem], bool]:
    """
    注文明細を組み立てる。(明細, カートから作ったか) を返す。

    cart_items があればそれを使い、無ければログインユーザーの永続カートを使う。
    どちらの場合も単価はカタログから取り直す。
    """
    from_cart = not request.cart_items
    if from_cart:
        cart = await carts.get_cart(session, identity.user_id)
        if cart.is_empty:
            raise ValidationError("Cart is empty")
        sources = [(i.product_id, i.variant_id, i.quantity) for i in cart.items]
    else:
        sources = [(i.product_id, i.variant_id, i.quantity) for i in request.cart_items]

    items = []
    for product_id, variant_id, quantity in sources:
        product = await catalog.get_product(session, product_id)
        check = inventory.check_item(product, product_id, variant_id, quantity)
        price, discount_price = check.product.unit_prices(check.variant)
        variant = check.variant
        items.append(
            LineItem(
                product_id=product_id,
                variant_id=variant_id,
                variant=VariantInfo(
                    variant_id=variant.id, color=variant.color, size=variant.size, sku=variant.sku
                )
                if variant
                else None,
                quantity=quantity,
                unit_price=price,
                unit_discount_price=discount_price,
                product_snapshot=ProductSnapshot(
                    name=check.product.name,
                    image=check.product.image or "",
                    category=check.product.category or "Unknown",
                    slug=check.product.slug,
                ),
            )
        )

    if not items:
        raise ValidationError("No items to order")
    return items, from_cart


def _placed_event(order: Order) -> OrderPlaced:
    return OrderPlaced(
        order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        guest_email=order.guest_email,
        item_count=order.total_items,
        total=order.pricing.total,
        coupon_code=order.coupon.code if order.coupon else None,
        timestamp=order.placed_at,
    )


async def _place_order_once(
    session: AsyncSession,
    request: PlaceOrderRequest,
    identity: Identity,
    settings: Settings,
    now: datetime,
    order_number_factory: Callable[[datetime], str],
) -> Order:
    items, from_cart = await _line_items(session, request, identity)
    address = request.shipping_address

    # クーポンは割引前の小計で検証する
    base = compute_pricing(items, request.shipping_method, address, settings=settings)
    application = None
    if request.coupon_code:
        application = await coupons.validate_and_apply(
            session, request.coupon_code, base.subtotal, identity.user_id, now
        )
    pricing = compute_pricing(
        items,
        request.shipping_method,
        address,
        application.coupon if application else None,
        settings=settings,
    )

    await inventory.reserve(session, items)

    order_number = order_number_factory(now)
    if await orders.exists(session, order_number):
        raise DuplicateOrderNumber(order_number)

    guest = request.guest_info if not identity.is_authenticated else None
    order = Order(
        id=uuid4(),
        order_number=order_number,
        user_id=identity.user_id,
        guest_email=guest.email if guest else None,
        guest_phone=guest.phone if guest else None,
        items=items,
        shipping_address=address,
        billing_address=address if request.same_as_billing else request.billing_address,
        same_as_billing=request.same_as_billing,
        payment=PaymentInfo(method=request.payment_method),
        pricing=pricing,
        coupon=application.snapshot() if application else None,
        shipping=ShippingInfo(
            method=request.shipping_method,
            cost=pricing.shipping_cost,
            estimated_delivery=estimate_delivery(request.shipping_method, now),
        ),
        tracking=[TrackingEntry(status=OrderStatus.PENDING, timestamp=now, note="Order placed")],
        notes=request.notes,
        placed_at=now,
        version=1,
    )
    await orders.insert(session, order)

    await event_store.append_event(session, order, _placed_event(order))

    if from_cart:
        await carts.convert_and_clear(session, identity.user_id)

    await session.commit()
    return order


async def place_order(
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    request: PlaceOrderRequest,
    identity: Identity,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
    order_number_factory: Callable[[datetime], str] = generate_order_number,
) -> Order:
    """
    注文作成コマンド

    1 回の試行ごとに新しいセッションを開き、placement_timeout_seconds で打ち切る。
    注文番号の衝突 (DuplicateOrderNumber) のときだけ order_number_attempts 回まで再試行する。
    """
    settings = settings or get_settings()
    _validate_request(request, identity)

    order = None
    last_number = None
    for attempt in range(1, settings.order_number_attempts + 1):
        placed_at = now or datetime.now(timezone.utc)
        try:
            async with asyncio.timeout(settings.placement_timeout_seconds):
                async with session_factory() as session:
                    order = await _place_order_once(
                        session, request, identity, settings, placed_at, order_number_factory
                    )
        except TimeoutError as e:
            logger.error("Order placement timed out after %.1fs", settings.placement_timeout_seconds)
            raise PlacementTimeout(settings.placement_timeout_seconds) from e
        except DuplicateOrderNumber as e:
            last_number = e.order_number
            logger.warning(
                "Order number %s already taken (attempt %d/%d)",
                e.order_number,
                attempt,
                settings.order_number_attempts,
            )
            continue
        break

    if order is None:
        logger.error("Could not generate a unique order number")
        raise DuplicateOrderNumber(last_number)

    logger.info(
        "Order %s placed: total=%.2f items=%d",
        order.order_number,
        order.pricing.total,
        order.total_items,
    )

    await publisher.publish_order_event("OrderPlaced", _placed_event(order))
    recipient = order.guest_email or identity.email or order.shipping_address.email
    await publisher.send_order_confirmation(order, recipient)
    return order


# ── ステータス変更 ──────────────────────────────


def _should_restock(order: Order, target: OrderStatus, settings: Settings) -> bool:
    if order.restocked:
        return False
    if target == OrderStatus.CANCELLED:
        return settings.restock_on_cancel
    if target == OrderStatus.RETURNED:
        return settings.restock_on_return
    return False


async def _apply_transition(
    session: AsyncSession,
    publisher: EventPublisher,
    order: Order,
    target: OrderStatus,
    metadata: TransitionMetadata,
    settings: Settings,
    now: datetime,
) -> Order:
    updated = aggregate.transition(order, target, metadata, now=now)

    if _should_restock(order, target, settings):
        count = await inventory.restock(session, order.items)
        logger.info("Restocked %d line items for order %s", count, order.order_number)
        updated = updated.model_copy(update={"restocked": True})

    saved = await orders.save(session, updated, order.version)

    event = OrderStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        from_status=order.status.value,
        to_status=target.value,
        updated_by=metadata.updated_by,
        payment_status=saved.payment.status.value,
        refund_amount=saved.payment.refund_amount,
        restocked=saved.restocked,
        timestamp=now,
    )
    try:
        await event_store.append_event(session, saved, event)
    except IntegrityError as e:
        raise ConcurrentModification(order.order_number) from e

    await session.commit()
    logger.info("Order %s: %s -> %s", order.order_number, order.status.value, target.value)

    await publisher.publish_order_event("OrderStatusChanged", event)
    return saved


async def change_status(
    session: AsyncSession,
    publisher: EventPublisher,
    order_number: str,
    target: OrderStatus,
    metadata: TransitionMetadata | None = None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Order:
    """管理者によるステータス変更コマンド"""
    settings = settings or get_settings()
    order = await orders.find_by_order_number(session, order_number)
    if order is None:
        raise OrderNotFound(order_number)
    return await _apply_transition(
        session,
        publisher,
        order,
        target,
        metadata or TransitionMetadata(),
        settings,
        now or datetime.now(timezone.utc),
    )


async def cancel_order(
    session: AsyncSession,
    publisher: EventPublisher,
    order_number: str,
    identity: Identity,
    reason: str,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Order:
    """
    顧客による注文キャンセルコマンド

    自分の注文以外は存在しないものとして扱う (404)。
    """
    settings = settings or get_settings()
    order = await orders.find_by_order_number(session, order_number)
    if order is None or order.user_id is None or order.user_id != identity.user_id:
        raise OrderNotFound(order_number)
    if not order.can_be_cancelled:
        raise InvalidTransition(
            order.status.value,
            OrderStatus.CANCELLED.value,
            f'Cannot cancel order in "{order.status.value}" status',
        )

    metadata = TransitionMetadata(
        updated_by=identity.user_id,
        note=f"Order cancelled by customer. Reason: {reason}",
        cancel_reason=reason,
    )
    return await _apply_transition(
        session,
        publisher,
        order,
        OrderStatus.CANCELLED,
        metadata,
        settings,
        now or datetime.now(timezone.utc),
    )
