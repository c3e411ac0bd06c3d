"""
Order Service — クエリハンドラ (読み取り側)

注文ドキュメントを読み出し、画面向けの形に整える。状態は変更しない。
"""

import math
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from . import orders
from .domain import Identity, Order, OrderStatus
from .errors import OrderNotFound, Unauthorized

# 通常フローの進行順。キャンセル・返品はこの外
STEPS = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

MILESTONES = {
    OrderStatus.PENDING: ("Order Placed", "Your order has been received and is being processed"),
    OrderStatus.CONFIRMED: ("Order Confirmed", "Your order has been confirmed and is being prepared"),
    OrderStatus.PROCESSING: ("Processing", "Your order is being prepared for shipment"),
    OrderStatus.SHIPPED: ("Shipped", "Your order has been shipped and is on its way"),
    OrderStatus.OUT_FOR_DELIVERY: ("Out for Delivery", "Your order is out for delivery"),
    OrderStatus.DELIVERED: ("Delivered", "Your order has been delivered successfully"),
    OrderStatus.CANCELLED: ("Order Cancelled", "Your order has been cancelled"),
    OrderStatus.RETURNED: ("Order Returned", "Your order has been returned"),
}


def _first_reached(order: Order, status: OrderStatus) -> datetime | None:
    return next((t.timestamp for t in order.tracking if t.status == status), None)


def _milestone_time(order: Order, status: OrderStatus) -> datetime | None:
    return {
        OrderStatus.PENDING: order.placed_at,
        OrderStatus.CONFIRMED: order.confirmed_at,
        OrderStatus.SHIPPED: order.shipped_at,
        OrderStatus.DELIVERED: order.delivered_at,
        OrderStatus.CANCELLED: order.cancelled_at,
        OrderStatus.RETURNED: order.returned_at,
    }.get(status) or _first_reached(order, status)


def _milestone(order: Order, status: OrderStatus, complete: bool) -> dict:
    label, description = MILESTONES[status]
    return {
        "status": status.value,
        "label": label,
        "timestamp": _milestone_time(order, status),
        "is_complete": complete,
        "description": description,
    }


def _milestones(order: Order) -> list[dict]:
    if order.status == OrderStatus.CANCELLED:
        return [
            _milestone(order, OrderStatus.PENDING, True),
            _milestone(order, OrderStatus.CONFIRMED, order.confirmed_at is not None),
            _milestone(order, OrderStatus.CANCELLED, True),
        ]

    # 返品済みの注文は配達完了までの全ステップを通過している
    reached = len(STEPS) if order.status == OrderStatus.RETURNED else STEPS.index(order.status) + 1
    milestones = []
    for index, status in enumerate(STEPS):
        complete = index < reached
        if status == OrderStatus.OUT_FOR_DELIVERY and complete:
            # shipped → delivered と直接進んだ場合は通過していない
            complete = order.status == status or _first_reached(order, status) is not None
        milestones.append(_milestone(order, status, complete))
    if order.status == OrderStatus.RETURNED:
        milestones.append(_milestone(order, OrderStatus.RETURNED, True))
    return milestones


def tracking_info(order: Order) -> dict:
    """注文追跡ページ向けの表示用データ。"""
    milestones = _milestones(order)
    if order.status in (OrderStatus.CANCELLED, OrderStatus.RETURNED):
        current_step = len(milestones)
    else:
        current_step = STEPS.index(order.status) + 1

    return {
        "order_number": order.order_number,
        "current_status": order.status.value,
        "placed_at": order.placed_at,
        "estimated_delivery": order.shipping.estimated_delivery,
        "actual_delivery": order.shipping.actual_delivery,
        "tracking_number": order.shipping.tracking_number,
        "carrier": order.shipping.carrier,
        "timeline": [
            {
                "status": t.status.value,
                "timestamp": t.timestamp,
                "note": t.note,
                "is_complete": True,
            }
            for t in order.tracking
        ],
        "milestones": milestones,
        "current_step": current_step,
        "total_steps": len(milestones),
        "summary": {
            "total_amount": order.pricing.total,
            "item_count": len(order.items),
            "status": order.status.value,
            "can_be_cancelled": order.can_be_cancelled,
        },
    }


async def track_order(session: AsyncSession, order_number: str, identity: Identity) -> dict:
    """
    注文番号で追跡情報を返す。ゲストも注文番号だけで追跡できる。
    ログイン中の一般ユーザーは自分の注文しか見えない。
    """
    order = await orders.find_by_order_number(session, order_number)
    if order is None:
        raise OrderNotFound(order_number)
    if identity.is_authenticated and not identity.is_admin and order.user_id != identity.user_id:
        raise OrderNotFound(order_number)
    return tracking_info(order)


async def get_order(session: AsyncSession, order_number: str, identity: Identity) -> Order:
    """注文詳細。本人か管理者のみ。それ以外には存在しないものとして 404 を返す。"""
    if not identity.is_authenticated:
        raise Unauthorized("Authentication required")
    order = await orders.find_by_order_number(session, order_number)
    if order is None or (not identity.is_admin and order.user_id != identity.user_id):
        raise OrderNotFound(order_number)
    return order


async def list_user_orders(
    session: AsyncSession,
    identity: Identity,
    now: datetime,
    return_window_days: int,
) -> list[dict]:
    """ログインユーザーの注文一覧(新しい順)。"""
    if not identity.is_authenticated:
        raise Unauthorized("Authentication required")
    return [
        {
            "order_number": order.order_number,
            "status": order.status.value,
            "total": order.pricing.total,
            "item_count": order.total_items,
            "payment_status": order.payment.status.value,
            "placed_at": order.placed_at,
            "can_be_cancelled": order.can_be_cancelled,
            "can_be_returned": order.can_be_returned(now, return_window_days),
        }
        for order in await orders.list_user_orders(session, identity.user_id)
    ]


async def list_orders(
    session: AsyncSession,
    filters: orders.OrderFilters,
    page: int,
    limit: int,
    now: datetime,
) -> dict:
    """管理者向けの注文一覧。絞り込み・検索・並び替え・ページングに対応する。"""
    found, total_count = await orders.list_orders(session, filters, page, limit)
    total_pages = math.ceil(total_count / limit)
    return {
        "orders": [
            {
                **order.model_dump(mode="json"),
                "item_count": order.total_items,
                "customer_name": order.shipping_address.full_name,
                "customer_email": order.guest_email or order.shipping_address.email,
                "age_in_days": (now - order.placed_at).days,
            }
            for order in found
        ],
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_count": total_count,
            "limit": limit,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }
