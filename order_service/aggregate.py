"""
Order Service — 注文ライフサイクル (状態遷移)

注文作成後のステータス変更はすべて transition() を通す。
遷移表はここだけに定義し、各所で条件分岐を書かない。

状態遷移:
    PENDING → CONFIRMED → PROCESSING → SHIPPED → (OUT_FOR_DELIVERY) → DELIVERED → RETURNED
    PENDING / CONFIRMED / PROCESSING → CANCELLED
    CANCELLED, RETURNED は終端

_apply_xxx: 遷移先ごとの副作用 (タイムスタンプ・配送情報・支払い状態) を計算する
"""

from datetime import datetime, timezone

from pydantic import BaseModel

from .domain import Order, OrderStatus, PaymentMethod, PaymentStatus, TrackingEntry
from .errors import InvalidTransition

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

# 支払い済み扱いでキャンセル時に返金対象となる状態
REFUNDABLE_PAYMENT = (PaymentStatus.COMPLETED, PaymentStatus.PROCESSING)


class TransitionMetadata(BaseModel):
    updated_by: str | None = None
    note: str | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    cancel_reason: str | None = None
    return_reason: str | None = None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


# ── 遷移先ごとの副作用 ──────────────────────────


def _apply_confirmed(order: Order, meta: TransitionMetadata, now: datetime) -> dict:
    return {"confirmed_at": now}


def _apply_shipped(order: Order, meta: TransitionMetadata, now: datetime) -> dict:
    shipping = order.shipping.model_copy(
        update={
            "tracking_number": meta.tracking_number or order.shipping.tracking_number,
            "carrier": meta.carrier or order.shipping.carrier,
        }
    )
    return {"shipping": shipping, "shipped_at": now}


def _apply_delivered(order: Order, meta: TransitionMetadata, now: datetime) -> dict:
    updates: dict = {
        "delivered_at": now,
        "shipping": order.shipping.model_copy(update={"actual_delivery": now}),
    }
    # 代引きは配達完了で支払い完了。返金済みを completed に戻すことはしない
    if (
        order.payment.method == PaymentMethod.CASH_ON_DELIVERY
        and order.payment.status != PaymentStatus.REFUNDED
    ):
        updates["payment"] = order.payment.model_copy(
            update={"status": PaymentStatus.COMPLETED, "paid_at": now}
        )
    return updates


def _refund(order: Order, now: datetime) -> dict:
    return {
        "payment": order.payment.model_copy(
            update={
                "status": PaymentStatus.REFUNDED,
                "refunded_at": now,
                "refund_amount": order.pricing.total,
            }
        )
    }


def _apply_cancelled(order: Order, meta: TransitionMetadata, now: datetime) -> dict:
    updates: dict = {"cancelled_at": now}
    if meta.cancel_reason:
        updates["cancellation_reason"] = meta.cancel_reason
    if order.payment.status in REFUNDABLE_PAYMENT:
        updates.update(_refund(order, now))
    return updates


def _apply_returned(order: Order, meta: TransitionMetadata, now: datetime) -> dict:
    updates: dict = {"returned_at": now, **_refund(order, now)}
    if meta.return_reason:
        updates["return_reason"] = meta.return_reason
    return updates


_HANDLERS = {
    OrderStatus.CONFIRMED: _apply_confirmed,
    OrderStatus.SHIPPED: _apply_shipped,
    OrderStatus.DELIVERED: _apply_delivered,
    OrderStatus.CANCELLED: _apply_cancelled,
    OrderStatus.RETURNED: _apply_returned,
}


def transition(
    order: Order,
    target: OrderStatus,
    metadata: TransitionMetadata | None = None,
    *,
    now: datetime | None = None,
) -> Order:
    """
    注文を target に遷移させた新しい Order を返す。元の order は変更しない。

    遷移表にない target は InvalidTransition。
    tracking には必ず 1 件追記される。
    """
    if not can_transition(order.status, target):
        raise InvalidTransition(order.status.value, target.value)

    meta = metadata or TransitionMetadata()
    now = now or datetime.now(timezone.utc)

    entry = TrackingEntry(
        status=target,
        timestamp=now,
        note=meta.note or f'Status updated from "{order.status.value}" to "{target.value}"',
        updated_by=meta.updated_by,
    )
    updates = {"status": target, "tracking": [*order.tracking, entry]}

    handler = _HANDLERS.get(target)
    if handler:
        updates.update(handler(order, meta, now))

    return order.model_copy(update=updates)
