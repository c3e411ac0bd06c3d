"""
Order Service — クーポン

クーポンの検索・検証・使用回数の加算。

検証の順序:
    開始前 → 期限切れ → 使用上限 → 最低購入金額 → ユーザー制限

使用回数の加算は「上限未満なら +1」の条件付き UPDATE で行い、
注文作成と同じトランザクションで commit する。注文作成が失敗すれば
加算もロールバックされるので、使用回数が"漏れる"ことはない。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import orders
from .domain import Coupon, CouponSnapshot
from .errors import (
    CouponExhausted,
    CouponExpired,
    CouponNotEligible,
    CouponNotFound,
    MinimumPurchaseNotMet,
)
from .pricing import coupon_discount

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


@dataclass(frozen=True, slots=True)
class CouponApplication:
    coupon: Coupon
    discount: float

    def snapshot(self) -> CouponSnapshot:
        return CouponSnapshot(
            code=self.coupon.code,
            discount_type=self.coupon.discount_type,
            discount_value=self.coupon.discount_value,
            applied_discount=self.discount,
        )


# ── ストア ──────────────────────────────────────


def _from_row(row) -> Coupon:
    data = dict(row._mapping)
    data["specific_users"] = json.loads(data["specific_users"] or "[]")
    return Coupon(**data)


async def find_by_code(session: AsyncSession, code: str) -> Coupon | None:
    """有効(is_active)なクーポンをコードで検索する。大文字小文字は区別しない。"""
    result = await session.execute(
        text("SELECT * FROM coupons WHERE code = :code AND is_active = :active"),
        {"code": normalize_code(code), "active": True},
    )
    row = result.fetchone()
    return _from_row(row) if row else None


async def add_coupon(session: AsyncSession, coupon: Coupon) -> None:
    """クーポンを登録する。commit は呼び出し側が行う。"""
    await session.execute(
        text("""
            INSERT INTO coupons
                (id, code, name, discount_type, discount_value, min_purchase,
                 max_discount, usage_count, usage_limit, start_date, expires_at,
                 is_active, first_time_only, specific_users)
            VALUES
                (:id, :code, :name, :discount_type, :discount_value, :min_purchase,
                 :max_discount, :usage_count, :usage_limit, :start_date, :expires_at,
                 :is_active, :first_time_only, :specific_users)
        """),
        {
            **coupon.model_dump(exclude={"start_date", "expires_at", "specific_users"}),
            "code": normalize_code(coupon.code),
            "discount_type": coupon.discount_type.value,
            "start_date": coupon.start_date.isoformat() if coupon.start_date else None,
            "expires_at": coupon.expires_at.isoformat(),
            "specific_users": json.dumps(coupon.specific_users),
        },
    )


async def increment_usage(session: AsyncSession, coupon_id: str) -> bool:
    """使用回数を 1 増やす。上限に達していれば何もせず False。"""
    result = await session.execute(
        text("""
            UPDATE coupons
            SET usage_count = usage_count + 1
            WHERE id = :id
              AND (usage_limit IS NULL OR usage_count < usage_limit)
        """),
        {"id": coupon_id},
    )
    return result.rowcount > 0


# ── 検証 ────────────────────────────────────────


def evaluate(
    coupon: Coupon,
    subtotal: float,
    *,
    user_id: str | None,
    prior_orders: int,
    now: datetime,
) -> None:
    """クーポンが今回の注文に使えるか検証する。使えなければ CouponError を送出する。"""
    if coupon.start_date and coupon.start_date > now:
        raise CouponNotEligible(coupon.code, "Coupon is not active yet")
    if coupon.expires_at < now:
        raise CouponExpired(coupon.code)
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise CouponExhausted(coupon.code)
    if subtotal < coupon.min_purchase:
        raise MinimumPurchaseNotMet(coupon.code, coupon.min_purchase, subtotal)
    if coupon.first_time_only and prior_orders > 0:
        raise CouponNotEligible(coupon.code, "This coupon is only for first-time customers")
    if coupon.specific_users and user_id not in coupon.specific_users:
        raise CouponNotEligible(coupon.code, "This coupon is not applicable to your account")


async def _load_and_evaluate(
    session: AsyncSession,
    code: str,
    subtotal: float,
    user_id: str | None,
    now: datetime,
) -> Coupon:
    coupon = await find_by_code(session, code)
    if coupon is None:
        raise CouponNotFound(normalize_code(code))

    prior_orders = 0
    if user_id and coupon.first_time_only:
        prior_orders = await orders.count_user_orders(session, user_id)

    evaluate(coupon, subtotal, user_id=user_id, prior_orders=prior_orders, now=now)
    return coupon


async def validate_and_apply(
    session: AsyncSession,
    code: str,
    subtotal: float,
    user_id: str | None = None,
    now: datetime | None = None,
) -> CouponApplication:
    """
    クーポンを検証して使用回数を 1 増やす。

    検証と加算の間に他の注文が最後の 1 回を使った場合は CouponExhausted。
    commit は注文作成と一緒に呼び出し側が行う。
    """
    now = now or datetime.now(timezone.utc)
    coupon = await _load_and_evaluate(session, code, subtotal, user_id, now)

    if not await increment_usage(session, coupon.id):
        raise CouponExhausted(coupon.code)

    discount = coupon_discount(coupon, subtotal)
    logger.info("Coupon %s applied: discount=%.2f", coupon.code, discount)
    return CouponApplication(coupon, discount)


async def preview(
    session: AsyncSession,
    code: str,
    subtotal: float,
    user_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    """クーポンの事前チェック(使用回数は変更しない)。"""
    now = now or datetime.now(timezone.utc)
    coupon = await _load_and_evaluate(session, code, subtotal, user_id, now)
    discount = coupon_discount(coupon, subtotal)
    return {
        "valid": True,
        "coupon": {
            "id": coupon.id,
            "code": coupon.code,
            "name": coupon.name,
            "discount_type": coupon.discount_type.value,
            "discount_value": coupon.discount_value,
            "min_purchase": coupon.min_purchase,
            "max_discount": coupon.max_discount,
            "remaining_uses": coupon.remaining_uses,
        },
        "calculation": {
            "subtotal": subtotal,
            "discount_amount": discount,
            "final_amount": round(max(0.0, subtotal - discount), 2),
        },
    }
