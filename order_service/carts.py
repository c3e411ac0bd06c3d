"""
Order Service — カートストア

ログインユーザーの永続カート。1 ユーザーにつき 1 カート。

明細の追加・数量変更の時点で在庫をチェックするが、引き当てはしない。
引き当ては注文作成時に一度だけ行う。
price_snapshot は追加時点の実効単価で、validate_cart の価格変更検知にだけ使う
(注文の価格は常にカタログから取り直す)。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, inventory
from .domain import Cart, CartItem
from .errors import CartItemNotFound
from .pricing import EPSILON

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_cart(session: AsyncSession, user_id: str) -> Cart:
    """ユーザーのカートを返す。まだ無ければ空のカート。"""
    result = await session.execute(
        text("SELECT status FROM carts WHERE user_id = :uid"),
        {"uid": user_id},
    )
    row = result.fetchone()
    if not row:
        return Cart(user_id=user_id)

    items = await session.execute(
        text("""
            SELECT id, product_id, variant_id, quantity, price_snapshot, added_at
            FROM cart_items
            WHERE user_id = :uid
            ORDER BY added_at, id
        """),
        {"uid": user_id},
    )
    return Cart(
        user_id=user_id,
        status=row.status,
        items=[CartItem(**r._mapping) for r in items.fetchall()],
    )


async def _touch_cart(session: AsyncSession, user_id: str) -> None:
    """カート行を作成、または active に戻す。"""
    await session.execute(
        text("""
            INSERT INTO carts (user_id, status, updated_at)
            VALUES (:uid, 'active', :now)
            ON CONFLICT (user_id)
            DO UPDATE SET status = 'active', converted_at = NULL, updated_at = :now
        """),
        {"uid": user_id, "now": _now()},
    )


def _find_item(cart: Cart, item_id: str) -> CartItem:
    for item in cart.items:
        if item.id == item_id:
            return item
    raise CartItemNotFound(item_id)


async def add_item(
    session: AsyncSession,
    user_id: str,
    product_id: str,
    variant_id: str | None,
    quantity: int,
) -> Cart:
    """
    カートに明細を追加する。同じ商品・バリアントが既にあれば数量を合算する。
    合算後の数量で在庫をチェックする。
    """
    cart = await get_cart(session, user_id)
    existing = next(
        (i for i in cart.items if i.product_id == product_id and i.variant_id == variant_id),
        None,
    )
    new_quantity = quantity + (existing.quantity if existing else 0)

    check = await inventory.check_availability(session, product_id, variant_id, new_quantity)
    price = min(check.product.unit_prices(check.variant))

    await _touch_cart(session, user_id)
    if existing:
        await session.execute(
            text("""
                UPDATE cart_items SET quantity = :qty, price_snapshot = :price
                WHERE id = :id
            """),
            {"id": existing.id, "qty": new_quantity, "price": price},
        )
    else:
        await session.execute(
            text("""
                INSERT INTO cart_items
                    (id, user_id, product_id, variant_id, quantity, price_snapshot, added_at)
                VALUES
                    (:id, :uid, :pid, :vid, :qty, :price, :now)
            """),
            {
                "id": str(uuid4()),
                "uid": user_id,
                "pid": product_id,
                "vid": variant_id,
                "qty": new_quantity,
                "price": price,
                "now": _now(),
            },
        )
    await session.commit()
    logger.info("Cart %s: %s x%d", user_id, product_id, new_quantity)
    return await get_cart(session, user_id)


async def update_item(session: AsyncSession, user_id: str, item_id: str, quantity: int) -> Cart:
    cart = await get_cart(session, user_id)
    item = _find_item(cart, item_id)
    await inventory.check_availability(session, item.product_id, item.variant_id, quantity)

    await session.execute(
        text("UPDATE cart_items SET quantity = :qty WHERE id = :id"),
        {"id": item.id, "qty": quantity},
    )
    await _touch_cart(session, user_id)
    await session.commit()
    return await get_cart(session, user_id)


async def remove_item(session: AsyncSession, user_id: str, item_id: str) -> Cart:
    cart = await get_cart(session, user_id)
    item = _find_item(cart, item_id)
    await session.execute(text("DELETE FROM cart_items WHERE id = :id"), {"id": item.id})
    await session.commit()
    return await get_cart(session, user_id)


async def clear_cart(session: AsyncSession, user_id: str) -> Cart:
    await session.execute(text("DELETE FROM cart_items WHERE user_id = :uid"), {"uid": user_id})
    await session.commit()
    return Cart(user_id=user_id)


async def convert_and_clear(session: AsyncSession, user_id: str) -> None:
    """
    注文作成に使ったカートを converted にして明細を消す。
    注文作成と同じトランザクションで実行する (commit しない)。
    """
    now = _now()
    await session.execute(text("DELETE FROM cart_items WHERE user_id = :uid"), {"uid": user_id})
    await session.execute(
        text("""
            UPDATE carts SET status = 'converted', converted_at = :now, updated_at = :now
            WHERE user_id = :uid
        """),
        {"uid": user_id, "now": now},
    )


# ── 検証レポート ────────────────────────────────


def _issue(kind: str, severity: str, message: str, **extra) -> dict:
    return {"type": kind, "severity": severity, "message": message, **extra}


async def _item_issues(session: AsyncSession, item: CartItem) -> tuple[list[dict], dict | None]:
    """1 明細分の問題点と、注文可能なら明細の現在値を返す。"""
    product = await catalog.get_product(session, item.product_id)
    if product is None:
        return [_issue("product_not_found", "error", "Product no longer exists")], None
    if not product.is_active:
        return [_issue("product_inactive", "error", "Product is no longer available")], None

    variant = None
    if product.has_variants:
        if not item.variant_id:
            return [_issue("variant_missing", "error", "Variant selection required")], None
        variant = product.get_variant(item.variant_id)
        if variant is None:
            return [_issue("variant_not_found", "error", "Selected variant no longer exists")], None
        if not variant.is_active:
            return [
                _issue("variant_inactive", "error", "Selected variant is no longer available")
            ], None

    issues = []
    available = variant.stock if variant else product.stock
    if product.track_inventory:
        if available == 0:
            return [_issue("out_of_stock", "error", "Item is out of stock")], None
        if available < item.quantity:
            issues.append(
                _issue(
                    "insufficient_stock",
                    "warning",
                    f"Only {available} items available (requested: {item.quantity})",
                    available_stock=available,
                    requested_quantity=item.quantity,
                )
            )

    price, discount_price = product.unit_prices(variant)
    current = min(price, discount_price)
    if item.price_snapshot is not None and abs(item.price_snapshot - current) > EPSILON:
        issues.append(
            _issue(
                "price_changed",
                "info",
                f"Price has changed from {item.price_snapshot:g} to {current:g}",
                old_price=item.price_snapshot,
                new_price=current,
                price_increase=current > item.price_snapshot,
            )
        )

    valid = {
        "item_id": item.id,
        "product_id": product.id,
        "product_name": product.name,
        "quantity": item.quantity,
        "available_stock": available if product.track_inventory else None,
        "price": price,
        "discount_price": discount_price,
        "effective_price": current,
    }
    return issues, valid


async def validate_cart(session: AsyncSession, user_id: str, include_details: bool = False) -> dict:
    """
    チェックアウト前のカート検証。

    severity:
        error    注文できない (商品・バリアントが無い / 無効、在庫 0)
        warning  数量を減らせば注文できる (在庫不足)
        info     価格が変わった
    """
    cart = await get_cart(session, user_id)
    if cart.is_empty:
        return {"is_valid": True, "is_empty": True, "needs_attention": False, "issues": []}

    issues = []
    valid_items = []
    for item in cart.items:
        item_issues, valid = await _item_issues(session, item)
        if valid is not None:
            valid_items.append(valid)
        if item_issues:
            issues.append(
                {
                    "item_id": item.id,
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "quantity": item.quantity,
                    "issues": item_issues,
                }
            )

    def count(severity: str) -> int:
        return sum(1 for entry in issues if any(i["severity"] == severity for i in entry["issues"]))

    errors = count("error")
    report = {
        "is_valid": errors == 0,
        "is_empty": False,
        "needs_attention": bool(issues),
        "summary": {
            "total_items": len(cart.items),
            "valid_items": len(valid_items),
            "items_with_errors": errors,
            "items_with_warnings": count("warning"),
            "can_proceed_to_checkout": errors == 0 and bool(valid_items),
        },
        "issues": issues,
    }
    if include_details:
        report["valid_items"] = valid_items
    return report
