"""
Order Service — 在庫チェックと引き当て

check_item:  商品・バリアントの状態と在庫数を検証する(副作用なし)
reserve:     明細ごとに条件付き減算を行う
restock:     キャンセル・返品時に在庫を戻す(設定で有効化)

reserve / restock は呼び出し側のトランザクション内で実行する。
途中の明細で失敗した場合、それまでの減算はロールバックで取り消される。
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import NoReturn

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .domain import LineItem, Product, Variant
from .errors import InsufficientStock, OutOfStock, ProductUnavailable, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StockCheck:
    product: Product
    variant: Variant | None
    requested: int
    available: int | None  # None: 在庫管理対象外

    @property
    def is_tracked(self) -> bool:
        return self.available is not None


@dataclass(frozen=True, slots=True)
class Reservation:
    product_id: str
    variant_id: str | None
    quantity: int
    remaining: int | None


@dataclass(frozen=True, slots=True)
class ReservationResult:
    reservations: list[Reservation]

    @property
    def total_units(self) -> int:
        return sum(r.quantity for r in self.reservations)


def _raise_shortage(
    product: Product,
    variant_id: str | None,
    available: int,
    requested: int,
) -> NoReturn:
    if available <= 0:
        raise OutOfStock(product.id, requested, name=product.name, variant_id=variant_id)
    raise InsufficientStock(product.id, available, requested, name=product.name, variant_id=variant_id)


def check_item(
    product: Product | None,
    product_id: str,
    variant_id: str | None,
    quantity: int,
) -> StockCheck:
    """
    1 明細分の在庫チェック。

    - 商品が無い / 無効                         → ProductUnavailable
    - バリアント商品なのにバリアント未指定       → ValidationError
    - バリアントが無い / 無効                   → ProductUnavailable
    - 在庫管理対象で在庫 0                      → OutOfStock
    - 在庫管理対象で在庫 < 数量                 → InsufficientStock
    """
    if product is None or not product.is_active:
        raise ProductUnavailable(product_id, name=product.name if product else None)

    variant = None
    if product.has_variants:
        if not variant_id:
            raise ValidationError(
                f'Variant selection required for "{product.name}"',
                errors=[{"field": "variant_id", "message": "Variant selection required"}],
            )
        variant = product.get_variant(variant_id)
        if variant is None or not variant.is_active:
            raise ProductUnavailable(product_id, variant_id, product.name)
    elif variant_id:
        raise ProductUnavailable(product_id, variant_id, product.name)

    if not product.track_inventory:
        return StockCheck(product, variant, quantity, None)

    available = variant.stock if variant else product.stock
    if available < quantity:
        _raise_shortage(product, variant_id, available, quantity)
    return StockCheck(product, variant, quantity, available)


async def check_availability(
    session: AsyncSession,
    product_id: str,
    variant_id: str | None,
    quantity: int,
) -> StockCheck:
    product = await catalog.get_product(session, product_id)
    return check_item(product, product_id, variant_id, quantity)


async def reserve(session: AsyncSession, items: Sequence[LineItem]) -> ReservationResult:
    """
    明細ごとに在庫を引き当てる。

    減算は「在庫 >= 数量」の条件付き UPDATE なので、チェック後に他の注文が
    在庫を消費していた場合でもマイナス在庫にはならず、ここで失敗する。
    """
    reservations = []
    for item in items:
        product = await catalog.get_product(session, item.product_id)
        check = check_item(product, item.product_id, item.variant_id, item.quantity)
        if not check.is_tracked:
            reservations.append(Reservation(item.product_id, item.variant_id, item.quantity, None))
            continue

        remaining = await catalog.decrement_stock(
            session, item.product_id, item.variant_id, item.quantity
        )
        if remaining is None:
            # 条件付き UPDATE が 0 行 = 直前に在庫が減った。最新値でエラーを返す
            current = await catalog.get_product(session, item.product_id)
            available = 0
            if current is not None:
                variant = current.get_variant(item.variant_id)
                available = variant.stock if variant else current.stock
            _raise_shortage(check.product, item.variant_id, available, item.quantity)
        reservations.append(Reservation(item.product_id, item.variant_id, item.quantity, remaining))

    logger.info("Reserved %d line items", len(reservations))
    return ReservationResult(reservations)


async def restock(session: AsyncSession, items: Sequence[LineItem]) -> int:
    """
    引き当てた在庫を戻す。戻した明細の数を返す。
    在庫管理対象外の商品、既に削除された商品・バリアントはスキップする。
    """
    restocked = 0
    for item in items:
        product = await catalog.get_product(session, item.product_id)
        if product is None:
            logger.warning("Skip restock: product %s no longer exists", item.product_id)
            continue
        if not product.track_inventory:
            continue
        ok = await catalog.increment_stock(session, item.product_id, item.variant_id, item.quantity)
        if not ok:
            logger.warning(
                "Skip restock: variant %s of product %s no longer exists",
                item.variant_id,
                item.product_id,
            )
            continue
        restocked += 1
    return restocked
