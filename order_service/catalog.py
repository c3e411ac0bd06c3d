"""
Order Service — カタログストア

商品とバリアントの読み出し、および在庫の条件付き更新。
在庫の減算は「在庫 >= 数量 なら減らす」を 1 つの UPDATE 文で行い、
同時注文による売り越し(oversell)を防ぐ。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .domain import Product, Variant


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    """商品をバリアント込みで取得する。"""
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None

    variants = await session.execute(
        text("SELECT * FROM variants WHERE product_id = :id ORDER BY id"),
        {"id": product_id},
    )
    return Product(
        **row._mapping,
        variants={v.id: Variant(**v._mapping) for v in variants.fetchall()},
    )


async def add_product(session: AsyncSession, product: Product) -> None:
    """商品とバリアントを登録する。commit は呼び出し側が行う。"""
    await session.execute(
        text("""
            INSERT INTO products
                (id, name, slug, category, image, price, discount_price,
                 stock, is_active, track_inventory)
            VALUES
                (:id, :name, :slug, :category, :image, :price, :discount_price,
                 :stock, :is_active, :track_inventory)
        """),
        product.model_dump(exclude={"variants"}),
    )
    for variant in product.variants.values():
        await session.execute(
            text("""
                INSERT INTO variants
                    (id, product_id, sku, color, size, price, discount_price, stock, is_active)
                VALUES
                    (:id, :product_id, :sku, :color, :size, :price, :discount_price,
                     :stock, :is_active)
            """),
            variant.model_dump(),
        )


async def decrement_stock(
    session: AsyncSession,
    product_id: str,
    variant_id: str | None,
    quantity: int,
) -> int | None:
    """
    条件付き在庫減算。

    在庫が足りていれば減らして残数を返し、足りなければ何もせず None を返す。
    バリアント商品の場合、products.stock はバリアント在庫の合計なので一緒に減らす。
    """
    if variant_id is None:
        result = await session.execute(
            text("""
                UPDATE products
                SET stock = stock - :qty
                WHERE id = :id AND stock >= :qty
                RETURNING stock
            """),
            {"id": product_id, "qty": quantity},
        )
        row = result.fetchone()
        return row.stock if row else None

    result = await session.execute(
        text("""
            UPDATE variants
            SET stock = stock - :qty
            WHERE id = :vid AND product_id = :pid AND stock >= :qty
            RETURNING stock
        """),
        {"vid": variant_id, "pid": product_id, "qty": quantity},
    )
    row = result.fetchone()
    if not row:
        return None

    await session.execute(
        text("""
            UPDATE products
            SET stock = CASE WHEN stock >= :qty THEN stock - :qty ELSE 0 END
            WHERE id = :id
        """),
        {"id": product_id, "qty": quantity},
    )
    return row.stock


async def increment_stock(
    session: AsyncSession,
    product_id: str,
    variant_id: str | None,
    quantity: int,
) -> bool:
    """在庫を戻す。対象の商品/バリアントが既に無ければ False。"""
    if variant_id is not None:
        result = await session.execute(
            text("""
                UPDATE variants SET stock = stock + :qty
                WHERE id = :vid AND product_id = :pid
            """),
            {"vid": variant_id, "pid": product_id, "qty": quantity},
        )
        if result.rowcount == 0:
            return False

    result = await session.execute(
        text("UPDATE products SET stock = stock + :qty WHERE id = :id"),
        {"id": product_id, "qty": quantity},
    )
    return result.rowcount > 0
