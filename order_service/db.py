"""
Order Service — データベース接続とスキーマ

注文・商品・カート・クーポンを 1 つのデータベースに置き、
在庫引き当て + クーポン使用 + 注文作成を 1 トランザクションで扱えるようにする。

タイムスタンプは ISO 8601 文字列 (UTC) で保存する。
PostgreSQL (asyncpg) と SQLite (aiosqlite, テスト用) の両方で同じ SQL が動く。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id              TEXT PRIMARY KEY,
        name            TEXT NOT NULL,
        slug            TEXT,
        category        TEXT,
        image           TEXT,
        price           DOUBLE PRECISION NOT NULL,
        discount_price  DOUBLE PRECISION,
        stock           INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        is_active       BOOLEAN NOT NULL DEFAULT TRUE,
        track_inventory BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS variants (
        id              TEXT PRIMARY KEY,
        product_id      TEXT NOT NULL REFERENCES products (id),
        sku             TEXT,
        color           TEXT,
        size            TEXT,
        price           DOUBLE PRECISION,
        discount_price  DOUBLE PRECISION,
        stock           INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        is_active       BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_variants_product_id ON variants (product_id)",
    """
    CREATE TABLE IF NOT EXISTS carts (
        user_id         TEXT PRIMARY KEY,
        status          TEXT NOT NULL DEFAULT 'active',
        converted_at    TEXT,
        updated_at      TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id              TEXT PRIMARY KEY,
        user_id         TEXT NOT NULL REFERENCES carts (user_id),
        product_id      TEXT NOT NULL,
        variant_id      TEXT,
        quantity        INTEGER NOT NULL CHECK (quantity >= 1),
        price_snapshot  DOUBLE PRECISION,
        added_at        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_cart_items_user_id ON cart_items (user_id)",
    """
    CREATE TABLE IF NOT EXISTS coupons (
        id              TEXT PRIMARY KEY,
        code            TEXT NOT NULL UNIQUE,
        name            TEXT NOT NULL DEFAULT '',
        discount_type   TEXT NOT NULL,
        discount_value  DOUBLE PRECISION NOT NULL,
        min_purchase    DOUBLE PRECISION NOT NULL DEFAULT 0,
        max_discount    DOUBLE PRECISION,
        usage_count     INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
        usage_limit     INTEGER,
        start_date      TEXT,
        expires_at      TEXT NOT NULL,
        is_active       BOOLEAN NOT NULL DEFAULT TRUE,
        first_time_only BOOLEAN NOT NULL DEFAULT FALSE,
        specific_users  TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id              TEXT PRIMARY KEY,
        order_number    TEXT NOT NULL UNIQUE,
        user_id         TEXT,
        guest_email     TEXT,
        customer_type   TEXT NOT NULL,
        customer_name   TEXT NOT NULL,
        customer_phone  TEXT NOT NULL,
        status          TEXT NOT NULL,
        payment_status  TEXT NOT NULL,
        total           DOUBLE PRECISION NOT NULL,
        document        TEXT NOT NULL,
        version         INTEGER NOT NULL,
        placed_at       TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (status)",
    "CREATE INDEX IF NOT EXISTS ix_orders_placed_at ON orders (placed_at)",
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id    TEXT NOT NULL,
        aggregate_type  TEXT NOT NULL,
        event_type      TEXT NOT NULL,
        event_data      TEXT NOT NULL,
        version         INTEGER NOT NULL,
        created_at      TEXT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
]


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


async def create_database(
    url: str,
    *,
    create_schema: bool = True,
) -> tuple[async_sessionmaker[AsyncSession], AsyncEngine]:
    """エンジンとセッションファクトリを作る。(session_factory, engine) を返す。"""
    engine = create_async_engine(url, echo=False)
    if create_schema:
        await init_schema(engine)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine
