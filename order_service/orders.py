"""
Order Service — 注文ストア

注文集約をドキュメント(JSON)として保存し、検索用の列を横に持つ。
更新は version 列による楽観的ロックで行う。
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .domain import Order, OrderStatus, PaymentStatus
from .errors import ConcurrentModification, DuplicateOrderNumber


def _from_row(row) -> Order:
    order = Order.model_validate_json(row.document)
    return order.model_copy(update={"version": row.version})


async def insert(session: AsyncSession, order: Order) -> None:
    """
    新しい注文を登録する。

    注文番号の一意制約に違反したら DuplicateOrderNumber。
    このときトランザクションは使えなくなるので、呼び出し側はロールバックしてやり直す。
    """
    try:
        await session.execute(
            text("""
                INSERT INTO orders
                    (id, order_number, user_id, guest_email, customer_type, customer_name,
                     customer_phone, status, payment_status, total,
                     document, version, placed_at, updated_at)
                VALUES
                    (:id, :order_number, :user_id, :guest_email, :customer_type, :customer_name,
                     :customer_phone, :status, :payment_status, :total,
                     :document, :version, :placed_at, :placed_at)
            """),
            {
                "id": str(order.id),
                "order_number": order.order_number,
                "user_id": order.user_id,
                "guest_email": order.guest_email,
                "customer_type": order.customer_type,
                "customer_name": order.shipping_address.full_name,
                "customer_phone": order.shipping_address.phone,
                "status": order.status.value,
                "payment_status": order.payment.status.value,
                "total": order.pricing.total,
                "document": order.model_dump_json(),
                "version": order.version,
                "placed_at": order.placed_at.isoformat(),
            },
        )
    except IntegrityError as e:
        raise DuplicateOrderNumber(order.order_number) from e


async def exists(session: AsyncSession, order_number: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM orders WHERE order_number = :n"),
        {"n": order_number},
    )
    return result.fetchone() is not None


async def find_by_order_number(session: AsyncSession, order_number: str) -> Order | None:
    result = await session.execute(
        text("SELECT document, version FROM orders WHERE order_number = :n"),
        {"n": order_number},
    )
    row = result.fetchone()
    return _from_row(row) if row else None


async def save(session: AsyncSession, order: Order, expected_version: int) -> Order:
    """
    注文を上書き保存する。

    expected_version が現在の version と一致しない場合(他の更新が先に入った)は
    ConcurrentModification。成功すると version を 1 進めた注文を返す。
    """
    saved = order.model_copy(update={"version": expected_version + 1})
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :status, payment_status = :payment_status, total = :total, document = :document,
                version = :new_version, updated_at = :now
            WHERE id = :id AND version = :expected
        """),
        {
            "id": str(order.id),
            "status": saved.status.value,
            "payment_status": saved.payment.status.value,
            "total": saved.pricing.total,
            "document": saved.model_dump_json(),
            "new_version": saved.version,
            "expected": expected_version,
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )
    if result.rowcount == 0:
        raise ConcurrentModification(order.order_number)
    return saved


async def count_user_orders(session: AsyncSession, user_id: str) -> int:
    """キャンセル済みを除いたユーザーの注文数。初回限定クーポンの判定に使う。"""
    result = await session.execute(
        text("SELECT COUNT(*) AS n FROM orders WHERE user_id = :uid AND status != :status"),
        {"uid": user_id, "status": OrderStatus.CANCELLED.value},
    )
    return result.scalar_one()


async def list_user_orders(session: AsyncSession, user_id: str) -> list[Order]:
    result = await session.execute(
        text("""
            SELECT document, version FROM orders
            WHERE user_id = :uid
            ORDER BY placed_at DESC
        """),
        {"uid": user_id},
    )
    return [_from_row(row) for row in result.fetchall()]


# ── 管理者向け一覧 ──────────────────────────────


class OrderFilters(BaseModel):
    """管理者の注文一覧の絞り込み条件。すべて省略可。"""

    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    customer_type: Literal["registered", "guest"] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None
    sort_by: Literal["placed_at", "total", "order_number", "status"] = "placed_at"
    sort_order: Literal["asc", "desc"] = "desc"


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _where(filters: OrderFilters) -> tuple[str, dict]:
    clauses = []
    params: dict = {}
    if filters.status:
        clauses.append("status = :status")
        params["status"] = filters.status.value
    if filters.payment_status:
        clauses.append("payment_status = :payment_status")
        params["payment_status"] = filters.payment_status.value
    if filters.customer_type:
        clauses.append("customer_type = :customer_type")
        params["customer_type"] = filters.customer_type
    if filters.start_date:
        clauses.append("placed_at >= :start_date")
        params["start_date"] = _utc_iso(filters.start_date)
    if filters.end_date:
        clauses.append("placed_at <= :end_date")
        params["end_date"] = _utc_iso(filters.end_date)
    if filters.search and filters.search.strip():
        # 部分一致。LIKE のワイルドカードはエスケープする
        term = filters.search.strip().lower()
        term = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        params["search"] = f"%{term}%"
        clauses.append(
            "("
            + " OR ".join(
                f"LOWER(COALESCE({column}, '')) LIKE :search ESCAPE '\\'"
                for column in ("order_number", "guest_email", "customer_name", "customer_phone")
            )
            + ")"
        )
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


async def list_orders(
    session: AsyncSession,
    filters: OrderFilters,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], int]:
    """条件に合う注文を 1 ページ分と、条件に合う総件数を返す。"""
    where, params = _where(filters)
    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM orders{where}"), params)
    ).scalar_one()

    # sort_by は Literal で検証済みなので列名として埋め込める
    direction = "DESC" if filters.sort_order == "desc" else "ASC"
    result = await session.execute(
        text(f"""
            SELECT document, version FROM orders{where}
            ORDER BY {filters.sort_by} {direction}, order_number {direction}
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    return [_from_row(row) for row in result.fetchall()], total
