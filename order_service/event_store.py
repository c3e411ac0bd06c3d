"""
Order Service — イベントストア

注文に起きた出来事(作成・ステータス変更)を追記専用で記録する。
注文ドキュメント (orders テーブル) が現在の状態、イベントストアがその履歴。

イベントの version は、そのイベントを適用した後の注文の version と同じ。
(aggregate_id, version) の主キーで楽観的ロックを実現:
同じ version を二重に書こうとすると一意制約違反で失敗する。
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .domain import Order

AGGREGATE_TYPE = "Order"


async def append_event(session: AsyncSession, order: Order, event: BaseModel) -> int:
    """
    order (イベント適用後の状態) の version でイベントを追記し、その version を返す。
    イベント種別はイベントのクラス名。commit は呼び出し側が行う。
    """
    await session.execute(
        text("""
            INSERT INTO event_store
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": str(order.id),
            "agg_type": AGGREGATE_TYPE,
            "evt_type": type(event).__name__,
            "evt_data": json.dumps(event.model_dump(mode="json")),
            "version": order.version,
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )
    return order.version


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """指定した注文の全イベントを version 順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version
        """),
        {"agg_id": str(aggregate_id)},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
