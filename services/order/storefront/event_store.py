"""
Order Service — イベントストア

注文に対する変更をすべてイベントとして order_events に追記する。
追記は注文行の更新と同じトランザクションで行うので、
ログと注文行が食い違うことはない。
(order_id, version) の一意制約により、同じバージョンへの
二重書き込みは制約違反で失敗する → 競合を検知できる。
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def append_event(
    session: AsyncSession,
    order_id: UUID,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントをストアに追記する。

    expected_version は追記前の注文バージョン。新しいバージョンを返す。
    """
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO order_events
                (order_id, event_type, event_data, version, created_at)
            VALUES
                (:order_id, :evt_type, :evt_data, :version, :now)
        """),
        {
            "order_id": str(order_id),
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": new_version,
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )
    return new_version


async def load_events(
    session: AsyncSession,
    order_id: UUID,
) -> list[dict]:
    """
    指定した注文の全イベントをバージョン順に読み出す。
    集約を再構築（リプレイ）するために使う。
    """
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE order_id = :order_id
            ORDER BY version ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data)
            if isinstance(row.event_data, str)
            else row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
