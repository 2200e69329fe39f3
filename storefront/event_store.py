"""
Storefront — 注文イベントストア

注文に起きたことをすべてイベントとして追記する。
集約 (OrderAggregate) はイベントをリプレイして現在の状態を復元する。

expected_version による楽観的ロック:
同じ aggregate_id + version の組み合わせが既に存在すると
主キー違反 (IntegrityError) で失敗する → 同時書き込みを検知できる。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import now_ms


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """イベントを追記して新しいバージョン番号を返す。コミットは呼び出し側。"""
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO order_events
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": aggregate_id,
            "agg_type": aggregate_type,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": new_version,
            "now": now_ms(),
        },
    )
    return new_version


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """
    指定した集約の全イベントをバージョン順に読み出す。
    集約を再構築（リプレイ）するために使う。
    """
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data) if isinstance(row.event_data, str) else row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]


async def delete_events(session: AsyncSession, aggregate_id: str) -> None:
    """注文のハード削除用。履歴ごと消す。"""
    await session.execute(
        text("DELETE FROM order_events WHERE aggregate_id = :agg_id"),
        {"agg_id": aggregate_id},
    )
