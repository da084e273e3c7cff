"""
Order — イベントストア

注文の全遷移を追記専用で記録する (注文は監査証跡なので削除しない)。
expected_version による楽観的ロック:
同じ order_number + version が既に存在すると UNIQUE 制約違反になる。
"""

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_aware, order_events, utcnow


async def append_event(
    session: AsyncSession,
    order_number: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    new_version = expected_version + 1
    await session.execute(
        insert(order_events).values(
            order_number=order_number,
            version=new_version,
            event_type=event_type,
            event_data=event_data,
            created_at=utcnow(),
        )
    )
    return new_version


async def load_events(session: AsyncSession, order_number: str) -> list[dict]:
    """指定した注文の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(order_events)
        .where(order_events.c.order_number == order_number)
        .order_by(order_events.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": as_aware(row.created_at).isoformat(),
        }
        for row in result.fetchall()
    ]
