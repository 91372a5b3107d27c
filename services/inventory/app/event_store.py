"""
Inventory Service - 在庫イベントログ

在庫カウンタの変更ごとにイベントを追記する。
カウンタ更新と同じセッション（トランザクション）で書くため、
コミットされた変更には必ず対応するイベントが残る。
"""

from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import stock_events


async def append_event(
    session: AsyncSession,
    product_id: int,
    event: BaseModel,
) -> str:
    """イベントを追記してイベントタイプ名を返す。コミットは呼び出し側で行う。"""
    event_type = type(event).__name__
    await session.execute(
        insert(stock_events).values(
            product_id=product_id,
            event_type=event_type,
            event_data=event.model_dump(mode="json"),
            created_at=datetime.now(timezone.utc),
        )
    )
    return event_type


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "event_type": row.event_type,
        "event_data": row.event_data,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_events(session: AsyncSession, product_id: int) -> list[dict]:
    result = await session.execute(
        select(stock_events)
        .where(stock_events.c.product_id == product_id)
        .order_by(stock_events.c.id)
    )
    return [_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(stock_events).order_by(stock_events.c.id))
    return [_to_dict(row) for row in result.fetchall()]
