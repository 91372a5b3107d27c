"""
Inventory Service - クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import stock_records


def to_dict(row) -> dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "available_quantity": row.available_quantity,
        "reserved_quantity": row.reserved_quantity,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_stock(session: AsyncSession, product_id: int) -> dict | None:
    result = await session.execute(
        select(stock_records).where(stock_records.c.product_id == product_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return to_dict(row)


async def list_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(stock_records).order_by(stock_records.c.product_id)
    )
    return [to_dict(row) for row in result.fetchall()]
