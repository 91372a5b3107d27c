"""
Order Service - クエリハンドラ (Read 側)
"""

from collections import defaultdict
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, orders


def _money(value) -> str:
    return str(Decimal(value).quantize(Decimal("0.01")))


def _item_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "quantity": row.quantity,
        "price": _money(row.price),
    }


def _order_dict(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "total_amount": _money(row.total_amount),
        "payment_success": row.payment_success,
        "items": items,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def _items_by_order(session: AsyncSession, order_ids: list[int]) -> dict:
    grouped: dict[int, list[dict]] = defaultdict(list)
    if not order_ids:
        return grouped
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.order_id, order_items.c.line_no)
    )
    for row in result.fetchall():
        grouped[row.order_id].append(_item_dict(row))
    return grouped


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    items = await _items_by_order(session, [row.id])
    return _order_dict(row, items[row.id])


async def list_orders(session: AsyncSession, user_id: int | None = None) -> list[dict]:
    """全注文、または user_id の注文を新しい順に返す。"""
    stmt = select(orders).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    if user_id is not None:
        stmt = stmt.where(orders.c.user_id == user_id)
    rows = (await session.execute(stmt)).fetchall()
    items = await _items_by_order(session, [row.id for row in rows])
    return [_order_dict(row, items[row.id]) for row in rows]
