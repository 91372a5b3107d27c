"""
Order Service - Order Ledger のコマンドハンドラ (Write 側)

注文は Saga の結果が決まってから一度だけ INSERT する。
保存後に変わるのは status だけで、明細は変更しない。
状態の更新は「期待する現在状態」を条件にした UPDATE で行い、
同時に 2 つの操作が同じ注文を遷移させることを防ぐ。
保存済み注文への管理者操作は、在庫を動かす前に claim_order で処理権を取る。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import InvalidStateTransition, OrderNotFound

from . import queries
from .aggregate import OrderAggregate, OrderStatus, ensure_transition
from .events import OrderPlaced, OrderStatusChanged
from .schema import order_items, orders

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


async def _publish(redis: aioredis.Redis, event: BaseModel) -> None:
    await redis.publish(
        CHANNEL,
        json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        ),
    )


async def record_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order: OrderAggregate,
) -> dict:
    """
    注文保存コマンド（Saga の最後に一度だけ呼ばれる）

    1. orders に INSERT
    2. order_items に明細を INSERT
    3. コミット後に OrderPlaced を発行
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(orders).values(
            user_id=order.user_id,
            status=order.status.value,
            total_amount=order.total_amount,
            payment_success=order.payment_success,
            created_at=now,
            updated_at=now,
        )
    )
    order.id = result.inserted_primary_key[0]

    if order.lines:
        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order.id,
                    "line_no": line_no,
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "price": line.price,
                }
                for line_no, line in enumerate(order.lines, start=1)
            ],
        )
    await session.commit()

    await _publish(
        redis,
        OrderPlaced(
            order_id=order.id,
            user_id=order.user_id,
            status=order.status.value,
            total_amount=str(order.total_amount),
            items=[line.as_dict() for line in order.lines],
            timestamp=now,
        ),
    )
    logger.info("Order created id=%s status=%s", order.id, order.status.value)
    return await queries.get_order(session, order.id)


async def claim_order(
    session: AsyncSession,
    order_id: int,
    target: OrderStatus,
) -> dict:
    """
    処理権の取得コマンド（支払い反映・キャンセルの最初に呼ぶ）

    RESERVED で、他の操作が処理中でない注文にだけ pending_status = target を立てる。
    在庫を動かすのは処理権を取れた呼び出しだけになる。
    取れなかった場合は、処理中の操作の遷移先を現在の状態とみなして理由を判定する
    （キャンセル処理中の注文への 2 回目のキャンセルは AlreadyCancelled）。
    """
    ensure_transition(OrderStatus.RESERVED, target)
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.status == OrderStatus.RESERVED.value,
            orders.c.pending_status.is_(None),
        )
        .values(pending_status=target.value, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        await session.rollback()
        row = (
            await session.execute(
                select(orders.c.status, orders.c.pending_status).where(
                    orders.c.id == order_id
                )
            )
        ).fetchone()
        if row is None:
            raise OrderNotFound(f"Order not found with ID: {order_id}")
        ensure_transition(OrderStatus(row.pending_status or row.status), target)
        raise InvalidStateTransition(f"Order {order_id} changed concurrently")
    await session.commit()

    logger.info("Order id=%s claimed for %s", order_id, target.value)
    return await queries.get_order(session, order_id)


async def release_claim(
    session: AsyncSession,
    order_id: int,
    target: OrderStatus,
) -> None:
    """状態を変えずに処理権を手放す（在庫を 1 件も動かせなかった場合）。"""
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.pending_status == target.value)
        .values(pending_status=None, updated_at=datetime.now(timezone.utc))
    )
    await session.commit()


async def change_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    expected: OrderStatus,
    target: OrderStatus,
    payment_success: bool | None = None,
) -> dict:
    """
    状態更新コマンド

    現在状態が expected のときだけ target に更新する。
    payment_success を渡した場合は支払い結果も記録する。
    更新できなかった場合は現在の状態から理由を判定して例外にする。
    """
    ensure_transition(expected, target)
    now = datetime.now(timezone.utc)
    values = {"status": target.value, "pending_status": None, "updated_at": now}
    if payment_success is not None:
        values["payment_success"] = payment_success
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.status == expected.value)
        .values(**values)
    )
    if result.rowcount == 0:
        await session.rollback()
        current = await queries.get_order(session, order_id)
        if current is None:
            raise OrderNotFound(f"Order not found with ID: {order_id}")
        ensure_transition(OrderStatus(current["status"]), target)
        raise InvalidStateTransition(
            f"Order {order_id} is {current['status']}, expected {expected.value}"
        )
    await session.commit()

    await _publish(
        redis,
        OrderStatusChanged(
            order_id=order_id,
            previous_status=expected.value,
            status=target.value,
            timestamp=now,
        ),
    )
    logger.info(
        "Order id=%s status %s -> %s", order_id, expected.value, target.value
    )
    return await queries.get_order(session, order_id)
