"""
Inventory Service - 在庫台帳のコマンドハンドラ (Write 側)

在庫は商品ごとに 2 つのカウンタで管理する。

    available_quantity  販売可能な数量
    reserved_quantity   注文のために引き当て中の数量

    reserve:  available -= q, reserved += q   (available >= q が条件)
    release:  available += q, reserved -= q   (reserved  >= q が条件、補償)
    confirm:                  reserved -= q   (reserved  >= q が条件、売上確定)

どの操作も「条件付き UPDATE」1 文で行う。
    UPDATE ... SET available = available - :q WHERE product_id = :id AND available >= :q
更新行数が 0 なら、レコードが無いか数量が足りないかのどちらか。
読んでから比較して書く 3 ステップにしないので、同じ商品への同時引き当てが
チェックをすり抜けることはない（行ロックで直列化される）。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import (
    AlreadyExists,
    InsufficientReservation,
    InsufficientStock,
    StockNotFound,
    ValidationFailed,
)

from . import event_store, queries
from .events import (
    StockAdjusted,
    StockConfirmed,
    StockCreated,
    StockReleased,
    StockReservationFailed,
    StockReserved,
)
from .schema import stock_records

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"


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


def _require_positive(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationFailed(f"Quantity must be positive, got {quantity}")


async def _load_or_raise(session: AsyncSession, product_id: int) -> dict:
    record = await queries.get_stock(session, product_id)
    if record is None:
        raise StockNotFound(f"Inventory not found for product ID: {product_id}")
    return record


async def _guarded_update(
    session: AsyncSession,
    product_id: int,
    quantity: int,
    guard,
    available_delta: int,
    reserved_delta: int,
) -> dict | None:
    """guard を満たすときだけカウンタを動かす。更新できなければ None。"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(stock_records)
        .where(stock_records.c.product_id == product_id, guard >= quantity)
        .values(
            available_quantity=stock_records.c.available_quantity + available_delta,
            reserved_quantity=stock_records.c.reserved_quantity + reserved_delta,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        return None
    return await queries.get_stock(session, product_id)


# ── 管理者コマンド ───────────────────────────────


async def create_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    available_quantity: int,
) -> dict:
    """在庫レコードを作成する。reserved_quantity は常に 0 から始まる。"""
    if available_quantity < 0:
        raise ValidationFailed("Available quantity cannot be negative")
    if await queries.get_stock(session, product_id) is not None:
        raise AlreadyExists(f"Inventory already exists for product ID: {product_id}")

    now = datetime.now(timezone.utc)
    await session.execute(
        insert(stock_records).values(
            product_id=product_id,
            available_quantity=available_quantity,
            reserved_quantity=0,
            created_at=now,
            updated_at=now,
        )
    )
    event = StockCreated(
        product_id=product_id,
        available_quantity=available_quantity,
        timestamp=now,
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    logger.info("Inventory created for product ID: %s", product_id)
    return await queries.get_stock(session, product_id)


async def update_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    available_quantity: int,
) -> dict:
    """available_quantity を管理者が設定し直す（入荷・棚卸し）。"""
    if available_quantity < 0:
        raise ValidationFailed("Available quantity cannot be negative")
    record = await _load_or_raise(session, product_id)

    now = datetime.now(timezone.utc)
    await session.execute(
        update(stock_records)
        .where(stock_records.c.product_id == product_id)
        .values(available_quantity=available_quantity, updated_at=now)
    )
    event = StockAdjusted(
        product_id=product_id,
        previous_available=record["available_quantity"],
        available_quantity=available_quantity,
        timestamp=now,
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    logger.info("Inventory updated for product ID: %s", product_id)
    return await queries.get_stock(session, product_id)


# ── Saga から呼ばれるコマンド ────────────────────


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    quantity: int,
) -> dict:
    """
    在庫引き当てコマンド

    成功: available → reserved に移し、StockReserved を記録
    在庫不足: StockReservationFailed を記録して InsufficientStock
    """
    _require_positive(quantity)
    logger.info("Reserving %s units for product ID: %s", quantity, product_id)

    record = await _guarded_update(
        session,
        product_id,
        quantity,
        stock_records.c.available_quantity,
        available_delta=-quantity,
        reserved_delta=quantity,
    )
    now = datetime.now(timezone.utc)

    if record is None:
        current = await _load_or_raise(session, product_id)
        failed = StockReservationFailed(
            product_id=product_id,
            quantity_requested=quantity,
            quantity_available=current["available_quantity"],
            timestamp=now,
        )
        await event_store.append_event(session, product_id, failed)
        await session.commit()
        await _publish(redis, failed)
        raise InsufficientStock(
            f"Insufficient stock for product ID: {product_id}. "
            f"Available: {current['available_quantity']}, Requested: {quantity}"
        )

    event = StockReserved(
        product_id=product_id,
        quantity=quantity,
        available_quantity=record["available_quantity"],
        reserved_quantity=record["reserved_quantity"],
        timestamp=now,
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    logger.info("Stock reserved for product ID: %s", product_id)
    return record


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    quantity: int,
) -> dict:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    引き当て済みの数量を available に戻す。
    """
    _require_positive(quantity)
    logger.info("Releasing %s units for product ID: %s", quantity, product_id)

    record = await _guarded_update(
        session,
        product_id,
        quantity,
        stock_records.c.reserved_quantity,
        available_delta=quantity,
        reserved_delta=-quantity,
    )
    if record is None:
        current = await _load_or_raise(session, product_id)
        await session.rollback()
        raise InsufficientReservation(
            f"Cannot release {quantity} units for product ID: {product_id}. "
            f"Reserved: {current['reserved_quantity']}"
        )

    event = StockReleased(
        product_id=product_id,
        quantity=quantity,
        available_quantity=record["available_quantity"],
        reserved_quantity=record["reserved_quantity"],
        timestamp=datetime.now(timezone.utc),
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    logger.info("Stock released for product ID: %s", product_id)
    return record


async def confirm_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    quantity: int,
) -> dict:
    """
    在庫確定コマンド（支払い成功後）

    reserved_quantity だけを減らす。この数量は台帳から恒久的に消え、
    元に戻す操作は存在しない。
    """
    _require_positive(quantity)
    logger.info("Confirming %s units for product ID: %s", quantity, product_id)

    record = await _guarded_update(
        session,
        product_id,
        quantity,
        stock_records.c.reserved_quantity,
        available_delta=0,
        reserved_delta=-quantity,
    )
    if record is None:
        current = await _load_or_raise(session, product_id)
        await session.rollback()
        raise InsufficientReservation(
            f"Cannot confirm {quantity} units for product ID: {product_id}. "
            f"Reserved: {current['reserved_quantity']}"
        )

    event = StockConfirmed(
        product_id=product_id,
        quantity=quantity,
        available_quantity=record["available_quantity"],
        reserved_quantity=record["reserved_quantity"],
        timestamp=datetime.now(timezone.utc),
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    logger.info("Stock confirmed for product ID: %s", product_id)
    return record
