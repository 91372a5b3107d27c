"""
Order Service - 注文 Saga オーケストレーター

分散トランザクションを使わず、逐次の HTTP 呼び出しと補償トランザクションで
在庫 (Inventory Service) と注文 (Order Ledger) の整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │ 1. 明細ごとに順番に: 価格参照 → 在庫引き当て                    │
  │    └─ どこかで失敗 → 引き当て済みの明細をすべて解放（補償）     │
  │                      注文は保存せず、失敗をそのまま返す         │
  │ 2. 支払い結果で分岐                                            │
  │    ├─ 成功 → 全明細を確定 → PAID                               │
  │    │         └─ 確定の失敗 → 未確定分を解放 → FAILED           │
  │    │                        StockConfirmationFailed             │
  │    └─ 失敗 → 全明細を解放 → FAILED（エラーではない）            │
  │ 3. 結果の状態で注文を一度だけ保存                               │
  └──────────────────────────────────────────────────────────────┘

引き当ては明細の順に 1 件ずつ行う（どこまで引き当てたかを正確に知るため）。
補償の解放は互いに独立しているので並行に投げる。

既知の制約:
  - 確定した数量は元に戻せない（un-confirm 操作は無い）。
    確定の途中失敗では確定済み明細を CRITICAL ログに残し、手動で突き合わせる。
  - reserve / release / confirm には冪等キーが無い。タイムアウトした呼び出しが
    実は在庫サービス側で適用されていた場合、台帳と注文がずれる。
  - 支払い反映・キャンセルの途中でプロセスが落ちた注文は処理権 (pending_status) が
    残り、以後の操作を受け付けない。在庫の状態を確認してから手動で解除する。
"""

import asyncio
import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from services.common.errors import (
    InvalidOrder,
    OrderNotFound,
    ServiceUnavailable,
    StockConfirmationFailed,
)

from . import commands, queries
from .aggregate import OrderAggregate, OrderLine, OrderStatus
from .clients import InventoryClient, ProductClient
from .events import SagaFinished

logger = logging.getLogger(__name__)


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis,
        products: ProductClient,
        inventory: InventoryClient,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.products = products
        self.inventory = inventory

    # ── Saga ────────────────────────────────────

    async def place_order(
        self,
        user_id: int,
        items: Sequence[tuple[int, int]],
        payment_success: bool | None,
    ) -> dict:
        """
        注文 Saga を実行する。

        items は (product_id, quantity) の並び。
        payment_success が None の場合は引き当てまでで止め、RESERVED として保存する
        （後から resolve_payment / cancel_order で終端状態にする）。
        """
        self._validate(items)
        logger.info("Placing order for userId=%s (%s items)", user_id, len(items))

        saga_log: list[dict] = []
        order = OrderAggregate(user_id=user_id, payment_success=payment_success)
        reserved: list[OrderLine] = []

        # ── Step 1: 価格参照と在庫引き当て ──────────
        for product_id, quantity in items:
            entry = self._begin(
                saga_log, "ReserveStock", product_id=product_id, quantity=quantity
            )
            try:
                price = await self.products.get_price(product_id)
                await self.inventory.reserve(product_id, quantity)
            except Exception as e:
                entry["status"] = "FAILED"
                entry["error"] = str(e)
                logger.warning(
                    "Reservation failed for productId=%s: %s. Compensating %s reserved item(s)",
                    product_id, e, len(reserved),
                )
                unreleased = await self._compensate(saga_log, reserved)
                await self._publish_saga_event(
                    "SagaCompensated", None, user_id, saga_log, unreleased
                )
                raise
            entry["status"] = "COMPLETED"
            line = OrderLine(product_id=product_id, quantity=quantity, price=price)
            reserved.append(line)
            order.add_line(line)

        order.transition_to(OrderStatus.RESERVED)

        if payment_success is None:
            record = await self._persist(order)
            await self._publish_saga_event(
                "SagaCompleted", record["id"], user_id, saga_log
            )
            return record

        # ── Step 2, 3: 支払い結果で確定 / 解放し、保存 ──
        return await self._settle(order, saga_log)

    async def resolve_payment(self, order_id: int, payment_success: bool) -> dict:
        """RESERVED のまま保存された注文に支払い結果を反映する。"""
        target = OrderStatus.PAID if payment_success else OrderStatus.FAILED
        order = await self._claim(order_id, target)
        order.payment_success = payment_success
        return await self._settle(order, [])

    async def cancel_order(self, order_id: int) -> dict:
        """
        注文キャンセル（管理者操作）

        RESERVED の注文は処理権を取り、全明細の在庫を解放してから CANCELLED にする。
        1 件も解放できなかった場合は処理権を手放して RESERVED のまま
        ServiceUnavailable にし、再実行できるようにする。一部だけ解放できた場合は
        CANCELLED にして、残った明細を手動対応として CRITICAL ログに出す。
        """
        order = await self._claim(order_id, OrderStatus.CANCELLED)

        saga_log: list[dict] = []
        unreleased = await self._compensate(saga_log, order.lines)
        if unreleased and len(unreleased) == len(order.lines):
            async with self.session_factory() as session:
                await commands.release_claim(session, order_id, OrderStatus.CANCELLED)
            await self._publish_saga_event(
                "SagaFailed", order_id, order.user_id, saga_log, unreleased
            )
            raise ServiceUnavailable(
                f"Could not release stock for order {order_id}; order left RESERVED"
            )

        async with self.session_factory() as session:
            record = await commands.change_status(
                session,
                self.redis,
                order_id,
                OrderStatus.RESERVED,
                OrderStatus.CANCELLED,
            )
        await self._publish_saga_event(
            "SagaFailed" if unreleased else "SagaCompensated",
            order_id,
            order.user_id,
            saga_log,
            unreleased,
        )
        return record

    # ── Order Ledger の参照 ─────────────────────

    async def get_order(self, order_id: int) -> dict:
        async with self.session_factory() as session:
            record = await queries.get_order(session, order_id)
        if record is None:
            raise OrderNotFound(f"Order not found with ID: {order_id}")
        return record

    async def get_user_orders(self, user_id: int) -> list[dict]:
        async with self.session_factory() as session:
            return await queries.list_orders(session, user_id=user_id)

    async def get_all_orders(self) -> list[dict]:
        async with self.session_factory() as session:
            return await queries.list_orders(session)

    # ── 内部処理 ────────────────────────────────

    @staticmethod
    def _validate(items: Sequence[tuple[int, int]]) -> None:
        if not items:
            raise InvalidOrder("Order must contain at least one item")
        for product_id, quantity in items:
            if quantity is None or quantity <= 0:
                raise InvalidOrder(
                    f"Quantity must be positive for product {product_id}"
                )

    @staticmethod
    def _begin(saga_log: list[dict], action: str, **details) -> dict:
        entry = {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        }
        saga_log.append(entry)
        return entry

    async def _claim(self, order_id: int, target: OrderStatus) -> OrderAggregate:
        """
        保存済み注文の処理権を取る。同じ注文への管理者操作が並行しても、
        在庫を動かすのは先に処理権を取った 1 件だけ。
        """
        async with self.session_factory() as session:
            record = await commands.claim_order(session, order_id, target)
        return OrderAggregate.from_record(record)

    async def _settle(self, order: OrderAggregate, saga_log: list[dict]) -> dict:
        if not order.payment_success:
            unreleased = await self._compensate(saga_log, order.lines)
            order.transition_to(OrderStatus.FAILED)
            record = await self._persist(order)
            logger.info("Payment declined; order id=%s marked FAILED", record["id"])
            await self._publish_saga_event(
                "SagaFailed" if unreleased else "SagaCompensated",
                record["id"],
                order.user_id,
                saga_log,
                unreleased,
            )
            return record

        confirmed: list[OrderLine] = []
        for line in order.lines:
            entry = self._begin(
                saga_log,
                "ConfirmStock",
                product_id=line.product_id,
                quantity=line.quantity,
            )
            try:
                await self.inventory.confirm(line.product_id, line.quantity)
            except Exception as e:
                entry["status"] = "FAILED"
                entry["error"] = str(e)
                logger.error("Confirm failed for productId=%s: %s", line.product_id, e)
                return await self._abort_confirmation(order, saga_log, confirmed, e)
            entry["status"] = "COMPLETED"
            confirmed.append(line)
            logger.info(
                "Confirmed stock for productId=%s qty=%s", line.product_id, line.quantity
            )

        order.transition_to(OrderStatus.PAID)
        record = await self._persist(order)
        await self._publish_saga_event(
            "SagaCompleted", record["id"], order.user_id, saga_log
        )
        return record

    async def _abort_confirmation(
        self,
        order: OrderAggregate,
        saga_log: list[dict],
        confirmed: list[OrderLine],
        cause: Exception,
    ):
        """確定の途中失敗: 未確定の明細だけを解放し、FAILED で保存して例外を送出する。"""
        unreleased = await self._compensate(saga_log, order.lines[len(confirmed):])
        order.transition_to(OrderStatus.FAILED)
        record = await self._persist(order)

        confirmed_lines = [line.as_dict() for line in confirmed]
        if confirmed_lines:
            logger.critical(
                "Order id=%s FAILED after confirming %s; confirmed stock cannot be "
                "restored, manual reconciliation required",
                record["id"], confirmed_lines,
            )
        await self._publish_saga_event(
            "SagaFailed", record["id"], order.user_id, saga_log, unreleased
        )
        raise StockConfirmationFailed(
            f"Failed to confirm stock for order {record['id']}",
            order_id=record["id"],
            confirmed_lines=confirmed_lines,
        ) from cause

    async def _compensate(
        self, saga_log: list[dict], lines: Iterable[OrderLine]
    ) -> list[dict]:
        """
        補償トランザクション: 明細の引き当てを並行に解放する。

        解放できなかった明細を返す（CRITICAL ログ済み）。
        """
        lines = list(lines)
        if not lines:
            return []
        entries = [
            self._begin(
                saga_log,
                "ReleaseStock (COMPENSATING)",
                product_id=line.product_id,
                quantity=line.quantity,
            )
            for line in lines
        ]
        results = await asyncio.gather(
            *(self.inventory.release(line.product_id, line.quantity) for line in lines),
            return_exceptions=True,
        )

        unreleased: list[dict] = []
        for line, entry, result in zip(lines, entries, results):
            if isinstance(result, Exception):
                entry["status"] = "FAILED"
                entry["error"] = str(result)
                logger.critical(
                    "Compensation failed: could not release %s units of productId=%s: %s. "
                    "Manual reconciliation required",
                    line.quantity, line.product_id, result,
                )
                unreleased.append(line.as_dict())
            else:
                entry["status"] = "COMPLETED"
                logger.info(
                    "Released %s units for productId=%s", line.quantity, line.product_id
                )
        return unreleased

    async def _persist(self, order: OrderAggregate) -> dict:
        """新しい注文は INSERT、保存済み（RESERVED）の注文は状態だけ更新する。"""
        async with self.session_factory() as session:
            if order.id is None:
                return await commands.record_order(session, self.redis, order)
            return await commands.change_status(
                session,
                self.redis,
                order.id,
                OrderStatus.RESERVED,
                order.status,
                payment_success=order.payment_success,
            )

    async def _publish_saga_event(
        self,
        outcome: str,
        order_id: int | None,
        user_id: int,
        saga_log: list[dict],
        unreleased: list[dict] | None = None,
    ) -> None:
        """Saga の結果を Redis に発行する。"""
        event = SagaFinished(
            outcome=outcome,
            order_id=order_id,
            user_id=user_id,
            saga_log=saga_log,
            unreleased=unreleased or [],
        )
        await self.redis.publish(
            "saga_events",
            json.dumps(
                {"event_type": outcome, "data": event.model_dump(mode="json")},
                default=str,
            ),
        )
