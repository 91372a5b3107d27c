"""
Order Service - 注文集約 (Order Aggregate) と状態遷移表

注文は Saga の実行中はメモリ上で組み立てられ、結果が決まってから
一度だけ Order Ledger に保存される。

状態遷移:
    CREATED  → RESERVED   (全明細の在庫引き当て成功)
    RESERVED → PAID       (支払い成功、全明細の在庫確定)
    RESERVED → FAILED     (支払い失敗で全解放 / 在庫確定の失敗)
    RESERVED → CANCELLED  (管理者キャンセル、在庫を解放)

表にない遷移は InvalidStateTransition で拒否する。
引き当ての途中で失敗した場合は注文自体を保存しない。
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from services.common.errors import AlreadyCancelled, InvalidStateTransition


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    RESERVED = "RESERVED"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.RESERVED}),
    OrderStatus.RESERVED: frozenset(
        {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAID: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if current == OrderStatus.CANCELLED and target == OrderStatus.CANCELLED:
        raise AlreadyCancelled("Order already cancelled")
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Order cannot move from {current.value} to {target.value}"
        )


@dataclass(frozen=True)
class OrderLine:
    """注文明細。price は引き当て時点の価格スナップショットで、以後変えない。"""
    product_id: int
    quantity: int
    price: Decimal

    @property
    def extension(self) -> Decimal:
        return self.price * self.quantity

    def as_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": str(self.price),
        }


class OrderAggregate:
    def __init__(
        self,
        user_id: int,
        payment_success: bool | None,
        order_id: int | None = None,
        status: OrderStatus = OrderStatus.CREATED,
        lines: list[OrderLine] | None = None,
    ) -> None:
        self.id = order_id
        self.user_id = user_id
        self.payment_success = payment_success
        self.status = status
        self.lines: list[OrderLine] = list(lines or [])

    @property
    def total_amount(self) -> Decimal:
        return sum((line.extension for line in self.lines), Decimal("0"))

    def add_line(self, line: OrderLine) -> None:
        if self.status != OrderStatus.CREATED:
            raise InvalidStateTransition(
                f"Items are immutable once the order is {self.status.value}"
            )
        self.lines.append(line)

    def transition_to(self, target: OrderStatus) -> None:
        ensure_transition(self.status, target)
        self.status = target

    @classmethod
    def from_record(cls, record: dict) -> "OrderAggregate":
        """Order Ledger の保存形式から集約を復元する。"""
        return cls(
            user_id=record["user_id"],
            payment_success=record["payment_success"],
            order_id=record["id"],
            status=OrderStatus(record["status"]),
            lines=[
                OrderLine(
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    price=Decimal(item["price"]),
                )
                for item in record["items"]
            ],
        )
