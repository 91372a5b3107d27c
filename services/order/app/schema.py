"""
Order Service - テーブル定義 (Order Ledger)

orders:      注文ヘッダ（状態・合計金額・処理中の管理者操作）
order_items: 明細（注文に従属し、保存後は変更しない）
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("total_amount", Numeric(14, 2), nullable=False),
    Column("payment_success", Boolean, nullable=True),
    # 管理者操作 (支払い反映・キャンセル) が処理中のときの遷移先。在庫を動かす前に立てる
    Column("pending_status", String(16), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("line_no", Integer, nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
)
