"""
Inventory Service - テーブル定義

stock_records: 商品ごとの在庫台帳（available / reserved の 2 カウンタ）
stock_events:  在庫操作の追記専用ログ（カウンタ更新と同じトランザクションで書く）
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
)

metadata = MetaData()

stock_records = Table(
    "stock_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, nullable=False, unique=True, index=True),
    Column("available_quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("available_quantity >= 0", name="ck_stock_available_non_negative"),
    CheckConstraint("reserved_quantity >= 0", name="ck_stock_reserved_non_negative"),
)

stock_events = Table(
    "stock_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
