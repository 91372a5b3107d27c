"""
Inventory Service - イベント定義

在庫台帳で発生する事実。過去形で命名し、不変として扱う。
stock_events に記録し、Redis の inventory_events チャネルにも発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class StockCreated(BaseModel):
    """在庫レコードが作成された（管理者操作）"""
    product_id: int
    available_quantity: int
    timestamp: datetime


class StockAdjusted(BaseModel):
    """available_quantity が管理者によって設定された"""
    product_id: int
    previous_available: int
    available_quantity: int
    timestamp: datetime


class StockReserved(BaseModel):
    """在庫が引き当てられた（available → reserved）"""
    product_id: int
    quantity: int
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫引き当てが失敗した（在庫不足）"""
    product_id: int
    quantity_requested: int
    quantity_available: int
    timestamp: datetime


class StockReleased(BaseModel):
    """引き当てが解放された（reserved → available、補償トランザクション）"""
    product_id: int
    quantity: int
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime


class StockConfirmed(BaseModel):
    """引き当てが確定された（reserved から恒久的に差し引く）"""
    product_id: int
    quantity: int
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime
