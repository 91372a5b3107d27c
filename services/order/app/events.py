"""
Order Service - イベント定義

order_events チャネルに発行する注文のイベントと、
saga_events チャネルに発行する Saga の実行結果。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """Saga の結果が決まり、注文が保存された"""
    order_id: int
    user_id: int
    status: str
    total_amount: str
    items: list[dict]
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """保存済みの注文の状態が変わった（キャンセル・支払い確定）"""
    order_id: int
    previous_status: str
    status: str
    timestamp: datetime


class SagaFinished(BaseModel):
    """
    Saga の実行ログ。呼び出し元には返さず、監視用に発行する。

    outcome: SagaCompleted / SagaCompensated / SagaFailed
    unreleased: 補償に失敗して引き当てが残った明細（手動対応が必要）
    """
    outcome: str
    order_id: int | None = None
    user_id: int
    saga_log: list[dict]
    unreleased: list[dict] = []
