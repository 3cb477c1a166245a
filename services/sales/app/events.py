"""
Sales Service — イベント定義

注文ドメインで発生するイベント。過去形で命名し、不変として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderLineSnapshot(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal


class OrderCreated(BaseModel):
    """注文が作成・確定された"""
    order_id: int
    customer_id: str
    total: Decimal
    lines: list[OrderLineSnapshot]
    created_at: datetime


class OrderStatusUpdated(BaseModel):
    """注文ステータスが変わった（キャンセル・補償を含む）"""
    order_id: int
    previous_status: str
    current_status: str
    reason: str | None = None
    timestamp: datetime
