"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。
"""

from datetime import datetime

from pydantic import BaseModel


class InventoryUpdated(BaseModel):
    """在庫数が変化した（作成・更新・引き当て・解放）"""
    product_id: int
    previous_quantity: int
    current_quantity: int
    reason: str
    timestamp: datetime


class InventoryInsufficient(BaseModel):
    """在庫不足で引き当てが失敗した"""
    product_id: int
    product_name: str
    requested_quantity: int
    available_quantity: int
    reason: str
    timestamp: datetime
