from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .aggregate import OrderStatus


# ── Request Models ───────────────────────────────


class OrderLineRequest(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    lines: list[OrderLineRequest]
    notes: str | None = Field(default=None, max_length=500)


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    reason: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        # 整数コードのほか "SHIPPED" のような名前も受け付ける
        return OrderStatus.parse(value)


class CancelOrderRequest(BaseModel):
    reason: str = "Cancelled by customer"


# ── Response Models ──────────────────────────────


class OrderLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    customer_id: str
    lines: list[OrderLineResponse]
    total: Decimal
    status: OrderStatus
    notes: str | None
    created_at: datetime
    updated_at: datetime | None


# ── 在庫サービスから受け取る商品 ─────────────────


class Product(BaseModel):
    id: int
    name: str
    description: str = ""
    price: Decimal
    stock_quantity: int
    active: bool = True
