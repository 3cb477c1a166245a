from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=1000)
    price: Decimal = Field(ge=0)
    stock_quantity: int = Field(ge=0)


class ProductUpdate(BaseModel):
    """指定されたフィールドだけを更新する"""
    name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    price: Decimal | None = Field(default=None, ge=0)
    stock_quantity: int | None = Field(default=None, ge=0)
    active: bool | None = None


class StockChangeRequest(BaseModel):
    quantity: int = Field(gt=0)
    reason: str = "Manual update"


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    price: Decimal
    stock_quantity: int
    active: bool
    created_at: datetime
    updated_at: datetime | None = None
