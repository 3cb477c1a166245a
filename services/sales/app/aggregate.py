"""
Sales Service — 注文集約 (Order Aggregate)

注文と注文明細。明細は注文に所有され、注文と一緒に作成・削除される。
単価と商品名は注文作成時点の値をコピーして保持する
（後から商品価格が変わっても注文の合計は変わらない）。

状態遷移:
    PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED
                        ↘ CANCELLED

Saga 状態（在庫引き当ての進捗）:
    RESERVING → RESERVED → CONFIRMED
              ↘ COMPENSATING → FAILED
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum


class OrderStatus(IntEnum):
    """API と DB では整数コード (0〜5) を使う。"""
    PENDING = 0
    CONFIRMED = 1
    PROCESSING = 2
    SHIPPED = 3
    DELIVERED = 4
    CANCELLED = 5

    @classmethod
    def parse(cls, value: int | str) -> "OrderStatus":
        """整数コード、数字の文字列、名前（大文字小文字を問わない）を受け付ける。"""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            try:
                return cls[text.upper()]
            except KeyError:
                raise ValueError(f"Invalid order status: {value!r}") from None
        raise ValueError(f"Invalid order status: {value!r}")


class SagaState(str, Enum):
    RESERVING = "RESERVING"
    RESERVED = "RESERVED"
    COMPENSATING = "COMPENSATING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


UNFINISHED_SAGA_STATES = (SagaState.RESERVING, SagaState.RESERVED, SagaState.COMPENSATING)


class OrderLine:
    def __init__(
        self,
        product_id: int,
        product_name: str,
        quantity: int,
        unit_price: Decimal,
        id: int | None = None,
        reserved: bool = False,
    ) -> None:
        self.id = id
        self.product_id = product_id
        self.product_name = product_name
        self.quantity = quantity
        self.unit_price = unit_price
        self.reserved = reserved

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price


class Order:
    def __init__(
        self,
        customer_id: str,
        notes: str | None = None,
        created_at: datetime | None = None,
    ) -> None:
        self.id: int | None = None
        self.customer_id = customer_id
        self.lines: list[OrderLine] = []
        self.total = Decimal("0")
        self.status = OrderStatus.PENDING
        self.saga_state: SagaState | None = None
        self.notes = notes
        self.created_at = created_at or datetime.now(timezone.utc)
        self.updated_at: datetime | None = None

    def add_line(self, line: OrderLine) -> None:
        self.lines.append(line)
        self.total += line.subtotal

    @property
    def reserved_lines(self) -> list[OrderLine]:
        return [line for line in self.lines if line.reserved]
