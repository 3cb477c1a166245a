"""
Sales Service — 注文台帳 (Order Ledger) の読み取り側

どれも読み取り専用の射影。新しい注文から順に返す。
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import UNFINISHED_SAGA_STATES, Order, OrderLine, OrderStatus, SagaState
from .schema import order_lines, orders

_newest_first = (orders.c.created_at.desc(), orders.c.id.desc())


async def _load(session: AsyncSession, stmt: Select) -> list[Order]:
    """注文行を読み、明細をまとめて取得して集約を組み立てる。"""
    rows = (await session.execute(stmt)).fetchall()
    if not rows:
        return []

    ids = [row.id for row in rows]
    line_rows = (
        await session.execute(
            select(order_lines)
            .where(order_lines.c.order_id.in_(ids))
            .order_by(order_lines.c.id)
        )
    ).fetchall()

    lines_by_order: dict[int, list[OrderLine]] = {order_id: [] for order_id in ids}
    for lr in line_rows:
        lines_by_order[lr.order_id].append(
            OrderLine(
                id=lr.id,
                product_id=lr.product_id,
                product_name=lr.product_name,
                quantity=lr.quantity,
                unit_price=lr.unit_price,
                reserved=lr.reserved,
            )
        )

    result = []
    for row in rows:
        order = Order(row.customer_id, notes=row.notes, created_at=row.created_at)
        order.id = row.id
        order.lines = lines_by_order[row.id]
        # 合計は保存時の値を使う（明細から再計算しない）
        order.total = row.total
        order.status = OrderStatus(row.status)
        order.saga_state = SagaState(row.saga_state) if row.saga_state else None
        order.updated_at = row.updated_at
        result.append(order)
    return result


async def get_order(session: AsyncSession, order_id: int) -> Order | None:
    found = await _load(session, select(orders).where(orders.c.id == order_id))
    return found[0] if found else None


async def list_orders(session: AsyncSession) -> list[Order]:
    return await _load(session, select(orders).order_by(*_newest_first))


async def list_by_customer(session: AsyncSession, customer_id: str) -> list[Order]:
    return await _load(
        session,
        select(orders).where(orders.c.customer_id == customer_id).order_by(*_newest_first),
    )


async def list_by_status(session: AsyncSession, status: OrderStatus) -> list[Order]:
    return await _load(
        session,
        select(orders).where(orders.c.status == status.value).order_by(*_newest_first),
    )


async def list_recent(session: AsyncSession, limit: int = 10) -> list[Order]:
    return await _load(session, select(orders).order_by(*_newest_first).limit(limit))


async def total_sales_in_period(
    session: AsyncSession, start: datetime, end: datetime
) -> Decimal:
    """期間内（両端を含む）のキャンセル以外の注文合計"""
    result = await session.execute(
        select(func.coalesce(func.sum(orders.c.total), 0)).where(
            orders.c.created_at >= start,
            orders.c.created_at <= end,
            orders.c.status != OrderStatus.CANCELLED.value,
        )
    )
    return Decimal(str(result.scalar_one()))


async def list_unfinished_sagas(session: AsyncSession, idle_since: datetime) -> list[Order]:
    """
    クラッシュなどで Saga が途中のまま残っている注文

    updated_at は Saga の各ステップで更新されるので、idle_since 以降に
    動きのあった（実行中の）Saga は含めない。
    """
    return await _load(
        session,
        select(orders)
        .where(
            orders.c.saga_state.in_([s.value for s in UNFINISHED_SAGA_STATES]),
            func.coalesce(orders.c.updated_at, orders.c.created_at) <= idle_since,
        )
        .order_by(orders.c.id),
    )
