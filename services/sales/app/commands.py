"""
Sales Service — 注文台帳 (Order Ledger) の書き込み側

どの関数も最後に commit する。Saga の途中でクラッシュしても、
コミット済みの状態 (saga_state と明細ごとの reserved) から再開できる。

Saga 状態の変更は必ず claim_saga() を通す:

  UPDATE orders SET saga_state = :new, updated_at = :now
   WHERE id = :id AND saga_state = :expected [AND updated_at <= :stale_before]

更新行数が 0 なら他の実行者（別インスタンスの resume など）が先に
状態を進めているので、呼び出し側は何もせずに手を引く。
updated_at は Saga の各ステップで更新されるハートビートを兼ねる。
"""

from datetime import datetime, timezone

from sqlalchemy import func, insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderLine, OrderStatus, SagaState
from .schema import order_lines, orders


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def add_order(session: AsyncSession, order: Order) -> Order:
    """注文と明細を 1 トランザクションで保存し、採番された ID を設定する。"""
    order.updated_at = order.updated_at or order.created_at
    result = await session.execute(
        insert(orders).values(
            customer_id=order.customer_id,
            total=order.total,
            status=order.status.value,
            saga_state=order.saga_state.value if order.saga_state else None,
            notes=order.notes,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
    )
    order.id = result.inserted_primary_key[0]

    for line in order.lines:
        line_result = await session.execute(
            insert(order_lines).values(
                order_id=order.id,
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                reserved=line.reserved,
            )
        )
        line.id = line_result.inserted_primary_key[0]

    await session.commit()
    return order


async def save_status(session: AsyncSession, order: Order) -> Order:
    """業務ステータスだけを保存する。saga_state には触れない。"""
    order.updated_at = _now()
    await session.execute(
        update(orders)
        .where(orders.c.id == order.id)
        .values(status=order.status.value, updated_at=order.updated_at)
    )
    await session.commit()
    return order


async def claim_saga(
    session: AsyncSession,
    order: Order,
    expected: SagaState,
    new_state: SagaState,
    status: OrderStatus | None = None,
    stale_before: datetime | None = None,
) -> bool:
    """
    saga_state を expected → new_state に条件付きで進める。

    stale_before を渡すと、その時刻以降に動きのあった Saga は取らない
    （実行中の Saga を復旧処理が横取りしないため）。
    成功したときだけ order を書き換えて True を返す。
    """
    now = _now()
    conditions = [orders.c.id == order.id, orders.c.saga_state == expected.value]
    if stale_before is not None:
        conditions.append(func.coalesce(orders.c.updated_at, orders.c.created_at) <= stale_before)

    values = {"saga_state": new_state.value, "updated_at": now}
    if status is not None:
        values["status"] = status.value

    result = await session.execute(update(orders).where(*conditions).values(**values))
    if result.rowcount != 1:
        await session.rollback()
        return False
    await session.commit()

    order.saga_state = new_state
    order.updated_at = now
    if status is not None:
        order.status = status
    return True


async def record_reservation(session: AsyncSession, order: Order, line: OrderLine) -> bool:
    """
    引き当て済みの明細を記録する。

    注文行の UPDATE を先に実行して行ロックを取り、Saga がまだ RESERVING で
    この実行者のものである場合だけ明細に reserved を立てる。
    False なら Saga は既に復旧処理に引き取られている。
    """
    now = _now()
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order.id, orders.c.saga_state == SagaState.RESERVING.value)
        .values(updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    await session.execute(
        update(order_lines).where(order_lines.c.id == line.id).values(reserved=True)
    )
    await session.commit()
    line.reserved = True
    order.updated_at = now
    return True


async def record_release(session: AsyncSession, order: Order, line: OrderLine) -> None:
    """補償で解放した明細の reserved を下ろす（COMPENSATING の所有者だけが呼ぶ）。"""
    now = _now()
    await session.execute(
        update(order_lines).where(order_lines.c.id == line.id).values(reserved=False)
    )
    await session.execute(update(orders).where(orders.c.id == order.id).values(updated_at=now))
    await session.commit()
    line.reserved = False
    order.updated_at = now
