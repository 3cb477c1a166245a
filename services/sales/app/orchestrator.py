"""
Saga Orchestrator — 注文作成 Saga

注文 (販売 DB) と在庫 (在庫 DB) は別々のストアにあり、共有トランザクションはない。
中央のオーケストレーターが各ステップを順に実行し、途中で失敗したら
補償トランザクション (Compensating Transaction) で整合性を保つ。

  フロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  1. 明細ごとに商品取得 + 在庫確認（Gateway 経由、逐次）        │
  │     └─ 1 件でも問題 → 注文全体を拒否（何も保存・減算しない）    │
  │  2. 注文を PENDING / RESERVING で保存                         │
  │  3. 明細ごとに在庫引き当て（リクエスト順）                      │
  │     ├─ 全件成功 → RESERVED                                   │
  │     └─ 失敗    → COMPENSATING: 引き当て済みの明細を解放       │
  │                  → 注文 CANCELLED / FAILED                   │
  │  4. 注文を CONFIRMED にして保存                               │
  │  5. order.created を発行                                     │
  └─────────────────────────────────────────────────────────────┘

Saga 状態と明細ごとの reserved はステップごとにコミットされるので、
プロセスが途中で落ちても resume() で補償または確定を再開できる。
状態の変更はすべて commands.claim_saga() の条件付き UPDATE で行うので、
実行中の Saga と resume() が同じ注文を同時に進めることはない。
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.errors import NotFoundError, OrderRejected, ValidationError
from services.shared.messaging import ORDER_CREATED, ORDER_STATUS_UPDATED, EventPublisher

from . import commands, queries
from .aggregate import Order, OrderLine, OrderStatus, SagaState
from .events import OrderCreated, OrderLineSnapshot, OrderStatusUpdated
from .gateway import InventoryGateway, StockStatus
from .models import OrderLineRequest

logger = logging.getLogger(__name__)

COMPENSATE = "compensate"
BEST_EFFORT = "best_effort"


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session: AsyncSession,
        gateway: InventoryGateway,
        publisher: EventPublisher,
        reservation_policy: str = COMPENSATE,
    ):
        if reservation_policy not in (COMPENSATE, BEST_EFFORT):
            raise ValueError(f"Unknown reservation policy: {reservation_policy}")
        self.session = session
        self.gateway = gateway
        self.publisher = publisher
        self.reservation_policy = reservation_policy

    async def create_order(
        self,
        customer_id: str,
        lines: list[OrderLineRequest],
        notes: str | None = None,
    ) -> Order:
        if not lines:
            raise ValidationError("Order must contain at least one item")

        order = Order(customer_id, notes=notes)

        # ── Step 1: 明細の検証 ───────────────────────
        errors = []
        for requested in lines:
            error = await self._validate_line(order, requested)
            if error:
                errors.append(error)

        if errors:
            logger.warning("Rejected order for customer %s: %s", customer_id, "; ".join(errors))
            raise OrderRejected(errors=errors)

        # ── Step 2: 注文を保存 (PENDING / RESERVING) ─
        order.saga_state = SagaState.RESERVING
        await commands.add_order(self.session, order)
        logger.info("Order %s persisted, reserving %d line(s)", order.id, len(order.lines))

        # ── Step 3: 在庫を引き当て ───────────────────
        failures = await self._reserve_lines(order)
        if failures and self.reservation_policy == COMPENSATE:
            await self._compensate(order, SagaState.RESERVING, "Stock reservation failed")
            raise OrderRejected("Stock reservation failed", errors=failures)
        for failure in failures:
            logger.warning("Order %s accepted with partial reservation: %s", order.id, failure)

        # ── Step 4: 注文を確定 ───────────────────────
        if not await commands.claim_saga(
            self.session, order, SagaState.RESERVING, SagaState.RESERVED
        ):
            raise self._interrupted(order)
        if not await self._confirm(order):
            return await queries.get_order(self.session, order.id)
        return order

    async def _validate_line(self, order: Order, requested: OrderLineRequest) -> str | None:
        """問題があればエラーメッセージを返し、なければ明細を注文に追加する。"""
        product_id = requested.product_id
        lookup = await self.gateway.fetch_product(product_id)
        if lookup.status is StockStatus.NOT_FOUND:
            return f"Product ID {product_id} not found"
        if not lookup.ok:
            return f"Inventory service unavailable for product ID {product_id}"

        product = lookup.product
        check = await self.gateway.check_stock(product_id, requested.quantity)
        if check.status is StockStatus.NOT_FOUND:
            return f"Product ID {product_id} not found"
        if check.status is StockStatus.UNAVAILABLE:
            return f"Inventory service unavailable for product ID {product_id}"
        if not check.ok:
            return f"Insufficient stock for product {product.name}"

        # 商品名と単価は注文時点の値をコピーする
        order.add_line(
            OrderLine(
                product_id=product.id,
                product_name=product.name,
                quantity=requested.quantity,
                unit_price=product.price,
            )
        )
        return None

    async def _reserve_lines(self, order: Order) -> list[str]:
        """
        明細をリクエスト順に引き当てる。

        compensate ポリシーでは最初の失敗で止める。
        best_effort ポリシーでは失敗した明細を飛ばして続ける。
        引き当て中に Saga を resume() に引き取られたら、直前に引き当てた
        明細を自分で戻してから中断する。
        """
        failures = []
        for line in order.lines:
            result = await self.gateway.reserve_stock(
                line.product_id, line.quantity, f"Sale - order #{order.id}"
            )
            if result.ok:
                if not await commands.record_reservation(self.session, order, line):
                    await self._undo_reservation(order, line)
                    raise self._interrupted(order)
                continue

            if result.status is StockStatus.UNAVAILABLE:
                failures.append(f"Inventory service unavailable for product {line.product_name}")
            elif result.status is StockStatus.NOT_FOUND:
                failures.append(f"Product ID {line.product_id} not found")
            else:
                failures.append(f"Insufficient stock for product {line.product_name}")
            logger.warning(
                "Failed to reserve product %s x %s for order %s (%s)",
                line.product_id, line.quantity, order.id, result.status.value,
            )
            if self.reservation_policy == COMPENSATE:
                break
        return failures

    async def _undo_reservation(self, order: Order, line: OrderLine) -> None:
        # この明細は台帳に記録されていないので、復旧処理からは見えない
        result = await self.gateway.release_stock(
            line.product_id, line.quantity, f"Compensation - order #{order.id}"
        )
        if not result.ok:
            logger.error(
                "Could not release unrecorded reservation of product %s x %s for order %s (%s)",
                line.product_id, line.quantity, order.id, result.status.value,
            )

    def _interrupted(self, order: Order) -> OrderRejected:
        logger.warning("Order %s was taken over by saga recovery", order.id)
        return OrderRejected(
            "Order processing was interrupted",
            errors=[f"Order #{order.id} was cancelled by saga recovery"],
        )

    async def _compensate(
        self,
        order: Order,
        expected: SagaState,
        reason: str,
        stale_before: datetime | None = None,
    ) -> bool:
        """
        補償トランザクション

        Saga を COMPENSATING として確保してから、台帳に記録された
        引き当て済みの明細を逆順に解放し、注文をキャンセルする。
        解放に失敗した明細が残れば COMPENSATING のままにして resume() で再試行する。
        確保できなかった（他の実行者が先に進めた）場合は False を返す。
        """
        previous = order.status
        if not await commands.claim_saga(
            self.session, order, expected, SagaState.COMPENSATING, stale_before=stale_before
        ):
            logger.info("Order %s is no longer %s, not compensating", order.id, expected.value)
            return False

        # 確保した後は新しい明細が記録されることはない
        stored = await queries.get_order(self.session, order.id)
        order.lines = stored.lines

        for line in reversed(order.reserved_lines):
            result = await self.gateway.release_stock(
                line.product_id, line.quantity, f"Compensation - order #{order.id}"
            )
            if result.ok or result.status is StockStatus.NOT_FOUND:
                await commands.record_release(self.session, order, line)
            else:
                logger.error(
                    "Could not release product %s x %s for order %s, will retry",
                    line.product_id, line.quantity, order.id,
                )

        final_state = SagaState.COMPENSATING if order.reserved_lines else SagaState.FAILED
        if not await commands.claim_saga(
            self.session, order, SagaState.COMPENSATING, final_state, status=OrderStatus.CANCELLED
        ):
            return False
        logger.info("Order %s compensated (%s)", order.id, order.saga_state.value)

        if previous is not OrderStatus.CANCELLED:
            await self._publish_status_change(order, previous, reason)
        return True

    async def _confirm(self, order: Order, stale_before: datetime | None = None) -> bool:
        if not await commands.claim_saga(
            self.session,
            order,
            SagaState.RESERVED,
            SagaState.CONFIRMED,
            status=OrderStatus.CONFIRMED,
            stale_before=stale_before,
        ):
            logger.info("Order %s is no longer RESERVED, skipping confirmation", order.id)
            return False
        logger.info("Order %s confirmed, total=%s", order.id, order.total)

        event = OrderCreated(
            order_id=order.id,
            customer_id=order.customer_id,
            total=order.total,
            lines=[
                OrderLineSnapshot(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for line in order.lines
            ],
            created_at=order.created_at,
        )
        await self.publisher.publish(ORDER_CREATED, event.model_dump(mode="json"))
        return True

    async def _publish_status_change(
        self, order: Order, previous: OrderStatus, reason: str | None
    ) -> None:
        event = OrderStatusUpdated(
            order_id=order.id,
            previous_status=previous.name,
            current_status=order.status.name,
            reason=reason,
            timestamp=order.updated_at or datetime.now(timezone.utc),
        )
        await self.publisher.publish(ORDER_STATUS_UPDATED, event.model_dump(mode="json"))

    async def update_status(
        self, order_id: int, new_status: OrderStatus, reason: str | None = None
    ) -> Order:
        """ステータスを上書きする。遷移の妥当性は検査しない。"""
        order = await queries.get_order(self.session, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        previous = order.status
        order.status = new_status
        await commands.save_status(self.session, order)
        logger.info("Order %s status %s -> %s", order_id, previous.name, new_status.name)

        await self._publish_status_change(order, previous, reason)
        return order

    async def cancel_order(self, order_id: int, reason: str) -> Order:
        return await self.update_status(order_id, OrderStatus.CANCELLED, reason)

    async def resume(self, older_than: timedelta = timedelta(seconds=300)) -> int:
        """
        途中で止まった Saga を再開する（起動時に呼ぶ）。

        older_than の間 updated_at が動いていない Saga だけを対象にする。
        RESERVED は確定、RESERVING / COMPENSATING は補償する。
        各注文は条件付き UPDATE で確保するので、同じ Saga を実行中の
        別の実行者と競合しても片方しか進めない。引き取った注文数を返す。
        """
        cutoff = datetime.now(timezone.utc) - older_than
        pending = await queries.list_unfinished_sagas(self.session, cutoff)
        resumed = 0
        for order in pending:
            logger.info("Resuming saga for order %s (%s)", order.id, order.saga_state.value)
            if order.saga_state is SagaState.RESERVED:
                won = await self._confirm(order, stale_before=cutoff)
            else:
                won = await self._compensate(
                    order, order.saga_state, "Saga interrupted", stale_before=cutoff
                )
            if won:
                resumed += 1
        return resumed
