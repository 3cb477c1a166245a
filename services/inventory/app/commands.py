"""
Inventory Service — コマンドハンドラ (Write 側)

在庫数を変更する操作はすべてここを通る。

在庫の減算 (decrement_stock) は「読んでから書く」をしない。
  UPDATE products
     SET stock_quantity = stock_quantity - :qty
   WHERE id = :id AND active AND stock_quantity >= :qty
を 1 文で実行し、更新行数で成否を判定する。UPDATE が行ロックを取るので、
同じ商品への同時注文があっても在庫がマイナスになる（売り越す）ことはない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.errors import ConflictError, NotFoundError
from services.shared.messaging import (
    INVENTORY_INSUFFICIENT,
    INVENTORY_UPDATED,
    PRODUCT_CREATED,
    PRODUCT_UPDATED,
    EventPublisher,
)

from . import queries
from .events import InventoryInsufficient, InventoryUpdated
from .models import ProductCreate, ProductResponse, ProductUpdate
from .schema import products

logger = logging.getLogger(__name__)

_active = products.c.active.is_(True)


async def create_product(
    session: AsyncSession,
    publisher: EventPublisher,
    data: ProductCreate,
) -> ProductResponse:
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(products).values(
            name=data.name,
            description=data.description,
            price=data.price,
            stock_quantity=data.stock_quantity,
            active=True,
            created_at=now,
        )
    )
    product_id = result.inserted_primary_key[0]
    await session.commit()
    logger.info("Created product %s (%s)", product_id, data.name)

    event = InventoryUpdated(
        product_id=product_id,
        previous_quantity=0,
        current_quantity=data.stock_quantity,
        reason="Product created",
        timestamp=now,
    )
    await publisher.publish(PRODUCT_CREATED, event.model_dump(mode="json"))

    return await queries.get_product(session, product_id)


async def update_product(
    session: AsyncSession,
    publisher: EventPublisher,
    product_id: int,
    changes: ProductUpdate,
) -> ProductResponse:
    """
    商品を部分更新する。

    値が指定されたフィールドだけを書き換え、在庫数が変わった場合のみ
    product.updated を発行する。

    在庫数を書き換えるときは、読んだ値のままである場合だけ UPDATE する。
    間に引き当てや解放が入っていたら ConflictError（呼び出し側で読み直して再試行）。
    """
    existing = await queries.get_product(session, product_id)
    if existing is None:
        raise NotFoundError("Product not found")

    values = {
        key: value
        for key, value in changes.model_dump(exclude_none=True).items()
        if value != ""
    }
    now = datetime.now(timezone.utc)
    values["updated_at"] = now

    conditions = [products.c.id == product_id]
    if "stock_quantity" in values:
        conditions.append(products.c.stock_quantity == existing.stock_quantity)

    result = await session.execute(update(products).where(*conditions).values(**values))
    if result.rowcount == 0:
        await session.rollback()
        logger.warning("Stock of product %s changed during update, rejecting", product_id)
        raise ConflictError("Stock was changed by another operation, reload and retry")
    await session.commit()

    new_quantity = values.get("stock_quantity", existing.stock_quantity)
    if new_quantity != existing.stock_quantity:
        event = InventoryUpdated(
            product_id=product_id,
            previous_quantity=existing.stock_quantity,
            current_quantity=new_quantity,
            reason="Product updated",
            timestamp=now,
        )
        await publisher.publish(PRODUCT_UPDATED, event.model_dump(mode="json"))

    result = await session.execute(select(products).where(products.c.id == product_id))
    return ProductResponse.model_validate(result.first())


async def delete_product(session: AsyncSession, product_id: int) -> None:
    """論理削除。行は監査用に残す。"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, _active)
        .values(active=False, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Product not found")
    await session.commit()
    logger.info("Soft-deleted product %s", product_id)


async def decrement_stock(
    session: AsyncSession,
    publisher: EventPublisher,
    product_id: int,
    quantity: int,
    reason: str,
) -> bool:
    """
    在庫引き当て（条件付き減算）

    1. 在庫が足りる場合だけ減算する UPDATE を実行
    2. 更新行数 0 → 商品なしなら NotFoundError、在庫不足なら
       inventory.insufficient を発行して False（在庫は変更しない）
    3. 成功 → inventory.updated を発行して True
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(products)
        .where(
            products.c.id == product_id,
            _active,
            products.c.stock_quantity >= quantity,
        )
        .values(stock_quantity=products.c.stock_quantity - quantity, updated_at=now)
    )

    if result.rowcount == 0:
        row = (
            await session.execute(
                select(products.c.name, products.c.stock_quantity).where(
                    products.c.id == product_id, _active
                )
            )
        ).first()
        await session.rollback()
        if row is None:
            raise NotFoundError("Product not found")

        logger.warning(
            "Insufficient stock for product %s: requested=%s available=%s",
            product_id, quantity, row.stock_quantity,
        )
        event = InventoryInsufficient(
            product_id=product_id,
            product_name=row.name,
            requested_quantity=quantity,
            available_quantity=row.stock_quantity,
            reason=reason,
            timestamp=now,
        )
        await publisher.publish(INVENTORY_INSUFFICIENT, event.model_dump(mode="json"))
        return False

    current = (
        await session.execute(
            select(products.c.stock_quantity).where(products.c.id == product_id)
        )
    ).scalar_one()
    await session.commit()

    event = InventoryUpdated(
        product_id=product_id,
        previous_quantity=current + quantity,
        current_quantity=current,
        reason=reason,
        timestamp=now,
    )
    await publisher.publish(INVENTORY_UPDATED, event.model_dump(mode="json"))
    return True


async def release_stock(
    session: AsyncSession,
    publisher: EventPublisher,
    product_id: int,
    quantity: int,
    reason: str,
) -> int:
    """
    在庫解放（Saga の補償トランザクション）

    引き当て済みの在庫を戻す。論理削除済みの商品でも在庫は戻す。
    戻した後の在庫数を返す。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock_quantity=products.c.stock_quantity + quantity, updated_at=now)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Product not found")

    current = (
        await session.execute(
            select(products.c.stock_quantity).where(products.c.id == product_id)
        )
    ).scalar_one()
    await session.commit()
    logger.info("Released %s unit(s) of product %s: %s", quantity, product_id, reason)

    event = InventoryUpdated(
        product_id=product_id,
        previous_quantity=current - quantity,
        current_quantity=current,
        reason=reason,
        timestamp=now,
    )
    await publisher.publish(INVENTORY_UPDATED, event.model_dump(mode="json"))
    return current
