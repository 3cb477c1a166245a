"""
Inventory Service — クエリハンドラ (Read 側)

論理削除された商品 (active = False) はすべての読み取りから除外する。
"""

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ProductResponse
from .schema import products

_active = products.c.active.is_(True)


async def get_product(session: AsyncSession, product_id: int) -> ProductResponse | None:
    result = await session.execute(
        select(products).where(products.c.id == product_id, _active)
    )
    row = result.first()
    if not row:
        return None
    return ProductResponse.model_validate(row)


async def list_products(session: AsyncSession) -> list[ProductResponse]:
    result = await session.execute(
        select(products).where(_active).order_by(products.c.name)
    )
    return [ProductResponse.model_validate(row) for row in result.fetchall()]


async def list_products_with_stock(session: AsyncSession) -> list[ProductResponse]:
    """販売可能な（在庫が 1 以上ある）商品"""
    result = await session.execute(
        select(products)
        .where(_active, products.c.stock_quantity > 0)
        .order_by(products.c.name)
    )
    return [ProductResponse.model_validate(row) for row in result.fetchall()]


async def search_products(session: AsyncSession, term: str | None) -> list[ProductResponse]:
    """商品名または説明の部分一致（大文字小文字を区別しない）"""
    if not term or not term.strip():
        return await list_products(session)
    pattern = f"%{term.strip().lower()}%"
    result = await session.execute(
        select(products)
        .where(
            _active,
            or_(
                func.lower(products.c.name).like(pattern),
                func.lower(products.c.description).like(pattern),
            ),
        )
        .order_by(products.c.name)
    )
    return [ProductResponse.model_validate(row) for row in result.fetchall()]


async def has_sufficient_stock(session: AsyncSession, product_id: int, quantity: int) -> bool:
    result = await session.execute(
        select(products.c.stock_quantity).where(products.c.id == product_id, _active)
    )
    stock = result.scalar_one_or_none()
    return stock is not None and stock >= quantity
