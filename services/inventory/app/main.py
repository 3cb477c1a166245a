"""
Inventory Service — FastAPI エントリーポイント

商品カタログと在庫 (Stock Ledger) を所有するサービス。
販売サービスは Inventory Gateway 経由で以下を同期的に呼び出す:

  GET  /products/{id}
  GET  /products/{id}/validate-stock/{qty}
  POST /products/{id}/update-stock      在庫引き当て（条件付き減算、スタッフのみ）
  POST /products/{id}/release-stock     在庫解放（補償トランザクション、スタッフのみ）
  GET  /products/with-stock

レスポンスはすべて {success, message, data, errors[], timestamp} で包む。
バックグラウンドで販売サービスの注文イベントを購読する (subscriber.py)。
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.dependencies import get_publisher, get_session
from services.shared.errors import NotFoundError, ValidationError
from services.shared.identity import ADMIN, SELLER, IdentityClient, require_roles
from services.shared.logging_config import (
    configure_logging,
    install_correlation_middleware,
)
from services.shared.messaging import EventPublisher
from services.shared.responses import failure, install_error_handlers, ok

from . import commands, queries
from .config import (
    AUTH_SERVICE_URL,
    CONSUMER_NAME,
    DATABASE_URL,
    EVENT_GROUP,
    LOG_LEVEL,
    ORDER_EVENTS_GROUP,
    REDIS_URL,
    STREAM_MAXLEN,
)
from .models import ProductCreate, ProductUpdate, StockChangeRequest
from .schema import Base
from .subscriber import start_subscribers

configure_logging(LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_async_engine(DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    app.state.publisher = EventPublisher(redis_pool, group=EVENT_GROUP, maxlen=STREAM_MAXLEN)
    auth_client = httpx.AsyncClient(base_url=AUTH_SERVICE_URL, timeout=10.0)
    app.state.identity = IdentityClient(auth_client)

    shutdown_event = asyncio.Event()
    subscriber_tasks = start_subscribers(
        redis_pool, ORDER_EVENTS_GROUP, CONSUMER_NAME, shutdown_event
    )
    yield
    shutdown_event.set()
    for task in subscriber_tasks:
        task.cancel()
    await asyncio.gather(*subscriber_tasks, return_exceptions=True)
    await auth_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)
install_correlation_middleware(app)

staff_only = require_roles(ADMIN, SELLER)
admin_only = require_roles(ADMIN)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/products")
async def list_products(session: AsyncSession = Depends(get_session)):
    return ok(await queries.list_products(session))


@app.get("/products/with-stock")
async def list_products_with_stock(session: AsyncSession = Depends(get_session)):
    return ok(await queries.list_products_with_stock(session))


@app.get("/products/search")
async def search_products(term: str = "", session: AsyncSession = Depends(get_session)):
    return ok(await queries.search_products(session, term))


@app.get("/products/{product_id}")
async def get_product(product_id: int, session: AsyncSession = Depends(get_session)):
    product = await queries.get_product(session, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return ok(product)


@app.get("/products/{product_id}/validate-stock/{quantity}")
async def validate_stock(
    product_id: int,
    quantity: int,
    session: AsyncSession = Depends(get_session),
):
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    return ok(await queries.has_sufficient_stock(session, product_id, quantity))


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/products", status_code=201, dependencies=[Depends(staff_only)])
async def create_product(
    req: ProductCreate,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    product = await commands.create_product(session, publisher, req)
    return ok(product, "Product created successfully")


@app.put("/products/{product_id}", dependencies=[Depends(staff_only)])
async def update_product(
    product_id: int,
    req: ProductUpdate,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    product = await commands.update_product(session, publisher, product_id, req)
    return ok(product, "Product updated successfully")


@app.delete("/products/{product_id}", dependencies=[Depends(admin_only)])
async def delete_product(product_id: int, session: AsyncSession = Depends(get_session)):
    await commands.delete_product(session, product_id)
    return ok(True, "Product deleted successfully")


@app.post("/products/{product_id}/update-stock", dependencies=[Depends(staff_only)])
async def update_stock(
    product_id: int,
    req: StockChangeRequest,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    """在庫引き当て。在庫不足は 409 + data=false で返す。"""
    reserved = await commands.decrement_stock(
        session, publisher, product_id, req.quantity, req.reason
    )
    if not reserved:
        return failure(409, "Insufficient stock", data=False)
    return ok(True, "Stock updated successfully")


@app.post("/products/{product_id}/release-stock", dependencies=[Depends(staff_only)])
async def release_stock(
    product_id: int,
    req: StockChangeRequest,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    """在庫解放コマンド（補償トランザクション）"""
    current = await commands.release_stock(
        session, publisher, product_id, req.quantity, req.reason
    )
    return ok(current, "Stock released successfully")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
