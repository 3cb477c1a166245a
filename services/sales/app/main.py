"""
Sales Service — FastAPI エントリーポイント

注文の受付と照会。注文作成は OrderSagaOrchestrator が
Inventory Gateway 経由で在庫サービスと協調して行う。

起動時に、前回のプロセスが途中で残した Saga を resume() で片付ける。
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.dependencies import get_publisher, get_session
from services.shared.errors import NotFoundError, PermissionDeniedError, ValidationError
from services.shared.identity import (
    ADMIN,
    SELLER,
    IdentityClient,
    Principal,
    get_principal,
    install_auth_forwarding,
    require_roles,
)
from services.shared.logging_config import configure_logging, install_correlation_middleware
from services.shared.messaging import EventPublisher
from services.shared.responses import install_error_handlers, ok

from . import queries
from .aggregate import Order, OrderStatus
from .config import (
    AUTH_SERVICE_URL,
    DATABASE_URL,
    EVENT_GROUP,
    INVENTORY_SERVICE_TOKEN,
    INVENTORY_SERVICE_URL,
    INVENTORY_TIMEOUT_SECONDS,
    LOG_LEVEL,
    REDIS_URL,
    RESERVATION_POLICY,
    SAGA_RESUME_AFTER_SECONDS,
    STREAM_MAXLEN,
)
from .gateway import InventoryGateway
from .models import CancelOrderRequest, CreateOrderRequest, OrderResponse, UpdateStatusRequest
from .orchestrator import OrderSagaOrchestrator
from .schema import Base

configure_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)


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
    inventory_client = httpx.AsyncClient(
        base_url=INVENTORY_SERVICE_URL, timeout=INVENTORY_TIMEOUT_SECONDS
    )
    app.state.gateway = InventoryGateway(inventory_client, INVENTORY_SERVICE_TOKEN)
    auth_client = httpx.AsyncClient(base_url=AUTH_SERVICE_URL, timeout=10.0)
    app.state.identity = IdentityClient(auth_client)
    app.state.reservation_policy = RESERVATION_POLICY

    async with app.state.session_factory() as session:
        orchestrator = OrderSagaOrchestrator(
            session, app.state.gateway, app.state.publisher, RESERVATION_POLICY
        )
        resumed = await orchestrator.resume(timedelta(seconds=SAGA_RESUME_AFTER_SECONDS))
        if resumed:
            logger.info("Resumed %d unfinished saga(s)", resumed)

    yield
    await auth_client.aclose()
    await inventory_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Sales Service", lifespan=lifespan)
install_error_handlers(app)
install_correlation_middleware(app)
install_auth_forwarding(app)

staff_only = require_roles(ADMIN, SELLER)


def get_gateway(request: Request) -> InventoryGateway:
    return request.app.state.gateway


def get_orchestrator(
    request: Request,
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
    gateway: InventoryGateway = Depends(get_gateway),
) -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(
        session, gateway, publisher, request.app.state.reservation_policy
    )


def _dump(order: Order) -> dict:
    return OrderResponse.model_validate(order).model_dump(mode="json")


def _dump_all(orders: list[Order]) -> list[dict]:
    return [_dump(o) for o in orders]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Command Endpoints ────────────────────────────


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """注文作成。顧客 ID は認証済みの呼び出し元から取る。"""
    order = await orchestrator.create_order(principal.subject, req.lines, req.notes)
    return ok(_dump(order), "Order created successfully")


@app.put("/orders/{order_id}/status", dependencies=[Depends(staff_only)])
async def update_order_status(
    order_id: int,
    req: UpdateStatusRequest,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.update_status(order_id, req.status, req.reason)
    return ok(_dump(order), "Order status updated successfully")


@app.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    req: CancelOrderRequest | None = None,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    order = await queries.get_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if not principal.can_access(order.customer_id):
        raise PermissionDeniedError()

    reason = req.reason if req else CancelOrderRequest().reason
    order = await orchestrator.cancel_order(order_id, reason)
    return ok(_dump(order), "Order cancelled successfully")


# ── Query Endpoints ──────────────────────────────
# /orders/{order_id} より先に固定パスを登録する


@app.get("/orders", dependencies=[Depends(staff_only)])
async def list_orders(session: AsyncSession = Depends(get_session)):
    return ok(_dump_all(await queries.list_orders(session)))


@app.get("/orders/mine")
async def list_my_orders(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    return ok(_dump_all(await queries.list_by_customer(session, principal.subject)))


@app.get("/orders/customer/{customer_id}", dependencies=[Depends(staff_only)])
async def list_customer_orders(customer_id: str, session: AsyncSession = Depends(get_session)):
    return ok(_dump_all(await queries.list_by_customer(session, customer_id)))


@app.get("/orders/status/{status}", dependencies=[Depends(staff_only)])
async def list_orders_by_status(status: str, session: AsyncSession = Depends(get_session)):
    """status は整数コード (0〜5) または名前"""
    try:
        parsed = OrderStatus.parse(status)
    except ValueError:
        raise ValidationError("Invalid order status", errors=[f"status: {status}"]) from None
    return ok(_dump_all(await queries.list_by_status(session, parsed)))


@app.get("/orders/recent", dependencies=[Depends(staff_only)])
async def list_recent_orders(limit: int = 10, session: AsyncSession = Depends(get_session)):
    if not 1 <= limit <= 100:
        raise ValidationError("Limit must be between 1 and 100")
    return ok(_dump_all(await queries.list_recent(session, limit)))


@app.get("/orders/reports/sales", dependencies=[Depends(staff_only)])
async def sales_report(
    start: datetime,
    end: datetime,
    session: AsyncSession = Depends(get_session),
):
    """期間内の売上合計（両端を含む、キャンセル除く）"""
    start, end = _as_utc(start), _as_utc(end)
    if start > end:
        raise ValidationError("Start date must be before end date")
    total = await queries.total_sales_in_period(session, start, end)
    return ok({"start": start, "end": end, "total": total})


@app.get("/orders/{order_id}")
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    order = await queries.get_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if not principal.can_access(order.customer_id):
        raise PermissionDeniedError()
    return ok(_dump(order))


@app.get("/products/available")
async def list_available_products(gateway: InventoryGateway = Depends(get_gateway)):
    return ok(await gateway.list_available())


@app.get("/health")
async def health():
    return {"status": "ok", "service": "sales-service"}
