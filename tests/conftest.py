"""Shared fixtures.

Each test gets its own SQLite files (one per service, like production
gets one database per service). The sales side talks to the real
inventory app in-process through httpx.ASGITransport.
"""

from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app.models import ProductCreate
from services.inventory.app.schema import Base as InventoryBase
from services.inventory.app.schema import products
from services.sales.app.gateway import InventoryGateway
from services.sales.app.orchestrator import OrderSagaOrchestrator
from services.sales.app.schema import Base as SalesBase
from services.shared.identity import get_principal
from tests.fakes import ADMIN_USER, FakePublisher


async def _open(url: str, base):
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def inventory_db(tmp_path):
    engine, factory = await _open(
        f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}", InventoryBase
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def sales_db(tmp_path):
    engine, factory = await _open(f"sqlite+aiosqlite:///{tmp_path / 'sales.db'}", SalesBase)
    yield factory
    await engine.dispose()


@pytest.fixture
async def inventory_session(inventory_db):
    async with inventory_db() as session:
        yield session


@pytest.fixture
async def sales_session(sales_db):
    async with sales_db() as session:
        yield session


@pytest.fixture
def inventory_events():
    return FakePublisher()


@pytest.fixture
def sales_events():
    return FakePublisher()


@pytest.fixture
def inventory_app(inventory_db, inventory_events):
    app = inventory_main.app
    app.state.session_factory = inventory_db
    app.state.publisher = inventory_events
    app.dependency_overrides[get_principal] = lambda: ADMIN_USER
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def inventory_client(inventory_app):
    transport = httpx.ASGITransport(app=inventory_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://inventory") as client:
        yield client


@pytest.fixture
def gateway(inventory_client):
    return InventoryGateway(inventory_client)


@pytest.fixture
def orchestrator(sales_session, gateway, sales_events):
    return OrderSagaOrchestrator(sales_session, gateway, sales_events)


@pytest.fixture
def add_product(inventory_db):
    """Seed a product directly in the inventory database."""

    async def _add(name: str, price: str = "10.00", stock: int = 10, description: str = ""):
        async with inventory_db() as session:
            return await inventory_commands.create_product(
                session,
                FakePublisher(),
                ProductCreate(
                    name=name,
                    description=description,
                    price=Decimal(price),
                    stock_quantity=stock,
                ),
            )

    return _add


@pytest.fixture
def stock_of(inventory_db):
    """Read the raw stock level, including soft-deleted products."""

    async def _stock(product_id: int) -> int:
        async with inventory_db() as session:
            result = await session.execute(
                select(products.c.stock_quantity).where(products.c.id == product_id)
            )
            return result.scalar_one()

    return _stock
