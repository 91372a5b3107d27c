"""
Pytest configuration and shared fixtures.

Each service gets its own SQLite file database (aiosqlite) and a mocked Redis
connection. The saga talks to the real inventory and product FastAPI apps
in-process through httpx.ASGITransport.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INVENTORY_SERVICE_URL", "http://inventory")
os.environ.setdefault("PRODUCT_SERVICE_URL", "http://product")

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app import queries as inventory_queries
from services.inventory.app.schema import metadata as inventory_metadata
from services.order.app.clients import InventoryClient, ProductClient
from services.order.app.orchestrator import OrderSagaOrchestrator
from services.order.app.schema import metadata as order_metadata
from services.product.app import commands as product_commands
from services.product.app import main as product_main
from services.product.app.schema import metadata as product_metadata


async def _session_factory(path, metadata):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis():
    """Redis stand-in that records every publish call."""
    conn = AsyncMock()
    conn.publish = AsyncMock(return_value=1)
    return conn


@pytest_asyncio.fixture
async def inventory_db(tmp_path):
    engine, factory = await _session_factory(tmp_path / "inventory.db", inventory_metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def product_db(tmp_path):
    engine, factory = await _session_factory(tmp_path / "product.db", product_metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def order_db(tmp_path):
    engine, factory = await _session_factory(tmp_path / "order.db", order_metadata)
    yield factory
    await engine.dispose()


@pytest.fixture
def inventory_app(monkeypatch, inventory_db, redis):
    monkeypatch.setattr(inventory_main, "async_session", inventory_db)
    monkeypatch.setattr(inventory_main, "redis_pool", redis)
    return inventory_main.app


@pytest.fixture
def product_app(monkeypatch, product_db):
    monkeypatch.setattr(product_main, "async_session", product_db)
    return product_main.app


@pytest_asyncio.fixture
async def inventory_http(inventory_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=inventory_app), base_url="http://inventory"
    ) as client:
        yield client


@pytest_asyncio.fixture
async def product_http(product_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=product_app), base_url="http://product"
    ) as client:
        yield client


@pytest.fixture
def orchestrator(order_db, redis, product_http, inventory_http):
    return OrderSagaOrchestrator(
        order_db,
        redis,
        ProductClient(product_http),
        InventoryClient(inventory_http),
    )


@pytest.fixture
def seed_product(product_db):
    async def _seed(price: str, name: str = "Widget") -> int:
        async with product_db() as session:
            product = await product_commands.create_product(
                session, name, None, Decimal(price)
            )
        return product["id"]

    return _seed


@pytest.fixture
def seed_stock(inventory_db, redis):
    async def _seed(product_id: int, available: int) -> dict:
        async with inventory_db() as session:
            return await inventory_commands.create_stock(
                session, redis, product_id, available
            )

    return _seed


@pytest.fixture
def stock_of(inventory_db):
    async def _read(product_id: int) -> tuple[int, int]:
        async with inventory_db() as session:
            record = await inventory_queries.get_stock(session, product_id)
        return record["available_quantity"], record["reserved_quantity"]

    return _read


@pytest.fixture
def stocked_product(seed_product, seed_stock):
    """Create a product with a price and a stock record in one step."""

    async def _create(price: str, available: int) -> int:
        product_id = await seed_product(price)
        await seed_stock(product_id, available)
        return product_id

    return _create
