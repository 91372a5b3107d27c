"""
Inventory Service - FastAPI エントリーポイント

在庫台帳サービス。
  Public:   在庫の参照
  Admin:    在庫レコードの作成・更新・一覧
  Internal: Order Service の Saga から呼ばれる reserve / release / confirm
"""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.errors import StockNotFound, register_exception_handlers
from services.common.logging_config import setup_logging
from services.common.security import require_roles

from . import commands, event_store, queries
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

setup_logging()
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    logger.info("Inventory service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
register_exception_handlers(app)

admin_only = Depends(require_roles("ADMIN"))
internal_only = Depends(require_roles("INTERNAL"))


# ── Request Models ───────────────────────────────


class CreateStockRequest(BaseModel):
    product_id: int = Field(gt=0)
    available_quantity: int = Field(ge=0)


class UpdateStockRequest(BaseModel):
    available_quantity: int = Field(ge=0)


class StockChangeRequest(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


# ── Public ───────────────────────────────────────


@app.get("/api/inventory/{product_id}")
async def get_stock(product_id: int):
    """在庫を参照する"""
    async with async_session() as session:
        record = await queries.get_stock(session, product_id)
        if record is None:
            raise StockNotFound(f"Inventory not found for product ID: {product_id}")
        return record


# ── Admin ────────────────────────────────────────


@app.post("/api/inventory", status_code=201, dependencies=[admin_only])
async def create_stock(req: CreateStockRequest):
    async with async_session() as session:
        return await commands.create_stock(
            session, redis_pool, req.product_id, req.available_quantity
        )


@app.put("/api/inventory/{product_id}", dependencies=[admin_only])
async def update_stock(product_id: int, req: UpdateStockRequest):
    async with async_session() as session:
        return await commands.update_stock(
            session, redis_pool, product_id, req.available_quantity
        )


@app.get("/api/inventory", dependencies=[admin_only])
async def list_stock():
    async with async_session() as session:
        return await queries.list_stock(session)


# ── Internal (Saga 用) ───────────────────────────


@app.post("/api/inventory/reserve", dependencies=[internal_only])
async def reserve_stock(req: StockChangeRequest):
    """在庫引き当てコマンド"""
    async with async_session() as session:
        return await commands.reserve_stock(
            session, redis_pool, req.product_id, req.quantity
        )


@app.post("/api/inventory/release", dependencies=[internal_only])
async def release_stock(req: StockChangeRequest):
    """在庫解放コマンド（補償トランザクション）"""
    async with async_session() as session:
        return await commands.release_stock(
            session, redis_pool, req.product_id, req.quantity
        )


@app.post("/api/inventory/confirm", dependencies=[internal_only])
async def confirm_stock(req: StockChangeRequest):
    """在庫確定コマンド（支払い成功）"""
    async with async_session() as session:
        return await commands.confirm_stock(
            session, redis_pool, req.product_id, req.quantity
        )


# ── Event Log ────────────────────────────────────


@app.get("/events", dependencies=[admin_only])
async def get_all_events():
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{product_id}", dependencies=[admin_only])
async def get_product_events(product_id: int):
    async with async_session() as session:
        return await event_store.load_events(session, product_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
