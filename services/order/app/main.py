"""
Order Service - FastAPI エントリーポイント

注文 Saga（在庫の引き当て・確定・補償）と Order Ledger を公開する。
ユーザーはゲートウェイで認証済みで、X-User-Id / X-User-Roles ヘッダーで識別する。
"""

import logging
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.errors import Forbidden, register_exception_handlers
from services.common.logging_config import setup_logging
from services.common.security import Principal, require_roles

from .aggregate import OrderStatus
from .clients import InventoryClient, ProductClient
from .orchestrator import OrderSagaOrchestrator
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
INVENTORY_SERVICE_URL = os.environ["INVENTORY_SERVICE_URL"]
PRODUCT_SERVICE_URL = os.environ["PRODUCT_SERVICE_URL"]
INVENTORY_TIMEOUT_SECONDS = float(os.environ.get("INVENTORY_TIMEOUT_SECONDS", "5"))
PRODUCT_TIMEOUT_SECONDS = float(os.environ.get("PRODUCT_TIMEOUT_SECONDS", "5"))
COMPENSATION_ATTEMPTS = int(os.environ.get("COMPENSATION_ATTEMPTS", "3"))

setup_logging()
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
inventory_http: httpx.AsyncClient | None = None
product_http: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, inventory_http, product_http
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    # httpx.Timeout は段階ごとの上限。呼び出し全体の上限はクライアントの deadline
    inventory_http = httpx.AsyncClient(
        base_url=INVENTORY_SERVICE_URL,
        timeout=httpx.Timeout(INVENTORY_TIMEOUT_SECONDS),
    )
    product_http = httpx.AsyncClient(
        base_url=PRODUCT_SERVICE_URL,
        timeout=httpx.Timeout(PRODUCT_TIMEOUT_SECONDS),
    )
    logger.info("Order service started")
    yield
    await inventory_http.aclose()
    await product_http.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
register_exception_handlers(app)

customer = require_roles("USER", "ADMIN")
admin = require_roles("ADMIN")


def get_orchestrator() -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(
        async_session,
        redis_pool,
        ProductClient(product_http, deadline=PRODUCT_TIMEOUT_SECONDS),
        InventoryClient(
            inventory_http,
            compensation_attempts=COMPENSATION_ATTEMPTS,
            deadline=INVENTORY_TIMEOUT_SECONDS,
        ),
    )


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemRequest] = Field(min_length=1)
    payment_success: bool | None = None


class PaymentRequest(BaseModel):
    payment_success: bool


# PAID は 201、FAILED は 422、支払い待ち (RESERVED) は 202
_PLACE_STATUS_CODES = {
    OrderStatus.PAID.value: 201,
    OrderStatus.FAILED.value: 422,
    OrderStatus.RESERVED.value: 202,
}


# ── User API ─────────────────────────────────────


@app.post("/api/orders")
async def place_order(
    req: PlaceOrderRequest,
    principal: Principal = Depends(customer),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """注文 Saga を実行する"""
    record = await orchestrator.place_order(
        user_id=principal.numeric_user_id(),
        items=[(item.product_id, item.quantity) for item in req.items],
        payment_success=req.payment_success,
    )
    return JSONResponse(
        status_code=_PLACE_STATUS_CODES.get(record["status"], 200),
        content=record,
    )


@app.get("/api/orders/my-orders")
async def get_my_orders(
    principal: Principal = Depends(customer),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_user_orders(principal.numeric_user_id())


@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: int,
    principal: Principal = Depends(customer),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """注文詳細（本人または管理者）"""
    record = await orchestrator.get_order(order_id)
    if not principal.has_any_role("ADMIN") and record["user_id"] != principal.numeric_user_id():
        raise Forbidden("Order belongs to another user")
    return record


# ── Admin API ────────────────────────────────────


@app.get("/api/orders", dependencies=[Depends(admin)])
async def get_all_orders(
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_all_orders()


@app.put("/api/orders/{order_id}/cancel", dependencies=[Depends(admin)])
async def cancel_order(
    order_id: int,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """注文をキャンセルし、引き当て中の在庫を解放する"""
    return await orchestrator.cancel_order(order_id)


@app.put("/api/orders/{order_id}/payment", dependencies=[Depends(admin)])
async def resolve_payment(
    order_id: int,
    req: PaymentRequest,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """支払い待ち (RESERVED) の注文に支払い結果を反映する"""
    return await orchestrator.resolve_payment(order_id, req.payment_success)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
