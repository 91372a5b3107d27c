"""
Product Service - FastAPI エントリーポイント

Saga から見ると「価格参照」だけを提供する外部サービス。
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.errors import ProductNotFound, register_exception_handlers
from services.common.logging_config import setup_logging
from services.common.security import require_roles

from . import commands, queries
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]

setup_logging()
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Product service started")
    yield
    await engine.dispose()


app = FastAPI(title="Product Service", lifespan=lifespan)
register_exception_handlers(app)


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


@app.get("/api/products/{product_id}")
async def get_product(product_id: int):
    """商品と現在価格を返す"""
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if product is None:
            raise ProductNotFound(f"Product not found: {product_id}")
        return product


@app.get("/api/products")
async def list_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.post(
    "/api/products",
    status_code=201,
    dependencies=[Depends(require_roles("ADMIN"))],
)
async def create_product(req: CreateProductRequest):
    async with async_session() as session:
        return await commands.create_product(
            session, req.name, req.description, req.price
        )


@app.get("/health")
async def health():
    return {"status": "ok", "service": "product-service"}
