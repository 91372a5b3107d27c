"""
Product Service - コマンドハンドラ

カタログ管理は最小限（作成のみ）。価格は Decimal で保持する。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ValidationFailed

from . import queries
from .schema import products

logger = logging.getLogger(__name__)


async def create_product(
    session: AsyncSession,
    name: str,
    description: str | None,
    price: Decimal,
) -> dict:
    if price <= 0:
        raise ValidationFailed("Price must be positive")

    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(products).values(
            name=name,
            description=description,
            price=price,
            created_at=now,
            updated_at=now,
        )
    )
    product_id = result.inserted_primary_key[0]
    await session.commit()

    logger.info("Product created id=%s price=%s", product_id, price)
    return await queries.get_product(session, product_id)
