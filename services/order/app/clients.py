"""
Order Service - 外部サービスクライアント

Saga が呼び出す 2 つのサービスへの HTTP クライアント。
  ProductClient:   価格参照 (Product Service)
  InventoryClient: 在庫の reserve / release / confirm (Inventory Service)

どちらも httpx.AsyncClient を受け取る。httpx.Timeout は接続・読み取りなどの
段階ごとの上限なので、呼び出し全体には deadline 秒の上限を asyncio.wait_for で掛ける。
リモートの失敗はすべて services.common.errors の例外に変換する。
  404                    → ProductNotFound / StockNotFound
  409 + エラーコード       → InsufficientStock / InsufficientReservation
  5xx / タイムアウト / 接続 / deadline 超過 → ServiceUnavailable
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation

import httpx

from services.common.errors import (
    ProductNotFound,
    ServiceError,
    ServiceUnavailable,
    StockNotFound,
    error_for_code,
)
from services.common.security import INTERNAL_HEADERS

logger = logging.getLogger(__name__)


def _error_payload(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text
    if isinstance(body, dict):
        return body.get("error"), body.get("message") or response.text
    return None, response.text


def _raise_for_response(
    response: httpx.Response,
    action: str,
    product_id: int,
    not_found: type[ServiceError],
) -> None:
    if response.is_success:
        return
    code, message = _error_payload(response)
    logger.error(
        "%s failed for productId=%s: HTTP %s %s",
        action, product_id, response.status_code, message,
    )
    if response.status_code == 404:
        raise not_found(message)
    if response.status_code >= 500:
        raise ServiceUnavailable(
            f"{action} failed for product {product_id}: HTTP {response.status_code}"
        )
    error_cls = error_for_code(code)
    if response.status_code in (400, 409) and error_cls is not None:
        raise error_cls(message)
    raise ServiceError(
        f"{action} failed for product {product_id}: HTTP {response.status_code}"
    )


class ProductClient:
    """Pricing Lookup: product_id から現在価格を引く（読み取り専用）"""

    def __init__(self, client: httpx.AsyncClient, deadline: float | None = None):
        self.client = client
        self.deadline = deadline

    async def get_price(self, product_id: int) -> Decimal:
        logger.info("Fetching product details for productId=%s", product_id)
        try:
            response = await asyncio.wait_for(
                self.client.get(f"/api/products/{product_id}", headers=INTERNAL_HEADERS),
                timeout=self.deadline,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ServiceUnavailable(f"Product service timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ServiceUnavailable(f"Product service unreachable: {e}") from e

        _raise_for_response(response, "get product", product_id, ProductNotFound)

        try:
            return Decimal(str(response.json()["price"]))
        except (KeyError, ValueError, InvalidOperation) as e:
            raise ServiceUnavailable(
                f"Product service returned no usable price for {product_id}"
            ) from e


class InventoryClient:
    """Stock Ledger への内部呼び出し"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        compensation_attempts: int = 3,
        deadline: float | None = None,
    ):
        self.client = client
        self.deadline = deadline
        self.compensation_attempts = max(1, compensation_attempts)

    async def reserve(self, product_id: int, quantity: int) -> dict:
        return await self._call("reserve", product_id, quantity)

    async def confirm(self, product_id: int, quantity: int) -> dict:
        return await self._call("confirm", product_id, quantity)

    async def release(self, product_id: int, quantity: int) -> dict:
        """
        引き当ての解放（補償）。

        リクエストが在庫サービスに届いていないと分かる失敗（接続失敗・接続タイムアウト）
        だけを再試行する。読み取りタイムアウトなどは届いた可能性があり、
        冪等キーが無いので再試行すると二重に解放しかねない。
        """
        for attempt in range(1, self.compensation_attempts + 1):
            try:
                return await self._send("release", product_id, quantity)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if attempt == self.compensation_attempts:
                    raise ServiceUnavailable(
                        f"Inventory service unreachable during release: {e}"
                    ) from e
                logger.warning(
                    "Release for productId=%s not delivered (attempt %s/%s): %s",
                    product_id, attempt, self.compensation_attempts, e,
                )
                await asyncio.sleep(0.1 * attempt)
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                raise ServiceUnavailable(
                    f"Inventory service timed out during release: {e}"
                ) from e
            except httpx.HTTPError as e:
                raise ServiceUnavailable(
                    f"Inventory service error during release: {e}"
                ) from e

    async def _call(self, action: str, product_id: int, quantity: int) -> dict:
        try:
            return await self._send(action, product_id, quantity)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ServiceUnavailable(
                f"Inventory service timed out during {action}: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise ServiceUnavailable(
                f"Inventory service error during {action}: {e}"
            ) from e

    async def _send(self, action: str, product_id: int, quantity: int) -> dict:
        logger.info(
            "Calling Inventory Service to %s %s units for productId=%s",
            action, quantity, product_id,
        )
        response = await asyncio.wait_for(
            self.client.post(
                f"/api/inventory/{action}",
                json={"product_id": product_id, "quantity": quantity},
                headers=INTERNAL_HEADERS,
            ),
            timeout=self.deadline,
        )
        _raise_for_response(response, action, product_id, StockNotFound)
        return response.json()
