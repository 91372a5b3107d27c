"""
Common - エラー分類と HTTP エラーレスポンス

各サービスはドメインの失敗をここで定義した例外として送出する。
例外は HTTP ステータスとエラーコードを持ち、register_exception_handlers が
共通のエラーレスポンス {timestamp, status, error, message, path} に変換する。

Order Service のクライアントはこのエラーコードを読んで、
リモートの失敗を同じ例外に復元する。
"""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """全ドメイン例外の基底クラス"""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


# ── 検証エラー ───────────────────────────────────


class ValidationFailed(ServiceError):
    status_code = 400
    error_code = "VALIDATION_FAILED"


class InvalidOrder(ValidationFailed):
    """空の明細・数量 0 以下など、リモート呼び出し前に弾く注文"""

    error_code = "INVALID_ORDER"


# ── リソースエラー ───────────────────────────────


class NotFound(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class StockNotFound(NotFound):
    error_code = "STOCK_NOT_FOUND"


class ProductNotFound(NotFound):
    error_code = "PRODUCT_NOT_FOUND"


class OrderNotFound(NotFound):
    error_code = "ORDER_NOT_FOUND"


class AlreadyExists(ServiceError):
    status_code = 409
    error_code = "ALREADY_EXISTS"


# ── ビジネスルールエラー ─────────────────────────


class InsufficientStock(ServiceError):
    """available_quantity が要求数量に足りない"""

    status_code = 409
    error_code = "INSUFFICIENT_STOCK"


class InsufficientReservation(ServiceError):
    """reserved_quantity が解放・確定数量に足りない"""

    status_code = 409
    error_code = "INSUFFICIENT_RESERVATION"


class AlreadyCancelled(ServiceError):
    status_code = 409
    error_code = "ALREADY_CANCELLED"


class InvalidStateTransition(ServiceError):
    """注文の状態遷移表にない遷移"""

    status_code = 409
    error_code = "INVALID_STATE_TRANSITION"


class StockConfirmationFailed(ServiceError):
    """
    支払い成功後の在庫確定が途中で失敗した。

    確定済みの数量は元に戻せないため confirmed_lines に残し、
    手動での突き合わせ対象とする。
    """

    status_code = 502
    error_code = "STOCK_CONFIRMATION_FAILED"

    def __init__(
        self,
        message: str = "",
        order_id: int | None = None,
        confirmed_lines: list[dict] | None = None,
    ) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.confirmed_lines = confirmed_lines or []


# ── リモート / 一時的エラー ──────────────────────


class ServiceUnavailable(ServiceError):
    """タイムアウト・接続失敗・5xx"""

    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


# ── 認証・認可 ───────────────────────────────────


class Unauthorized(ServiceError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class Forbidden(ServiceError):
    status_code = 403
    error_code = "FORBIDDEN"


_ERRORS_BY_CODE: dict[str, type[ServiceError]] = {}


def _collect(cls: type[ServiceError]) -> None:
    for sub in cls.__subclasses__():
        _ERRORS_BY_CODE.setdefault(sub.error_code, sub)
        _collect(sub)


_collect(ServiceError)


def error_for_code(error_code: str | None) -> type[ServiceError] | None:
    """エラーコードから例外クラスを引く（クライアント側での復元用）。"""
    if not error_code:
        return None
    return _ERRORS_BY_CODE.get(error_code)


def error_body(status: int, error: str, message: str, path: str) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "error": error,
        "message": message,
        "path": path,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """ServiceError と想定外の例外を共通のエラーレスポンスに変換する。"""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.error_code, exc.message)
        else:
            logger.warning("%s: %s", exc.error_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(
                exc.status_code, exc.error_code, exc.message, request.url.path
            ),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body(
                500, "INTERNAL_ERROR", "Internal server error", request.url.path
            ),
        )
