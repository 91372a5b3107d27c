"""
Tests for the order placement saga.

The orchestrator runs against the real product and inventory apps (in-process,
through httpx.ASGITransport) and its own SQLite order ledger.
"""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from services.common.errors import (
    AlreadyCancelled,
    InsufficientStock,
    InvalidOrder,
    InvalidStateTransition,
    OrderNotFound,
    ProductNotFound,
    ServiceUnavailable,
    StockConfirmationFailed,
    StockNotFound,
)
from services.order.app import commands
from services.order.app.aggregate import OrderStatus
from services.order.app.clients import InventoryClient, ProductClient
from services.order.app.orchestrator import OrderSagaOrchestrator


def saga_events(redis) -> list[dict]:
    return [
        json.loads(call.args[1])
        for call in redis.publish.call_args_list
        if call.args[0] == "saga_events"
    ]


def fail_on_call(real, failing_call: int, error: Exception) -> AsyncMock:
    """Wrap a client method so that its n-th call raises instead of running."""
    calls = {"n": 0}

    async def _side_effect(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == failing_call:
            raise error
        return await real(*args, **kwargs)

    return AsyncMock(side_effect=_side_effect)


class StallingTransport(httpx.AsyncBaseTransport):
    """
    Forwards to the real app, except that the n-th request under ``path`` either
    times out (``delay=None``) or stalls for ``delay`` seconds before it is sent.
    """

    def __init__(self, inner, path: str, failing_call: int, delay: float | None = None):
        self.inner = inner
        self.path = path
        self.failing_call = failing_call
        self.delay = delay
        self.calls = 0

    async def handle_async_request(self, request):
        if request.url.path.startswith(self.path):
            self.calls += 1
            if self.calls == self.failing_call:
                if self.delay is None:
                    raise httpx.ReadTimeout("read timed out", request=request)
                await asyncio.sleep(self.delay)
        return await self.inner.handle_async_request(request)


@pytest_asyncio.fixture
async def stalling_orchestrator(order_db, redis, inventory_app, product_app):
    """Build an orchestrator whose inventory or product calls misbehave once."""
    clients = []

    def _build(service: str, path: str, failing_call: int, delay=None, deadline=None):
        apps = {"inventory": inventory_app, "product": product_app}
        transports = {
            name: httpx.ASGITransport(app=app) for name, app in apps.items()
        }
        transports[service] = StallingTransport(
            transports[service], path, failing_call, delay
        )
        inventory_http = httpx.AsyncClient(
            transport=transports["inventory"], base_url="http://inventory"
        )
        product_http = httpx.AsyncClient(
            transport=transports["product"], base_url="http://product"
        )
        clients.extend([inventory_http, product_http])
        return OrderSagaOrchestrator(
            order_db,
            redis,
            ProductClient(product_http, deadline=deadline),
            InventoryClient(inventory_http, deadline=deadline),
        )

    yield _build
    for client in clients:
        await client.aclose()


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_paid_order_confirms_stock(self, orchestrator, stocked_product, stock_of):
        product_id = await stocked_product("19.99", 10)

        order = await orchestrator.place_order(1, [(product_id, 3)], payment_success=True)

        assert order["status"] == "PAID"
        assert order["total_amount"] == "59.97"
        assert order["payment_success"] is True
        assert order["items"] == [
            {"product_id": product_id, "quantity": 3, "price": "19.99"}
        ]
        assert await stock_of(product_id) == (7, 0)

    @pytest.mark.asyncio
    async def test_total_is_sum_of_line_extensions(
        self, orchestrator, stocked_product, stock_of
    ):
        first = await stocked_product("2.50", 10)
        second = await stocked_product("10.00", 10)

        order = await orchestrator.place_order(
            1, [(first, 4), (second, 1)], payment_success=True
        )

        expected = sum(
            Decimal(item["price"]) * item["quantity"] for item in order["items"]
        )
        assert Decimal(order["total_amount"]) == expected == Decimal("20.00")
        assert await stock_of(first) == (6, 0)
        assert await stock_of(second) == (9, 0)

    @pytest.mark.asyncio
    async def test_same_product_twice_is_reserved_per_line(
        self, orchestrator, stocked_product, stock_of
    ):
        product_id = await stocked_product("1.00", 10)

        order = await orchestrator.place_order(
            1, [(product_id, 2), (product_id, 3)], payment_success=True
        )

        assert [item["quantity"] for item in order["items"]] == [2, 3]
        assert await stock_of(product_id) == (5, 0)

    @pytest.mark.asyncio
    async def test_completed_saga_is_published(self, orchestrator, stocked_product, redis):
        product_id = await stocked_product("5.00", 10)

        order = await orchestrator.place_order(1, [(product_id, 1)], payment_success=True)

        event = saga_events(redis)[-1]
        assert event["event_type"] == "SagaCompleted"
        assert event["data"]["order_id"] == order["id"]
        actions = [step["action"] for step in event["data"]["saga_log"]]
        assert actions == ["ReserveStock", "ConfirmStock"]


class TestPaymentDeclined:
    @pytest.mark.asyncio
    async def test_declined_payment_releases_everything(
        self, orchestrator, stocked_product, stock_of
    ):
        product_id = await stocked_product("19.99", 10)

        order = await orchestrator.place_order(1, [(product_id, 3)], payment_success=False)

        assert order["status"] == "FAILED"
        assert order["payment_success"] is False
        assert order["total_amount"] == "59.97"
        assert await stock_of(product_id) == (10, 0)

    @pytest.mark.asyncio
    async def test_declined_order_is_persisted(self, orchestrator, stocked_product):
        product_id = await stocked_product("1.00", 10)

        order = await orchestrator.place_order(7, [(product_id, 1)], payment_success=False)

        assert await orchestrator.get_order(order["id"]) == order
        assert [o["id"] for o in await orchestrator.get_user_orders(7)] == [order["id"]]


class TestReservationFailure:
    @pytest.mark.asyncio
    async def test_failure_on_third_line_rolls_back_first_two(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        c = await stocked_product("3.00", 1)

        with pytest.raises(InsufficientStock):
            await orchestrator.place_order(1, [(a, 2), (b, 2), (c, 5)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)
        assert await stock_of(c) == (1, 0)
        assert await orchestrator.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_unknown_product_fails_pricing_and_compensates(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)

        with pytest.raises(ProductNotFound):
            await orchestrator.place_order(1, [(a, 4), (999, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await orchestrator.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_product_without_stock_record(
        self, orchestrator, seed_product, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        unstocked = await seed_product("4.00", name="Gadget")

        with pytest.raises(StockNotFound):
            await orchestrator.place_order(1, [(a, 1), (unstocked, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)

    @pytest.mark.asyncio
    async def test_compensated_saga_is_published(self, orchestrator, stocked_product, redis):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("1.00", 0)

        with pytest.raises(InsufficientStock):
            await orchestrator.place_order(1, [(a, 1), (b, 1)], payment_success=True)

        event = saga_events(redis)[-1]
        assert event["event_type"] == "SagaCompensated"
        assert event["data"]["order_id"] is None
        assert event["data"]["unreleased"] == []
        statuses = [(s["action"], s["status"]) for s in event["data"]["saga_log"]]
        assert statuses == [
            ("ReserveStock", "COMPLETED"),
            ("ReserveStock", "FAILED"),
            ("ReleaseStock (COMPENSATING)", "COMPLETED"),
        ]

    @pytest.mark.asyncio
    async def test_failed_release_is_reported_and_original_error_kept(
        self, orchestrator, stocked_product, stock_of, redis
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("1.00", 0)
        orchestrator.inventory.release = AsyncMock(
            side_effect=ServiceUnavailable("inventory down")
        )

        with pytest.raises(InsufficientStock):
            await orchestrator.place_order(1, [(a, 3), (b, 1)], payment_success=True)

        assert await stock_of(a) == (7, 3)
        event = saga_events(redis)[-1]
        assert event["data"]["unreleased"] == [
            {"product_id": a, "quantity": 3, "price": "1.00"}
        ]


class TestUnavailableDownstream:
    @pytest.mark.asyncio
    async def test_unavailable_inventory_on_second_line_compensates(
        self, orchestrator, stocked_product, stock_of, redis
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        orchestrator.inventory.reserve = fail_on_call(
            orchestrator.inventory.reserve, 2, ServiceUnavailable("inventory timed out")
        )

        with pytest.raises(ServiceUnavailable):
            await orchestrator.place_order(1, [(a, 4), (b, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)
        assert await orchestrator.get_all_orders() == []
        assert saga_events(redis)[-1]["event_type"] == "SagaCompensated"

    @pytest.mark.asyncio
    async def test_reserve_read_timeout_on_second_line_compensates(
        self, stalling_orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        saga = stalling_orchestrator("inventory", "/api/inventory/reserve", 2)

        with pytest.raises(ServiceUnavailable):
            await saga.place_order(1, [(a, 4), (b, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)
        assert await saga.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_reserve_past_deadline_on_second_line_compensates(
        self, stalling_orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        saga = stalling_orchestrator(
            "inventory", "/api/inventory/reserve", 2, delay=5, deadline=0.5
        )

        with pytest.raises(ServiceUnavailable):
            await saga.place_order(1, [(a, 4), (b, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)
        assert await saga.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_unavailable_pricing_on_later_line_compensates(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        orchestrator.products.get_price = fail_on_call(
            orchestrator.products.get_price, 2, ServiceUnavailable("product timed out")
        )

        with pytest.raises(ServiceUnavailable):
            await orchestrator.place_order(1, [(a, 4), (b, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)
        assert await orchestrator.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_pricing_read_timeout_on_later_line_compensates(
        self, stalling_orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        saga = stalling_orchestrator("product", "/api/products/", 2)

        with pytest.raises(ServiceUnavailable):
            await saga.place_order(1, [(a, 4), (b, 1)], payment_success=True)

        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)
        assert await saga.get_all_orders() == []


class TestInvalidOrder:
    @pytest.mark.asyncio
    async def test_empty_order(self, orchestrator, redis):
        with pytest.raises(InvalidOrder):
            await orchestrator.place_order(1, [], payment_success=True)
        redis.publish.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_non_positive_quantity_makes_no_remote_calls(
        self, orchestrator, stocked_product, stock_of, quantity
    ):
        a = await stocked_product("1.00", 10)
        orchestrator.products.get_price = AsyncMock()

        with pytest.raises(InvalidOrder):
            await orchestrator.place_order(1, [(a, 1), (a, quantity)], payment_success=True)

        orchestrator.products.get_price.assert_not_called()
        assert await stock_of(a) == (10, 0)


class TestConfirmationFailure:
    @pytest.mark.asyncio
    async def test_partial_confirm_marks_order_failed(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("1.00", 10)
        b = await stocked_product("2.00", 10)
        orchestrator.inventory.confirm = fail_on_call(
            orchestrator.inventory.confirm, 2, ServiceUnavailable("timed out")
        )

        with pytest.raises(StockConfirmationFailed) as exc_info:
            await orchestrator.place_order(1, [(a, 2), (b, 3)], payment_success=True)

        err = exc_info.value
        assert err.confirmed_lines == [{"product_id": a, "quantity": 2, "price": "1.00"}]
        # confirmed stock stays sold, the unconfirmed line is released
        assert await stock_of(a) == (8, 0)
        assert await stock_of(b) == (10, 0)

        order = await orchestrator.get_order(err.order_id)
        assert order["status"] == "FAILED"
        assert order["payment_success"] is True

    @pytest.mark.asyncio
    async def test_first_confirm_failure_releases_all_lines(
        self, orchestrator, stocked_product, stock_of, redis
    ):
        a = await stocked_product("1.00", 10)
        orchestrator.inventory.confirm = AsyncMock(side_effect=ServiceUnavailable("down"))

        with pytest.raises(StockConfirmationFailed) as exc_info:
            await orchestrator.place_order(1, [(a, 4)], payment_success=True)

        assert exc_info.value.confirmed_lines == []
        assert await stock_of(a) == (10, 0)
        assert saga_events(redis)[-1]["event_type"] == "SagaFailed"


class TestDeferredPayment:
    @pytest.mark.asyncio
    async def test_order_without_payment_result_stays_reserved(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("3.00", 10)

        order = await orchestrator.place_order(1, [(a, 3)], payment_success=None)

        assert order["status"] == "RESERVED"
        assert order["payment_success"] is None
        assert await stock_of(a) == (7, 3)

    @pytest.mark.asyncio
    async def test_successful_payment_confirms(self, orchestrator, stocked_product, stock_of):
        a = await stocked_product("3.00", 10)
        order = await orchestrator.place_order(1, [(a, 3)], payment_success=None)

        paid = await orchestrator.resolve_payment(order["id"], True)

        assert paid["id"] == order["id"]
        assert paid["status"] == "PAID"
        assert paid["payment_success"] is True
        assert await stock_of(a) == (7, 0)

    @pytest.mark.asyncio
    async def test_declined_payment_releases(self, orchestrator, stocked_product, stock_of):
        a = await stocked_product("3.00", 10)
        order = await orchestrator.place_order(1, [(a, 3)], payment_success=None)

        failed = await orchestrator.resolve_payment(order["id"], False)

        assert failed["status"] == "FAILED"
        assert await stock_of(a) == (10, 0)

    @pytest.mark.asyncio
    async def test_payment_cannot_be_resolved_twice(self, orchestrator, stocked_product):
        a = await stocked_product("3.00", 10)
        order = await orchestrator.place_order(1, [(a, 1)], payment_success=None)
        await orchestrator.resolve_payment(order["id"], True)

        with pytest.raises(InvalidStateTransition):
            await orchestrator.resolve_payment(order["id"], False)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_reserved_order_releases_stock(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("3.00", 10)
        b = await stocked_product("4.00", 10)
        order = await orchestrator.place_order(1, [(a, 2), (b, 5)], payment_success=None)

        cancelled = await orchestrator.cancel_order(order["id"])

        assert cancelled["status"] == "CANCELLED"
        assert await stock_of(a) == (10, 0)
        assert await stock_of(b) == (10, 0)

    @pytest.mark.asyncio
    async def test_second_cancel_is_rejected(self, orchestrator, stocked_product, stock_of):
        a = await stocked_product("3.00", 10)
        order = await orchestrator.place_order(1, [(a, 2)], payment_success=None)
        await orchestrator.cancel_order(order["id"])

        with pytest.raises(AlreadyCancelled):
            await orchestrator.cancel_order(order["id"])
        assert await stock_of(a) == (10, 0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment_success", [True, False])
    async def test_terminal_orders_cannot_be_cancelled(
        self, orchestrator, stocked_product, stock_of, payment_success
    ):
        a = await stocked_product("3.00", 10)
        order = await orchestrator.place_order(1, [(a, 2)], payment_success=payment_success)
        before = await stock_of(a)

        with pytest.raises(InvalidStateTransition):
            await orchestrator.cancel_order(order["id"])
        assert await stock_of(a) == before

    @pytest.mark.asyncio
    async def test_unknown_order(self, orchestrator):
        with pytest.raises(OrderNotFound):
            await orchestrator.cancel_order(12345)

    @pytest.mark.asyncio
    async def test_cancel_keeps_order_reserved_when_nothing_released(
        self, orchestrator, stocked_product, stock_of
    ):
        a = await stocked_product("3.00", 10)
        order = await orchestrator.place_order(1, [(a, 2)], payment_success=None)
        orchestrator.inventory.release = AsyncMock(side_effect=ServiceUnavailable("down"))

        with pytest.raises(ServiceUnavailable):
            await orchestrator.cancel_order(order["id"])

        assert (await orchestrator.get_order(order["id"]))["status"] == "RESERVED"
        assert await stock_of(a) == (8, 2)

        del orchestrator.inventory.release
        cancelled = await orchestrator.cancel_order(order["id"])
        assert cancelled["status"] == "CANCELLED"
        assert await stock_of(a) == (10, 0)


class TestConcurrentAdminActions:
    """Two admin calls on the same order must never move another order's stock."""

    @pytest_asyncio.fixture
    async def contended(self, orchestrator, stocked_product, stock_of):
        a = await stocked_product("3.00", 10)
        await orchestrator.place_order(2, [(a, 3)], payment_success=None)
        order = await orchestrator.place_order(1, [(a, 3)], payment_success=None)
        assert await stock_of(a) == (4, 6)
        return a, order["id"]

    @pytest.mark.asyncio
    async def test_pay_and_cancel_together(self, orchestrator, contended, stock_of):
        a, order_id = contended

        paid, cancelled = await asyncio.gather(
            orchestrator.resolve_payment(order_id, True),
            orchestrator.cancel_order(order_id),
            return_exceptions=True,
        )

        outcomes = [r for r in (paid, cancelled) if isinstance(r, dict)]
        errors = [r for r in (paid, cancelled) if isinstance(r, Exception)]
        assert len(outcomes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateTransition)

        winner = outcomes[0]["status"]
        assert (await orchestrator.get_order(order_id))["status"] == winner
        available, reserved = await stock_of(a)
        assert reserved == 3
        assert available == (4 if winner == "PAID" else 7)

    @pytest.mark.asyncio
    async def test_two_cancels_together(self, orchestrator, contended, stock_of):
        a, order_id = contended

        results = await asyncio.gather(
            orchestrator.cancel_order(order_id),
            orchestrator.cancel_order(order_id),
            return_exceptions=True,
        )

        assert [r["status"] for r in results if isinstance(r, dict)] == ["CANCELLED"]
        assert [type(r) for r in results if isinstance(r, Exception)] == [AlreadyCancelled]
        assert await stock_of(a) == (7, 3)

    @pytest.mark.asyncio
    async def test_two_payments_together(self, orchestrator, contended, stock_of):
        a, order_id = contended

        results = await asyncio.gather(
            orchestrator.resolve_payment(order_id, True),
            orchestrator.resolve_payment(order_id, True),
            return_exceptions=True,
        )

        assert [r["status"] for r in results if isinstance(r, dict)] == ["PAID"]
        assert [type(r) for r in results if isinstance(r, Exception)] == [
            InvalidStateTransition
        ]
        assert await stock_of(a) == (4, 3)

    @pytest.mark.asyncio
    async def test_claimed_order_rejects_other_actions(
        self, orchestrator, order_db, contended, stock_of
    ):
        a, order_id = contended
        async with order_db() as session:
            await commands.claim_order(session, order_id, OrderStatus.CANCELLED)

        with pytest.raises(AlreadyCancelled):
            await orchestrator.cancel_order(order_id)
        with pytest.raises(InvalidStateTransition):
            await orchestrator.resolve_payment(order_id, True)
        assert await stock_of(a) == (4, 6)

        async with order_db() as session:
            await commands.release_claim(session, order_id, OrderStatus.CANCELLED)
        assert (await orchestrator.cancel_order(order_id))["status"] == "CANCELLED"
        assert await stock_of(a) == (7, 3)


class TestOrderLedgerQueries:
    @pytest.mark.asyncio
    async def test_user_orders_are_newest_first_and_scoped(
        self, orchestrator, stocked_product
    ):
        a = await stocked_product("1.00", 10)
        first = await orchestrator.place_order(1, [(a, 1)], payment_success=True)
        other = await orchestrator.place_order(2, [(a, 1)], payment_success=True)
        second = await orchestrator.place_order(1, [(a, 1)], payment_success=False)

        mine = await orchestrator.get_user_orders(1)
        assert [o["id"] for o in mine] == [second["id"], first["id"]]

        everything = await orchestrator.get_all_orders()
        assert {o["id"] for o in everything} == {first["id"], other["id"], second["id"]}

    @pytest.mark.asyncio
    async def test_missing_order(self, orchestrator):
        with pytest.raises(OrderNotFound):
            await orchestrator.get_order(1)
