"""
Tests for the product service (price lookup).
"""

import pytest

ADMIN = {"X-User-Id": "99", "X-User-Roles": "ROLE_ADMIN"}


class TestProductApi:
    @pytest.mark.asyncio
    async def test_get_product_returns_price_as_string(self, product_http, seed_product):
        product_id = await seed_product("7.5")

        response = await product_http.get(f"/api/products/{product_id}")

        assert response.status_code == 200
        assert response.json()["price"] == "7.50"

    @pytest.mark.asyncio
    async def test_unknown_product(self, product_http):
        response = await product_http.get("/api/products/404")
        assert response.status_code == 404
        assert response.json()["error"] == "PRODUCT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_admin_creates_product(self, product_http):
        response = await product_http.post(
            "/api/products",
            json={"name": "Lamp", "description": "Desk lamp", "price": "24.99"},
            headers=ADMIN,
        )

        assert response.status_code == 201
        created = response.json()
        assert created["price"] == "24.99"

        listing = await product_http.get("/api/products")
        assert [p["name"] for p in listing.json()] == ["Lamp"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["0", "-1.00", "1.001"])
    async def test_invalid_price_is_rejected(self, product_http, price):
        response = await product_http.post(
            "/api/products", json={"name": "Lamp", "price": price}, headers=ADMIN
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_requires_admin(self, product_http):
        response = await product_http.post(
            "/api/products",
            json={"name": "Lamp", "price": "1.00"},
            headers={"X-User-Id": "1", "X-User-Roles": "USER"},
        )
        assert response.status_code == 403
