"""Inventory HTTP surface: envelope shape, status codes, role checks."""

import pytest

from services.inventory.app import main as inventory_main
from services.shared.identity import get_principal
from services.shared.messaging import INVENTORY_INSUFFICIENT, INVENTORY_UPDATED
from tests.fakes import ALICE


class TestEnvelope:

    async def test_success_envelope(self, inventory_client, add_product):
        product = await add_product("Widget", price="2.50", stock=4)

        resp = await inventory_client.get(f"/products/{product.id}")
        body = resp.json()

        assert resp.status_code == 200
        assert body["success"] is True
        assert body["errors"] == []
        assert body["timestamp"]
        assert body["data"]["name"] == "Widget"
        assert body["data"]["price"] == "2.50"
        assert body["data"]["stock_quantity"] == 4

    async def test_not_found_envelope(self, inventory_client):
        resp = await inventory_client.get("/products/999")
        body = resp.json()

        assert resp.status_code == 404
        assert body["success"] is False
        assert body["message"] == "Product not found"
        assert body["data"] is None

    async def test_invalid_body_is_400(self, inventory_client, add_product):
        product = await add_product("Widget")
        resp = await inventory_client.post(
            f"/products/{product.id}/update-stock", json={"quantity": 0}
        )
        body = resp.json()

        assert resp.status_code == 400
        assert body["message"] == "Invalid request"
        assert any(e.startswith("quantity") for e in body["errors"])

    async def test_correlation_id_is_echoed(self, inventory_client):
        resp = await inventory_client.get("/health", headers={"X-Correlation-Id": "abc-123"})
        assert resp.headers["X-Correlation-Id"] == "abc-123"


class TestStockEndpoints:

    async def test_validate_stock(self, inventory_client, add_product):
        product = await add_product("Widget", stock=3)

        enough = await inventory_client.get(f"/products/{product.id}/validate-stock/3")
        too_many = await inventory_client.get(f"/products/{product.id}/validate-stock/4")

        assert enough.json()["data"] is True
        assert too_many.status_code == 200
        assert too_many.json()["data"] is False

    async def test_validate_stock_rejects_non_positive(self, inventory_client, add_product):
        product = await add_product("Widget")
        resp = await inventory_client.get(f"/products/{product.id}/validate-stock/0")
        assert resp.status_code == 400

    async def test_update_stock_decrements(
        self, inventory_client, add_product, stock_of, inventory_events
    ):
        product = await add_product("Widget", stock=5)

        resp = await inventory_client.post(
            f"/products/{product.id}/update-stock", json={"quantity": 2, "reason": "Sale"}
        )

        assert resp.status_code == 200
        assert resp.json()["data"] is True
        assert await stock_of(product.id) == 3
        assert inventory_events.topics() == [INVENTORY_UPDATED]

    async def test_update_stock_insufficient_is_409(
        self, inventory_client, add_product, stock_of, inventory_events
    ):
        product = await add_product("Widget", stock=1)

        resp = await inventory_client.post(
            f"/products/{product.id}/update-stock", json={"quantity": 2}
        )

        assert resp.status_code == 409
        assert resp.json()["data"] is False
        assert await stock_of(product.id) == 1
        assert inventory_events.topics() == [INVENTORY_INSUFFICIENT]

    async def test_update_stock_unknown_is_404(self, inventory_client):
        resp = await inventory_client.post("/products/999/update-stock", json={"quantity": 1})
        assert resp.status_code == 404

    async def test_release_stock(self, inventory_client, add_product, stock_of):
        product = await add_product("Widget", stock=1)

        resp = await inventory_client.post(
            f"/products/{product.id}/release-stock", json={"quantity": 3}
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == 4
        assert await stock_of(product.id) == 4


class TestCatalogue:

    async def test_create_then_list(self, inventory_client):
        resp = await inventory_client.post(
            "/products",
            json={"name": "Gadget", "description": "Shiny", "price": "9.90", "stock_quantity": 2},
        )
        assert resp.status_code == 201
        created = resp.json()["data"]

        listed = (await inventory_client.get("/products")).json()["data"]
        assert [p["id"] for p in listed] == [created["id"]]

    async def test_create_rejects_negative_price(self, inventory_client):
        resp = await inventory_client.post(
            "/products", json={"name": "Bad", "price": "-1", "stock_quantity": 0}
        )
        assert resp.status_code == 400

    async def test_with_stock_and_search(self, inventory_client, add_product):
        await add_product("Blue Widget", stock=0)
        await add_product("Blue Gadget", stock=2)

        with_stock = (await inventory_client.get("/products/with-stock")).json()["data"]
        found = (await inventory_client.get("/products/search", params={"term": "blue"})).json()

        assert [p["name"] for p in with_stock] == ["Blue Gadget"]
        assert len(found["data"]) == 2

    async def test_update_product(self, inventory_client, add_product):
        product = await add_product("Widget", price="1.00")

        resp = await inventory_client.put(f"/products/{product.id}", json={"price": "3.00"})

        assert resp.status_code == 200
        assert resp.json()["data"]["price"] == "3.00"

    async def test_delete_hides_product(self, inventory_client, add_product):
        product = await add_product("Widget")

        resp = await inventory_client.delete(f"/products/{product.id}")
        assert resp.status_code == 200
        assert (await inventory_client.get(f"/products/{product.id}")).status_code == 404


class TestRoles:

    async def test_customer_cannot_create(self, inventory_client):
        inventory_main.app.dependency_overrides[get_principal] = lambda: ALICE

        resp = await inventory_client.post(
            "/products", json={"name": "X", "price": "1.00", "stock_quantity": 1}
        )

        assert resp.status_code == 403
        assert resp.json()["success"] is False

    async def test_missing_token_is_401(self, inventory_client):
        inventory_main.app.dependency_overrides.clear()

        resp = await inventory_client.delete("/products/1")

        assert resp.status_code == 401

    @pytest.mark.parametrize("action", ["update-stock", "release-stock"])
    async def test_stock_changes_need_token(self, inventory_client, add_product, stock_of, action):
        product = await add_product("Widget", stock=5)
        inventory_main.app.dependency_overrides.clear()

        resp = await inventory_client.post(
            f"/products/{product.id}/{action}", json={"quantity": 1}
        )

        assert resp.status_code == 401
        assert resp.json()["success"] is False
        assert await stock_of(product.id) == 5

    @pytest.mark.parametrize("action", ["update-stock", "release-stock"])
    async def test_customer_cannot_change_stock(
        self, inventory_client, add_product, stock_of, action
    ):
        product = await add_product("Widget", stock=5)
        inventory_main.app.dependency_overrides[get_principal] = lambda: ALICE

        resp = await inventory_client.post(
            f"/products/{product.id}/{action}", json={"quantity": 1}
        )

        assert resp.status_code == 403
        assert await stock_of(product.id) == 5
