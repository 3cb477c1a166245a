"""Inventory Gateway: every failure mode becomes a tagged result, never an exception."""

import httpx
import pytest

from services.sales.app.gateway import InventoryGateway, StockStatus
from services.shared.identity import caller_authorization
from services.shared.logging_config import CORRELATION_HEADER, correlation_id


def _envelope(data, success=True, message=""):
    return {"success": success, "message": message, "data": data, "errors": []}


PRODUCT = {
    "id": 1,
    "name": "Widget",
    "description": "",
    "price": "19.99",
    "stock_quantity": 5,
    "active": True,
}


def _gateway(handler) -> InventoryGateway:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://inventory"
    )
    return InventoryGateway(client)


def _status(code, json=None, content=None):
    def handler(request):
        if content is not None:
            return httpx.Response(code, content=content)
        return httpx.Response(code, json=json)
    return handler


def _unreachable(request):
    raise httpx.ConnectError("connection refused", request=request)


def _timeout(request):
    raise httpx.ReadTimeout("timed out", request=request)


class TestFetchProduct:

    async def test_found(self):
        gateway = _gateway(_status(200, _envelope(PRODUCT)))
        result = await gateway.fetch_product(1)

        assert result.status is StockStatus.AVAILABLE
        assert result.product.name == "Widget"
        assert str(result.product.price) == "19.99"

    async def test_404_is_not_found(self):
        gateway = _gateway(_status(404, _envelope(None, False, "Product not found")))
        result = await gateway.fetch_product(1)

        assert result.status is StockStatus.NOT_FOUND
        assert result.product is None

    @pytest.mark.parametrize(
        "handler",
        [
            _status(500, _envelope(None, False)),
            _status(200, content=b"<html>oops</html>"),
            _status(200, _envelope({"id": 1})),
            _unreachable,
            _timeout,
        ],
        ids=["server-error", "not-json", "malformed-product", "unreachable", "timeout"],
    )
    async def test_failures_are_unavailable(self, handler):
        result = await _gateway(handler).fetch_product(1)
        assert result.status is StockStatus.UNAVAILABLE


class TestCheckStock:

    async def test_enough(self):
        result = await _gateway(_status(200, _envelope(True))).check_stock(1, 2)
        assert result.status is StockStatus.AVAILABLE
        assert result.ok

    async def test_not_enough(self):
        result = await _gateway(_status(200, _envelope(False))).check_stock(1, 2)
        assert result.status is StockStatus.INSUFFICIENT
        assert not result.ok

    async def test_unreachable_is_distinct_from_insufficient(self):
        result = await _gateway(_unreachable).check_stock(1, 2)
        assert result.status is StockStatus.UNAVAILABLE

    async def test_404(self):
        result = await _gateway(_status(404, _envelope(None, False))).check_stock(1, 2)
        assert result.status is StockStatus.NOT_FOUND


class TestReserveAndRelease:

    async def test_reserve_sends_quantity_and_reason(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json=_envelope(True))

        result = await _gateway(handler).reserve_stock(7, 3, "Sale - order #1")

        assert result.ok
        assert seen["path"] == "/products/7/update-stock"
        assert b'"quantity":3' in seen["body"].replace(b" ", b"")

    @pytest.mark.parametrize(
        "code, expected",
        [
            (409, StockStatus.INSUFFICIENT),
            (404, StockStatus.NOT_FOUND),
            (500, StockStatus.UNAVAILABLE),
            (503, StockStatus.UNAVAILABLE),
        ],
    )
    async def test_reserve_status_mapping(self, code, expected):
        gateway = _gateway(_status(code, _envelope(False, False)))
        result = await gateway.reserve_stock(1, 1, "Sale")
        assert result.status is expected

    async def test_reserve_transport_error(self):
        result = await _gateway(_timeout).reserve_stock(1, 1, "Sale")
        assert result.status is StockStatus.UNAVAILABLE

    async def test_release(self):
        result = await _gateway(_status(200, _envelope(4))).release_stock(1, 3, "Undo")
        assert result.ok

    async def test_release_unreachable(self):
        result = await _gateway(_unreachable).release_stock(1, 3, "Undo")
        assert result.status is StockStatus.UNAVAILABLE


class TestListAvailable:

    async def test_returns_products(self):
        products = await _gateway(_status(200, _envelope([PRODUCT]))).list_available()
        assert [p.id for p in products] == [1]

    @pytest.mark.parametrize(
        "handler",
        [_unreachable, _status(500, _envelope(None, False)), _status(200, _envelope([{"x": 1}]))],
    )
    async def test_failure_is_empty_list(self, handler):
        assert await _gateway(handler).list_available() == []


async def test_forwards_correlation_id():
    seen = {}

    def handler(request):
        seen["cid"] = request.headers.get(CORRELATION_HEADER)
        return httpx.Response(200, json=_envelope(True))

    token = correlation_id.set("req-42")
    try:
        await _gateway(handler).check_stock(1, 1)
    finally:
        correlation_id.reset(token)

    assert seen["cid"] == "req-42"


class TestAuthorization:

    async def test_forwards_caller_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_envelope(True))

        token = caller_authorization.set("Bearer seller-token")
        try:
            await _gateway(handler).reserve_stock(1, 1, "Sale - order #1")
        finally:
            caller_authorization.reset(token)

        assert seen["auth"] == "Bearer seller-token"

    async def test_service_token_wins(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_envelope(3))

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://inventory"
        )
        gateway = InventoryGateway(client, service_token="svc")
        token = caller_authorization.set("Bearer customer-token")
        try:
            await gateway.release_stock(1, 1, "Compensation - order #1")
        finally:
            caller_authorization.reset(token)

        assert seen["auth"] == "Bearer svc"

    async def test_no_token_sends_no_header(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_envelope(True))

        await _gateway(handler).check_stock(1, 1)

        assert seen["auth"] is None

    async def test_rejected_token_is_unavailable(self):
        gateway = _gateway(_status(401, _envelope(None, False, "Unauthorized")))
        result = await gateway.reserve_stock(1, 1, "Sale - order #1")
        assert result.status is StockStatus.UNAVAILABLE
