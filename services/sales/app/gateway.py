"""
Sales Service — Inventory Gateway

在庫サービスへの HTTP 呼び出しを、型付きの同一プロセス内の操作として見せる。

  - すべての呼び出しにタイムアウトがある（httpx.AsyncClient 側で設定）
  - 通信エラー・非 2xx・壊れたレスポンスは例外にせず、
    タグ付きの結果 (StockStatus) に変換して警告ログを残す

「在庫不足 (INSUFFICIENT)」と「在庫サービスに到達できない (UNAVAILABLE)」は
別のタグになるので、呼び出し側で区別できる。
"""

import logging
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from services.shared.identity import AUTHORIZATION_HEADER, caller_authorization
from services.shared.logging_config import CORRELATION_HEADER, correlation_id

from .models import Product

logger = logging.getLogger(__name__)


class StockStatus(str, Enum):
    AVAILABLE = "available"
    INSUFFICIENT = "insufficient"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class StockResult(BaseModel):
    status: StockStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is StockStatus.AVAILABLE


class ProductLookup(StockResult):
    product: Product | None = None


class InventoryGateway:
    """
    在庫の更新系エンドポイントはスタッフ権限を要求する。
    service_token があればそれを使い、なければ呼び出し元の Authorization をそのまま転送する。
    """

    def __init__(self, client: httpx.AsyncClient, service_token: str | None = None) -> None:
        self.client = client
        self.service_token = service_token

    async def _call(
        self, method: str, url: str, **kwargs: Any
    ) -> tuple[httpx.Response | None, dict | None]:
        """
        リクエストを送り (レスポンス, エンベロープ) を返す。
        到達できなければ (None, None)、JSON でなければエンベロープは None。
        """
        headers = {}
        cid = correlation_id.get()
        if cid != "-":
            headers[CORRELATION_HEADER] = cid
        authorization = caller_authorization.get()
        if self.service_token:
            authorization = f"Bearer {self.service_token}"
        if authorization:
            headers[AUTHORIZATION_HEADER] = authorization
        try:
            resp = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Inventory service unreachable (%s %s): %r", method, url, e)
            return None, None

        try:
            body = resp.json()
        except ValueError:
            logger.warning("Malformed response from %s %s (status %s)", method, url, resp.status_code)
            return resp, None
        if not isinstance(body, dict):
            logger.warning("Unexpected response shape from %s %s", method, url)
            return resp, None
        return resp, body

    @staticmethod
    def _unavailable(detail: str) -> StockResult:
        return StockResult(status=StockStatus.UNAVAILABLE, detail=detail)

    async def fetch_product(self, product_id: int) -> ProductLookup:
        resp, body = await self._call("GET", f"/products/{product_id}")
        if resp is None:
            return ProductLookup(status=StockStatus.UNAVAILABLE, detail="unreachable")
        if resp.status_code == 404:
            logger.warning("Product %s not found in inventory service", product_id)
            return ProductLookup(status=StockStatus.NOT_FOUND)
        if resp.is_success and body and body.get("success"):
            try:
                product = Product.model_validate(body.get("data"))
            except ValidationError:
                logger.warning("Malformed product payload for %s", product_id)
                return ProductLookup(status=StockStatus.UNAVAILABLE, detail="malformed")
            return ProductLookup(status=StockStatus.AVAILABLE, product=product)

        logger.warning("Failed to fetch product %s. Status: %s", product_id, resp.status_code)
        return ProductLookup(status=StockStatus.UNAVAILABLE, detail=f"status {resp.status_code}")

    async def check_stock(self, product_id: int, quantity: int) -> StockResult:
        resp, body = await self._call(
            "GET", f"/products/{product_id}/validate-stock/{quantity}"
        )
        if resp is None:
            return self._unavailable("unreachable")
        if resp.status_code == 404:
            return StockResult(status=StockStatus.NOT_FOUND)
        if resp.is_success and body and body.get("success"):
            if body.get("data") is True:
                return StockResult(status=StockStatus.AVAILABLE)
            return StockResult(status=StockStatus.INSUFFICIENT)

        logger.warning(
            "Failed to validate stock for product %s. Status: %s", product_id, resp.status_code
        )
        return self._unavailable(f"status {resp.status_code}")

    async def reserve_stock(self, product_id: int, quantity: int, reason: str) -> StockResult:
        """在庫引き当て（在庫サービス側で条件付き減算）"""
        resp, body = await self._call(
            "POST",
            f"/products/{product_id}/update-stock",
            json={"quantity": quantity, "reason": reason},
        )
        if resp is None:
            return self._unavailable("unreachable")
        if resp.status_code == 409:
            return StockResult(status=StockStatus.INSUFFICIENT)
        if resp.status_code == 404:
            return StockResult(status=StockStatus.NOT_FOUND)
        if resp.is_success and body and body.get("success") and body.get("data") is True:
            return StockResult(status=StockStatus.AVAILABLE)

        logger.warning(
            "Failed to reserve stock for product %s x %s. Status: %s",
            product_id, quantity, resp.status_code,
        )
        return self._unavailable(f"status {resp.status_code}")

    async def release_stock(self, product_id: int, quantity: int, reason: str) -> StockResult:
        """在庫解放（補償トランザクション）"""
        resp, body = await self._call(
            "POST",
            f"/products/{product_id}/release-stock",
            json={"quantity": quantity, "reason": reason},
        )
        if resp is None:
            return self._unavailable("unreachable")
        if resp.status_code == 404:
            return StockResult(status=StockStatus.NOT_FOUND)
        if resp.is_success and body and body.get("success"):
            return StockResult(status=StockStatus.AVAILABLE)

        logger.warning(
            "Failed to release stock for product %s x %s. Status: %s",
            product_id, quantity, resp.status_code,
        )
        return self._unavailable(f"status {resp.status_code}")

    async def list_available(self) -> list[Product]:
        resp, body = await self._call("GET", "/products/with-stock")
        if resp is None or not resp.is_success or not body or not body.get("success"):
            logger.warning("Failed to list products with stock")
            return []
        try:
            return [Product.model_validate(p) for p in body.get("data") or []]
        except (ValidationError, TypeError):
            logger.warning("Malformed product list from inventory service")
            return []
