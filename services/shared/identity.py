"""
Shared — 認証サービス (Identity) クライアント

トークンの署名・有効期限の検証は認証サービスに委譲する。
このモジュールは Bearer トークンを認証サービスに渡し、
返ってきたクレーム（subject / roles）をそのまま信頼する。
"""

import logging
from contextvars import ContextVar

import httpx
from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import AuthenticationError, PermissionDeniedError, UnavailableError

logger = logging.getLogger(__name__)

ADMIN = "admin"
SELLER = "seller"
CUSTOMER = "customer"

STAFF_ROLES = (ADMIN, SELLER)

AUTHORIZATION_HEADER = "Authorization"

# 受け付けたリクエストの Authorization ヘッダー（下流サービスへ転送する）
caller_authorization: ContextVar[str | None] = ContextVar("caller_authorization", default=None)


class Principal(BaseModel):
    subject: str
    roles: list[str] = []

    def has_any_role(self, *roles: str) -> bool:
        return any(r in self.roles for r in roles)

    @property
    def is_staff(self) -> bool:
        return self.has_any_role(*STAFF_ROLES)

    def can_access(self, customer_id: str) -> bool:
        """スタッフは全件、顧客は自分の注文のみ"""
        return self.is_staff or self.subject == customer_id


class IdentityClient:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def validate(self, authorization: str) -> Principal:
        try:
            resp = await self.client.get(
                "/api/auth/validate", headers={AUTHORIZATION_HEADER: authorization}
            )
        except httpx.HTTPError as e:
            logger.warning("Identity service unreachable: %s", e)
            raise UnavailableError("Identity service unavailable") from e

        if resp.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token")
        if resp.status_code >= 400:
            logger.warning("Identity service returned %s", resp.status_code)
            raise UnavailableError("Identity service unavailable")

        try:
            return Principal.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as e:
            logger.warning("Malformed identity response: %s", e)
            raise UnavailableError("Identity service unavailable") from e


async def get_principal(request: Request) -> Principal:
    authorization = request.headers.get(AUTHORIZATION_HEADER, "")
    if not authorization.lower().startswith("bearer "):
        raise AuthenticationError()
    identity: IdentityClient = request.app.state.identity
    return await identity.validate(authorization)


def require_roles(*roles: str):
    """指定ロールのいずれかを要求する依存関数を返す"""

    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_any_role(*roles):
            raise PermissionDeniedError()
        return principal

    return dependency


def install_auth_forwarding(app: FastAPI) -> None:
    """Authorization ヘッダーを caller_authorization に保存するミドルウェア"""

    @app.middleware("http")
    async def keep_authorization(request: Request, call_next):
        token = caller_authorization.set(request.headers.get(AUTHORIZATION_HEADER))
        try:
            return await call_next(request)
        finally:
            caller_authorization.reset(token)
