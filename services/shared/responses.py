"""
Shared — レスポンスエンベロープ

すべての API は {success, message, data, errors[], timestamp} 形式で返す。
失敗時もスタックトレースは返さない。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException

from .errors import ServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ApiResponse(BaseModel, Generic[T]):
    success: bool
    message: str = ""
    data: T | None = None
    errors: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)


def ok(data: Any = None, message: str = "Operation completed successfully") -> dict:
    return ApiResponse[Any](success=True, message=message, data=data).model_dump(mode="json")


def failure(
    status_code: int,
    message: str,
    errors: list[str] | None = None,
    data: Any = None,
) -> JSONResponse:
    body = ApiResponse[Any](
        success=False, message=message, data=data, errors=errors or []
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return failure(exc.status_code, exc.message, exc.errors)


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"] if p != "body")
        errors.append(f"{field}: {err['msg']}" if field else err["msg"])
    return failure(400, "Invalid request", errors)


async def _http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return failure(exc.status_code, str(exc.detail))


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return failure(500, "Internal server error")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(HTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
