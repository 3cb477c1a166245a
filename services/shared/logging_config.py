"""
Shared — ロギング設定とリクエスト相関 ID

X-Correlation-Id を受け取る（無ければ採番する）ミドルウェアと、
ログレコードに相関 ID を差し込むフィルタ。
"""

import logging
import uuid
from contextvars import ContextVar

from fastapi import FastAPI, Request

CORRELATION_HEADER = "X-Correlation-Id"

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s",
        handlers=[handler],
    )


def install_correlation_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        cid = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        token = correlation_id.set(cid)
        try:
            response = await call_next(request)
        finally:
            correlation_id.reset(token)
        response.headers[CORRELATION_HEADER] = cid
        return response
