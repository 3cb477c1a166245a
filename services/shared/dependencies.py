"""
Shared — FastAPI 依存関数

lifespan で app.state に置いたリソースをリクエストごとに取り出す。
"""

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from .messaging import EventPublisher


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher
