"""
Inventory Service — 注文イベントのサブスクライバー

販売サービスが発行する order.created / order.status.updated を
Redis Streams のコンシューマグループ経由で購読する。

注文のキャンセルでは在庫は自動では戻らないので、
引き当て済みの数量を警告ログに残し、担当者が release-stock で戻せるようにする。

  ┌──────────────┐  order.*   ┌───────────────────┐
  │ Sales Service │ ─────────▶ │ Inventory Service │
  │ (Saga)       │  Streams   │ (このモジュール)   │
  └──────────────┘            └───────────────────┘
"""

import asyncio
import logging

import redis.asyncio as aioredis

from services.shared.messaging import ORDER_CREATED, ORDER_STATUS_UPDATED, consume

logger = logging.getLogger(__name__)

SUBSCRIBED_TOPICS = (ORDER_CREATED, ORDER_STATUS_UPDATED)


async def handle_order_event(event_type: str, data: dict) -> None:
    if event_type == ORDER_CREATED:
        lines = data.get("lines", [])
        logger.info(
            "Order %s placed by %s: %d line(s), %d unit(s), total=%s",
            data["order_id"],
            data.get("customer_id"),
            len(lines),
            sum(line["quantity"] for line in lines),
            data.get("total"),
        )
    elif event_type == ORDER_STATUS_UPDATED:
        if data.get("current_status") == "CANCELLED":
            logger.warning(
                "Order %s cancelled (%s); reserved stock is not returned automatically",
                data["order_id"],
                data.get("reason") or "no reason given",
            )
        else:
            logger.info(
                "Order %s status %s -> %s",
                data["order_id"], data.get("previous_status"), data.get("current_status"),
            )
    else:
        logger.debug("Ignoring %s", event_type)


def start_subscribers(
    redis: aioredis.Redis,
    group: str,
    consumer: str,
    shutdown_event: asyncio.Event,
) -> list[asyncio.Task]:
    """トピックごとに購読タスクを 1 つ起動する。shutdown_event で止まる。"""
    return [
        asyncio.create_task(
            consume(redis, topic, group, consumer, handle_order_event, shutdown_event)
        )
        for topic in SUBSCRIBED_TOPICS
    ]
