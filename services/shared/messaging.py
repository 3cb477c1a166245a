"""
Shared — イベント発行 / 購読 (Redis Streams)

Redis Pub/Sub は fire-and-forget で、購読者がダウンしている間の
イベントは失われる。ここでは Redis Streams を使い、

  - トピックごとのストリーム = 永続的な名前付きキュー
  - コンシューマグループ      = 購読者ごとの配信状態

として扱う。購読側は少なくとも 1 回 (at-least-once) の配信:
ハンドラが成功したときだけ XACK し、失敗したメッセージは
保留 (pending) のまま残り、一定時間後に XAUTOCLAIM で再配信される。

  ┌─────────────┐  XADD   ┌──────────────┐  XREADGROUP  ┌────────────┐
  │  Publisher   │ ──────▶ │ stream/topic │ ───────────▶ │  Consumer  │
  │ (各サービス) │         │ + group      │ ◀─── XACK ── │            │
  └─────────────┘         └──────────────┘              └────────────┘
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_STATUS_UPDATED = "order.status.updated"
INVENTORY_UPDATED = "inventory.updated"
INVENTORY_INSUFFICIENT = "inventory.insufficient"
PRODUCT_CREATED = "product.created"
PRODUCT_UPDATED = "product.updated"

EventHandler = Callable[[str, dict], Awaitable[None]]

# ストリームごとの保持件数の目安。XADD 時に古いエントリから切り詰める
DEFAULT_STREAM_MAXLEN = 10_000


async def declare_queue(redis: aioredis.Redis, topic: str, group: str) -> None:
    """
    キュー（ストリーム + グループ）を宣言する。冪等。

    既にグループが存在する場合 Redis は BUSYGROUP を返すので成功扱い。
    """
    try:
        await redis.xgroup_create(topic, group, id="0", mkstream=True)
        logger.info("Declared queue %s (group=%s)", topic, group)
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


class EventPublisher:
    """
    プロセスに 1 つだけ作るパブリッシャー。

    redis.asyncio のコネクションプールを共有するので、複数の
    リクエストタスクから同時に publish してよい。
    キュー宣言は最初の publish 時に 1 回だけ行い、結果をキャッシュする。
    ストリームは maxlen 件程度に保たれる（MAXLEN ~ による近似トリム）。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        group: str = "subscribers",
        maxlen: int = DEFAULT_STREAM_MAXLEN,
    ) -> None:
        self.redis = redis
        self.group = group
        self.maxlen = maxlen
        self._declared: set[str] = set()
        self._lock = asyncio.Lock()

    async def _ensure_declared(self, topic: str) -> None:
        if topic in self._declared:
            return
        async with self._lock:
            if topic in self._declared:
                return
            await declare_queue(self.redis, topic, self.group)
            self._declared.add(topic)

    async def publish(self, topic: str, payload: dict) -> bool:
        """
        イベントを発行する。

        ブローカーが受理した時点で True を返す。ブローカー障害は
        ログに残して False を返し、呼び出し元のリクエストは失敗させない。
        """
        fields = {
            "message_id": str(uuid.uuid4()),
            "event_type": topic,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": json.dumps(payload, default=str),
        }
        try:
            await self._ensure_declared(topic)
            await self.redis.xadd(topic, fields, maxlen=self.maxlen, approximate=True)
        except RedisError:
            logger.exception("Failed to publish %s (message_id=%s)", topic, fields["message_id"])
            return False
        logger.info("Published %s (message_id=%s)", topic, fields["message_id"])
        return True


async def _handle(
    redis: aioredis.Redis,
    topic: str,
    group: str,
    handler: EventHandler,
    message_id: str,
    fields: dict,
) -> bool:
    try:
        data = json.loads(fields["data"])
        await handler(fields.get("event_type", topic), data)
    except Exception:
        # ACK しない → pending に残り、後で再配信される
        logger.exception("Failed to process %s message %s, will retry", topic, message_id)
        return False
    await redis.xack(topic, group, message_id)
    return True


async def consume_once(
    redis: aioredis.Redis,
    topic: str,
    group: str,
    consumer: str,
    handler: EventHandler,
    reclaim_idle_ms: int = 30_000,
    block_ms: int = 1_000,
    count: int = 10,
) -> int:
    """
    1 バッチ分を処理して ACK できた件数を返す。

    先に、reclaim_idle_ms 以上 ACK されていない保留メッセージを
    取り戻して再処理する。無ければ新着を読む。
    """
    claimed = await redis.xautoclaim(
        topic, group, consumer, min_idle_time=reclaim_idle_ms, start_id="0-0", count=count
    )
    messages = claimed[1] if claimed else []
    if messages:
        logger.info("Redelivering %d pending message(s) from %s", len(messages), topic)
    else:
        response = await redis.xreadgroup(
            group, consumer, {topic: ">"}, count=count, block=block_ms
        )
        messages = response[0][1] if response else []

    acked = 0
    for message_id, fields in messages:
        if fields is None:
            continue
        if await _handle(redis, topic, group, handler, message_id, fields):
            acked += 1
    return acked


async def consume(
    redis: aioredis.Redis,
    topic: str,
    group: str,
    consumer: str,
    handler: EventHandler,
    shutdown_event: asyncio.Event,
    reclaim_idle_ms: int = 30_000,
) -> None:
    """shutdown_event がセットされるまで topic を購読し続ける。"""
    while not shutdown_event.is_set():
        try:
            await declare_queue(redis, topic, group)
            break
        except RedisError:
            logger.exception("Broker unavailable, cannot declare %s yet", topic)
            await asyncio.sleep(1.0)
    logger.info("Consuming %s as %s/%s", topic, group, consumer)
    while not shutdown_event.is_set():
        try:
            await consume_once(redis, topic, group, consumer, handler, reclaim_idle_ms)
        except RedisError:
            logger.exception("Broker error while consuming %s", topic)
            await asyncio.sleep(1.0)
