"""In-memory test doubles: canned principals, the publisher and Redis.

FakePublisher records what would have been published.
FakeRedis implements just enough of the Redis Streams commands
(XGROUP CREATE, XADD, XREADGROUP, XAUTOCLAIM, XACK) for the
messaging module. No network, no server.
"""

from __future__ import annotations

import asyncio
import time

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from services.shared.identity import Principal

ADMIN_USER = Principal(subject="admin-1", roles=["admin"])
SELLER_USER = Principal(subject="seller-1", roles=["seller"])
ALICE = Principal(subject="alice", roles=["customer"])
BOB = Principal(subject="bob", roles=["customer"])


class FakePublisher:

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, topic: str, payload: dict) -> bool:
        self.published.append((topic, payload))
        return True

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]

    def payloads(self, topic: str) -> list[dict]:
        return [payload for t, payload in self.published if t == topic]


class FakeRedis:

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        # (stream, group) -> index of the next undelivered entry
        self.groups: dict[tuple[str, str], int] = {}
        # (stream, group) -> {message_id: delivered_at (ms)}
        self.pending: dict[tuple[str, str], dict[str, float]] = {}
        self.group_create_calls = 0
        self.fail_writes = False
        self.xadd_calls: list[dict] = []
        self._seq = 0

    @staticmethod
    def _now_ms() -> float:
        return time.monotonic() * 1000

    async def xgroup_create(self, name, groupname, id="$", mkstream=False):
        self.group_create_calls += 1
        if name not in self.streams:
            if not mkstream:
                raise ResponseError("ERR The XGROUP subcommand requires the key to exist")
            self.streams[name] = []
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups[(name, groupname)] = 0 if id == "0" else len(self.streams[name])
        self.pending[(name, groupname)] = {}
        return True

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        if self.fail_writes:
            raise RedisConnectionError("Connection refused")
        self._seq += 1
        message_id = f"{self._seq}-0"
        entries = self.streams.setdefault(name, [])
        entries.append((message_id, dict(fields)))
        if maxlen is not None and len(entries) > maxlen:
            # exact trim; the real server may keep a few more when approximate
            trimmed = len(entries) - maxlen
            del entries[:trimmed]
            for key in self.groups:
                if key[0] == name:
                    self.groups[key] = max(0, self.groups[key] - trimmed)
        self.xadd_calls.append({"maxlen": maxlen, "approximate": approximate})
        return message_id

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        # a real XREADGROUP BLOCK suspends; yield so other tasks can run
        await asyncio.sleep(0)
        result = []
        for name in streams:
            key = (name, groupname)
            entries = self.streams.get(name, [])
            start = self.groups[key]
            batch = entries[start:start + count] if count else entries[start:]
            if not batch:
                continue
            self.groups[key] = start + len(batch)
            for message_id, _ in batch:
                self.pending[key][message_id] = self._now_ms()
            result.append([name, batch])
        return result

    async def xautoclaim(
        self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None
    ):
        key = (name, groupname)
        now = self._now_ms()
        entries = dict(self.streams.get(name, []))
        claimed = []
        for message_id, delivered_at in list(self.pending.get(key, {}).items()):
            if now - delivered_at >= min_idle_time:
                self.pending[key][message_id] = now
                claimed.append((message_id, entries.get(message_id)))
            if count and len(claimed) >= count:
                break
        return ["0-0", claimed, []]

    async def xack(self, name, groupname, *ids):
        key = (name, groupname)
        acked = 0
        for message_id in ids:
            if self.pending.get(key, {}).pop(message_id, None) is not None:
                acked += 1
        return acked
