"""
Order Service — イベントチャネル (Redis Streams)

Pub/Sub は fire-and-forget でサービス停止中のイベントが失われるため、
在庫サービスとの連携には Redis Streams + コンシューマグループを使う。

  publish  : XADD <topic> * payload=<JSON>
  consume  : XREADGROUP GROUP <group> <consumer> ... (at-least-once)
  ack      : XACK  — 処理が終わったメッセージだけを ACK する

ACK 前に落ちたメッセージはペンディングとして残る。同じコンシューマ名で
再起動したときは最初に読み直され、コンシューマ名が変わった場合（コンテナの
ホスト名が変わるなど）も claim_idle_ms を過ぎた時点で XAUTOCLAIM により
次に購読を始めたコンシューマへ付け替えられる（重複配信はコーディネーター側で吸収）。
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import EventChannelError, EventPublishError

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "payload"


@dataclass(frozen=True)
class Delivery:
    topic: str
    group: str
    message_id: str
    payload: str | None


class EventChannel:
    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        maxlen: int | None = 100_000,
        claim_idle_ms: int = 60_000,
    ):
        self.redis = redis
        self.maxlen = maxlen
        self.claim_idle_ms = claim_idle_ms

    async def publish(self, topic: str, payload: dict) -> str:
        """ペイロードを JSON にしてストリームに追記し、メッセージ ID を返す。"""
        try:
            message_id = await self.redis.xadd(
                topic,
                {PAYLOAD_FIELD: json.dumps(payload, default=str)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise EventPublishError(topic, str(e)) from e
        logger.debug("Published to %s: %s", topic, message_id)
        return message_id

    async def ensure_group(self, topic: str, group: str) -> None:
        try:
            await self.redis.xgroup_create(topic, group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", group, topic)
        except ResponseError as e:
            # 既に存在する場合は BUSYGROUP
            if "BUSYGROUP" not in str(e):
                raise EventChannelError(
                    f"Failed to create group {group} on {topic}: {e}"
                ) from e
        except RedisError as e:
            raise EventChannelError(
                f"Failed to create group {group} on {topic}: {e}"
            ) from e

    async def claim_stale(self, topic: str, group: str, consumer: str) -> int:
        """
        claim_idle_ms 以上 ACK されていない他コンシューマのペンディングを
        このコンシューマに付け替える（XAUTOCLAIM, Redis 6.2+）。
        付け替えたメッセージは直後のペンディング読み直しで処理される。
        """
        claimed = 0
        start_id = "0-0"
        while True:
            try:
                response = await self.redis.xautoclaim(
                    topic,
                    group,
                    consumer,
                    min_idle_time=self.claim_idle_ms,
                    start_id=start_id,
                    count=100,
                )
            except RedisError as e:
                raise EventChannelError(
                    f"Failed to claim stale entries on {topic}: {e}"
                ) from e
            start_id, entries = response[0], response[1]
            claimed += len(entries)
            if start_id in ("0-0", b"0-0"):
                break
        if claimed:
            logger.info("Claimed %d stale entries on %s", claimed, topic)
        return claimed

    async def consume(
        self,
        topic: str,
        group: str,
        consumer: str,
        shutdown_event: asyncio.Event,
        *,
        count: int = 10,
        block_ms: int = 1000,
    ) -> AsyncIterator[Delivery]:
        """
        topic のメッセージを shutdown_event がセットされるまで順に返す。

        最初に放置されたペンディングを付け替え (claim_stale)、このコンシューマ宛ての
        ペンディング（未 ACK）メッセージを読み直し、尽きたら新着 (">") の読み取りに
        切り替える。
        """
        await self.ensure_group(topic, group)
        await self.claim_stale(topic, group, consumer)
        logger.info("Consuming %s as %s/%s", topic, group, consumer)

        last_id = "0"
        while not shutdown_event.is_set():
            try:
                response = await self.redis.xreadgroup(
                    group,
                    consumer,
                    {topic: last_id},
                    count=count,
                    block=block_ms,
                )
            except RedisError as e:
                raise EventChannelError(f"Failed to read from {topic}: {e}") from e

            entries = [entry for _stream, batch in response or [] for entry in batch]
            if not entries:
                if last_id != ">":
                    logger.info("Pending backlog on %s drained", topic)
                    last_id = ">"
                continue

            for message_id, fields in entries:
                if last_id != ">":
                    last_id = message_id
                yield Delivery(
                    topic=topic,
                    group=group,
                    message_id=message_id,
                    payload=(fields or {}).get(PAYLOAD_FIELD),
                )

    async def ack(self, delivery: Delivery) -> None:
        try:
            await self.redis.xack(delivery.topic, delivery.group, delivery.message_id)
        except RedisError as e:
            raise EventChannelError(
                f"Failed to ack {delivery.message_id} on {delivery.topic}: {e}"
            ) from e
