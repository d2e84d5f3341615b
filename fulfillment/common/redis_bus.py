"""
共通 — Redis Streams イベントバス

Pub/Sub は fire-and-forget でダウン中のイベントが失われるため、
Redis Streams + コンシューマグループで at-least-once 配信を実現する。

  ストリーム名   = トピック名 (order.created など)
  グループ名     = 購読サービス名 (payment-service など)

  ┌───────────┐  XADD   ┌──────────────┐  XREADGROUP  ┌───────────┐
  │ Publisher │ ──────▶ │ Redis Stream │ ───────────▶ │ Handler   │
  └───────────┘         └──────────────┘ ◀─────────── └───────────┘
                                            XACK（成功時のみ）

ハンドラが失敗したエントリは ack されず Pending Entries List に残り、
claim_idle_ms 経過後に XAUTOCLAIM で再取得される。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from . import config
from .bus import EventBus, Subscription, dead_letter_topic
from .errors import EventContractError
from .retry import retry_async

logger = logging.getLogger(__name__)

TRANSIENT_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)


class RedisStreamBus(EventBus):
    def __init__(
        self,
        redis: aioredis.Redis,
        consumer_name: str,
        *,
        max_deliveries: int = config.BUS_MAX_DELIVERIES,
        claim_idle_ms: int = config.BUS_CLAIM_IDLE_MS,
        retry_attempts: int = config.BUS_RETRY_ATTEMPTS,
        retry_backoff: float = config.BUS_RETRY_BACKOFF,
        block_ms: int = 1000,
        batch_size: int = 10,
    ) -> None:
        super().__init__(max_deliveries)
        self.redis = redis
        self.consumer_name = consumer_name
        self.claim_idle_ms = claim_idle_ms
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.block_ms = block_ms
        self.batch_size = batch_size
        self._tasks: list[asyncio.Task] = []

    # ── Publish ──────────────────────────────────

    async def publish(self, topic: str, envelope: dict) -> None:
        payload = json.dumps(envelope, default=str)
        await retry_async(
            lambda: self.redis.xadd(topic, {"payload": payload}),
            retry_on=TRANSIENT_REDIS_ERRORS,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            what=f"publish {topic}",
        )

    # ── Consume ──────────────────────────────────

    async def ensure_groups(self) -> None:
        """購読グループを作成する（既存なら何もしない）。"""
        for sub in self._subscriptions:
            try:
                await self.redis.xgroup_create(
                    sub.topic, sub.group, id="0", mkstream=True
                )
                logger.info("Created consumer group %s on %s", sub.group, sub.topic)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def run(self, shutdown_event: asyncio.Event) -> None:
        await retry_async(
            self.ensure_groups,
            retry_on=TRANSIENT_REDIS_ERRORS,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            what="create consumer groups",
        )
        self._tasks = [
            asyncio.create_task(self._consume(sub, shutdown_event))
            for sub in self._subscriptions
        ]
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.close()

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _consume(self, sub: Subscription, shutdown_event: asyncio.Event) -> None:
        failures = 0
        while not shutdown_event.is_set():
            try:
                await self._reclaim(sub)
                response = await self.redis.xreadgroup(
                    sub.group,
                    self.consumer_name,
                    {sub.topic: ">"},
                    count=self.batch_size,
                    block=self.block_ms,
                )
                for _stream, entries in response or []:
                    for message_id, fields in entries:
                        await self.handle_entry(sub, message_id, fields)
                failures = 0
            except TRANSIENT_REDIS_ERRORS as e:
                failures += 1
                delay = min(self.retry_backoff * (2 ** (failures - 1)), 30.0)
                logger.warning(
                    "Broker unavailable for %s/%s: %s; reconnecting in %.2fs",
                    sub.topic,
                    sub.group,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _reclaim(self, sub: Subscription) -> None:
        """他コンシューマが ack せずに止まったエントリを引き取って再処理する。"""
        result = await self.redis.xautoclaim(
            sub.topic,
            sub.group,
            self.consumer_name,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        for message_id, fields in result[1]:
            if fields is None:
                continue
            await self.handle_entry(sub, message_id, fields)

    async def handle_entry(self, sub: Subscription, message_id: str, fields: dict) -> None:
        try:
            envelope = json.loads(fields["payload"])
        except (KeyError, TypeError, ValueError) as e:
            await self._dead_letter(sub, message_id, fields, f"undecodable entry: {e}")
            return

        deliveries = await self._delivery_count(sub, message_id)
        if deliveries > self.max_deliveries:
            await self._dead_letter(
                sub, message_id, fields, f"exceeded {self.max_deliveries} deliveries"
            )
            return

        try:
            await sub.handler(envelope)
        except EventContractError as e:
            await self._dead_letter(sub, message_id, fields, str(e))
            return
        except TRANSIENT_REDIS_ERRORS:
            raise
        except Exception:
            # ack しない → claim_idle_ms 後に再配信
            logger.exception(
                "Handler %s failed on %s %s (delivery %s/%s)",
                sub.group,
                sub.topic,
                message_id,
                deliveries,
                self.max_deliveries,
            )
            return

        await self.redis.xack(sub.topic, sub.group, message_id)

    async def _delivery_count(self, sub: Subscription, message_id: str) -> int:
        pending = await self.redis.xpending_range(
            sub.topic, sub.group, min=message_id, max=message_id, count=1
        )
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    async def _dead_letter(
        self, sub: Subscription, message_id: str, fields: dict, reason: str
    ) -> None:
        logger.error(
            "Dead-lettering %s %s for %s: %s", sub.topic, message_id, sub.group, reason
        )
        await self.redis.xadd(
            dead_letter_topic(sub.topic),
            {
                "payload": (fields or {}).get("payload", ""),
                "group": sub.group,
                "messageId": message_id,
                "reason": reason,
            },
        )
        await self.redis.xack(sub.topic, sub.group, message_id)
