"""
共通 — イベントバス (Event Bus)

トピック単位の publish / subscribe を抽象化する。配信保証は at-least-once:

  - 購読はトピック × 購読グループ（= サービス）単位。
    同じ購読グループのハンドラは 1 件ずつ順に実行される。
  - ハンドラが例外なく戻ったときだけ ack する。
    例外を投げたイベントは再配信され、max_deliveries 回を超えたら dead-letter へ。
  - EventContractError（スキーマ違反）は再試行しても直らないので即 dead-letter。

本番は Redis Streams 実装 (redis_bus.RedisStreamBus)、
ローカル・テストはプロセス内実装 (InMemoryEventBus) を使う。
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable

from . import config, contracts
from .errors import EventContractError

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]


def dead_letter_topic(topic: str) -> str:
    return f"{topic}.dead"


@dataclass(frozen=True)
class Subscription:
    topic: str
    group: str
    handler: Handler


class EventBus(ABC):
    def __init__(self, max_deliveries: int = config.BUS_MAX_DELIVERIES) -> None:
        self.max_deliveries = max_deliveries
        self._subscriptions: list[Subscription] = []

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        if any(s.topic == topic and s.group == group for s in self._subscriptions):
            raise ValueError(f"{group} is already subscribed to {topic}")
        self._subscriptions.append(Subscription(topic, group, handler))
        logger.info("Subscribed %s to %s", group, topic)

    async def publish_event(self, event: contracts.Contract) -> dict:
        """契約モデルをエンベロープに包んで発行する。"""
        envelope = contracts.encode(event)
        await self.publish(envelope["eventType"], envelope)
        return envelope

    @abstractmethod
    async def publish(self, topic: str, envelope: dict) -> None: ...

    @abstractmethod
    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで購読を処理する。"""

    @abstractmethod
    async def close(self) -> None: ...


@dataclass
class _Delivery:
    message_id: str
    envelope: dict
    deliveries: int = 0


class InMemoryEventBus(EventBus):
    """
    プロセス内のイベントバス

    購読ごとに asyncio.Queue と消費タスクを 1 つ持つ。
    drain() は全キューが空になる（Saga が静止する）まで待つ。
    """

    def __init__(
        self,
        max_deliveries: int = config.BUS_MAX_DELIVERIES,
        redelivery_delay: float = 0.0,
    ) -> None:
        super().__init__(max_deliveries)
        self.redelivery_delay = redelivery_delay
        self.dead_letters: dict[str, list[dict]] = defaultdict(list)
        self._published: dict[str, list[dict]] = defaultdict(list)
        self._queues: dict[Subscription, asyncio.Queue] = {}
        self._tasks: list[asyncio.Task] = []
        self._ids = itertools.count(1)
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        super().subscribe(topic, group, handler)
        sub = self._subscriptions[-1]
        self._queues[sub] = asyncio.Queue()
        if self._tasks:
            self._tasks.append(asyncio.create_task(self._consume(sub)))

    def published(self, topic: str) -> list[dict]:
        return list(self._published[topic])

    async def publish(self, topic: str, envelope: dict) -> None:
        self._published[topic].append(envelope)
        message_id = f"{next(self._ids)}-0"
        for sub in self._subscriptions:
            if sub.topic == topic:
                self._pending += 1
                self._idle.clear()
                self._queues[sub].put_nowait(_Delivery(message_id, envelope))

    def start(self) -> None:
        if self._tasks:
            return
        for sub in self._subscriptions:
            self._tasks.append(asyncio.create_task(self._consume(sub)))

    async def drain(self) -> None:
        self.start()
        await self._idle.wait()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.close()

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _consume(self, sub: Subscription) -> None:
        queue = self._queues[sub]
        while True:
            delivery = await queue.get()
            try:
                await self._deliver(sub, delivery)
            finally:
                queue.task_done()

    async def _deliver(self, sub: Subscription, delivery: _Delivery) -> None:
        delivery.deliveries += 1
        try:
            await sub.handler(delivery.envelope)
        except EventContractError as e:
            self._dead_letter(sub, delivery, str(e))
        except Exception as e:
            logger.exception(
                "Handler %s failed on %s %s (delivery %s/%s)",
                sub.group,
                sub.topic,
                delivery.message_id,
                delivery.deliveries,
                self.max_deliveries,
            )
            if delivery.deliveries >= self.max_deliveries:
                self._dead_letter(sub, delivery, repr(e))
                return
            if self.redelivery_delay:
                await asyncio.sleep(self.redelivery_delay)
            # ack しない → 末尾に戻して再配信
            self._queues[sub].put_nowait(delivery)
        else:
            self._settle()

    def _dead_letter(self, sub: Subscription, delivery: _Delivery, reason: str) -> None:
        logger.error(
            "Dead-lettering %s %s for %s after %s deliveries: %s",
            sub.topic,
            delivery.message_id,
            sub.group,
            delivery.deliveries,
            reason,
        )
        self.dead_letters[dead_letter_topic(sub.topic)].append(
            {
                "group": sub.group,
                "messageId": delivery.message_id,
                "deliveries": delivery.deliveries,
                "reason": reason,
                "envelope": delivery.envelope,
            }
        )
        self._settle()

    def _settle(self) -> None:
        self._pending -= 1
        if self._pending == 0:
            self._idle.set()
