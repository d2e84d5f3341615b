"""
Inventory Service — 予約の期限切れスイープ

一定間隔で InventoryLedger.sweep_expired を呼び、解放した注文ごとに
inventory.updated (status=expired) を発行する。Order Service はこれを受けて
まだ pending の注文を cancelled にする。

タイマーを予約ごとに張るのではなくポーリングなので、
期限切れの検出は最大でスイープ間隔ぶん遅れる。

スイープは重ならない:
  - プロセス内 … asyncio.Lock（実行中なら今回はスキップ）
  - レプリカ間 … Redis ロック（redis を渡した場合）。スイープ中は
    lock_timeout の 1/3 ごとに期限を延長するので、長いスイープでも失効しない
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from ...common import config
from ...common.bus import EventBus
from ...common.contracts import InventoryStatus, InventoryUpdated
from .ledger import InventoryLedger

logger = logging.getLogger(__name__)

SWEEP_LOCK_NAME = "inventory:expiry-sweep"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReservationExpiryScheduler:
    def __init__(
        self,
        ledger: InventoryLedger,
        bus: EventBus,
        *,
        interval: float = config.EXPIRY_SWEEP_INTERVAL_SECONDS,
        redis: aioredis.Redis | None = None,
        lock_timeout: float = config.EXPIRY_SWEEP_LOCK_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.bus = bus
        self.interval = interval
        self.redis = redis
        self.lock_timeout = lock_timeout
        self.clock = clock
        self._running = asyncio.Lock()

    async def run_once(self) -> list[str]:
        """1 回分のスイープ。解放した注文 ID を返す。"""
        if self._running.locked():
            logger.warning("Previous expiry sweep still running; skipping this tick")
            return []
        async with self._running:
            if self.redis is None:
                return await self._sweep()

            lock = self.redis.lock(SWEEP_LOCK_NAME, timeout=self.lock_timeout, blocking=False)
            if not await lock.acquire():
                logger.info("Expiry sweep is running on another replica; skipping")
                return []
            keepalive = asyncio.create_task(self._keep_lock(lock))
            try:
                return await self._sweep()
            finally:
                keepalive.cancel()
                try:
                    await keepalive
                except asyncio.CancelledError:
                    pass
                try:
                    await lock.release()
                except LockError:
                    logger.warning("Expiry sweep lock expired before release")

    async def _keep_lock(self, lock) -> None:
        """スイープ中はロックの期限を lock_timeout に戻し続ける。"""
        while True:
            await asyncio.sleep(self.lock_timeout / 3)
            try:
                await lock.reacquire()
            except RedisError as e:
                logger.warning("Could not extend the expiry sweep lock: %s", e)
                return

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで interval ごとにスイープする。"""
        logger.info("Reservation expiry sweep every %.0fs", self.interval)
        while not shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception:
                # 次の周期で再試行する
                logger.exception("Expiry sweep failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def _sweep(self) -> list[str]:
        now = self.clock()
        released = await self.ledger.sweep_expired(now)
        for order_id in released:
            await self.bus.publish_event(
                InventoryUpdated(
                    order_id=order_id,
                    status=InventoryStatus.EXPIRED,
                    timestamp=now,
                )
            )
        return released
