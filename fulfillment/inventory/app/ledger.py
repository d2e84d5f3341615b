"""
Inventory Service — 在庫台帳 (Inventory Ledger)

在庫と予約を所有するコンポーネント。

  reserve  … 全明細の available を確認し、1 つでも足りなければ何も変更しない
             （不足内容を Shortfall として返し、inventory.updated を発行）
  confirm  … reserved の予約を確定し、quantity と reserved を同時に減らす
  release  … reserved の予約を解放し、reserved だけを減らす
  sweep_expired … 期限切れ予約を注文ごとにまとめて release する

confirm / release は at-least-once 配信と期限切れスイープが同じ予約を
取り合うため冪等: 既に終端状態の予約は飛ばすだけでエラーにしない。
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from ...common import config
from ...common.bus import EventBus
from ...common.contracts import InventoryStatus, InventoryUpdated, ShortfallItem
from ...common.errors import ReservationMismatch, TransientError
from ...common.locks import KeyedLock
from .aggregate import (
    InventoryItem,
    Reservation,
    ReservationStatus,
    find_shortfall,
    merge_lines,
)
from .store import InventoryStore

logger = logging.getLogger(__name__)

RESERVE_ATTEMPTS = 3


@dataclass(frozen=True)
class ReservationResult:
    reservations: list[Reservation] = field(default_factory=list)
    shortfall: list[ShortfallItem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.shortfall


class InventoryLedger:
    def __init__(
        self,
        store: InventoryStore,
        bus: EventBus,
        *,
        reservation_ttl: timedelta = timedelta(seconds=config.RESERVATION_TTL_SECONDS),
        locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.reservation_ttl = reservation_ttl
        self._locks = locks or KeyedLock()

    async def stock(
        self,
        product_id: str,
        product_name: str,
        quantity: int,
        price: float,
        now: datetime | None = None,
    ) -> InventoryItem:
        """商品の在庫を登録する。"""
        item = InventoryItem(
            product_id=product_id,
            product_name=product_name,
            quantity=quantity,
            price=price,
            updated_at=now or datetime.now(timezone.utc),
        )
        await self.store.add_item(item)
        logger.info("Stocked %s: quantity=%s", product_id, quantity)
        return item

    async def reserve(
        self,
        order_id: str,
        lines: list[tuple[str, int]],
        now: datetime | None = None,
    ) -> ReservationResult:
        """
        在庫引き当て

        1. 同じ注文の有効な予約が既にあればそれを返す（再送に対して冪等）。
           明細が異なる場合は ReservationMismatch
        2. 全明細の available を確認
        3. 不足があれば変更せずに Shortfall を返し、insufficient を発行
        4. 十分なら reserved を加算し、注文 × 商品ごとに予約を作成
        """
        now = now or datetime.now(timezone.utc)
        requested = merge_lines(lines)

        keys = [f"order:{order_id}", *(f"product:{p}" for p in requested)]
        async with self._locks.hold(*keys):
            existing = [
                r
                for r in await self.store.reservations_for(order_id)
                if r.status is not ReservationStatus.RELEASED
            ]
            if existing:
                if _held_lines(existing) != requested:
                    raise ReservationMismatch(order_id)
                logger.info("Order %s already holds reservations; reusing", order_id)
                return ReservationResult(reservations=existing)

            for _ in range(RESERVE_ATTEMPTS):
                items = await self.store.get_items(list(requested))
                shortfall = find_shortfall(items, requested)
                if shortfall:
                    await self._publish_shortfall(order_id, shortfall, now)
                    return ReservationResult(shortfall=shortfall)

                reservations = [
                    Reservation(
                        reservation_id=uuid4().hex,
                        order_id=order_id,
                        product_id=product_id,
                        quantity=quantity,
                        status=ReservationStatus.RESERVED,
                        created_at=now,
                        expires_at=now + self.reservation_ttl,
                    )
                    for product_id, quantity in requested.items()
                ]
                if await self.store.apply_reservations(reservations, now):
                    logger.info(
                        "Reserved inventory for order %s: %s", order_id, requested
                    )
                    return ReservationResult(reservations=reservations)
                # 別プロセスとの競合で条件付き更新が外れた → 読み直して再判定

        raise TransientError(f"Could not reserve inventory for {order_id}: contention")

    async def confirm(self, order_id: str, now: datetime | None = None) -> list[Reservation]:
        """決済成功: 予約を確定し在庫から差し引く。確定した予約を返す。"""
        return await self._settle(order_id, ReservationStatus.CONFIRMED, now)

    async def release(self, order_id: str, now: datetime | None = None) -> list[Reservation]:
        """決済失敗・期限切れ: 予約を解放し available に戻す。解放した予約を返す。"""
        return await self._settle(order_id, ReservationStatus.RELEASED, now)

    async def sweep_expired(self, now: datetime) -> list[str]:
        """
        期限切れ予約の掃除

        予約ごとではなく注文ごとに 1 回だけ release する
        （複数明細の注文を部分的に何度も解放しないため）。
        実際に解放が起きた注文 ID を返す。
        """
        expired = await self.store.expired_reservations(now)
        order_ids = list(dict.fromkeys(r.order_id for r in expired))

        released_orders = []
        for order_id in order_ids:
            if await self.release(order_id, now):
                released_orders.append(order_id)

        if released_orders:
            logger.info(
                "Released expired reservations for %d orders: %s",
                len(released_orders),
                released_orders,
            )
        return released_orders

    async def _settle(
        self, order_id: str, status: ReservationStatus, now: datetime | None
    ) -> list[Reservation]:
        now = now or datetime.now(timezone.utc)
        open_reservations = await self.store.reservations_for(
            order_id, ReservationStatus.RESERVED
        )
        if not open_reservations:
            logger.info("No open reservations for order %s; nothing to %s", order_id, status.value)
            return []

        settled = []
        keys = [f"product:{r.product_id}" for r in open_reservations]
        async with self._locks.hold(*keys):
            for reservation in open_reservations:
                if await self.store.settle(reservation, status, now):
                    settled.append(replace(reservation, status=status))
                    logger.info(
                        "Reservation %s (%s x%s) %s for order %s",
                        reservation.reservation_id,
                        reservation.product_id,
                        reservation.quantity,
                        status.value,
                        order_id,
                    )
        return settled

    async def _publish_shortfall(
        self, order_id: str, shortfall: list[ShortfallItem], now: datetime
    ) -> None:
        logger.info(
            "Insufficient inventory for order %s: %s",
            order_id,
            [(s.product_id, s.requested, s.available) for s in shortfall],
        )
        await self.bus.publish_event(
            InventoryUpdated(
                order_id=order_id,
                status=InventoryStatus.INSUFFICIENT,
                items=shortfall,
                timestamp=now,
            )
        )


def _held_lines(reservations: list[Reservation]) -> dict[str, int]:
    held: dict[str, int] = {}
    for r in reservations:
        held[r.product_id] = held.get(r.product_id, 0) + r.quantity
    return held
