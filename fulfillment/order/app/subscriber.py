"""
Order Service — イベントリアクション

payment.processed と inventory.updated を購読し、注文の状態を進める。
同じ注文への反応は KeyedLock で直列化し、ストアのバージョン比較で
プロセス間の競合を検知する。
"""

import logging
from datetime import datetime, timezone

from ... import choreography
from ...common.bus import EventBus
from ...common.contracts import (
    INVENTORY_UPDATED,
    PAYMENT_PROCESSED,
    Contract,
    InventoryUpdated,
    PaymentProcessed,
)
from ...common.locks import KeyedLock
from . import aggregate
from .commands import apply_parked
from .store import OrderStore

logger = logging.getLogger(__name__)


async def react(
    store: OrderStore, locks: KeyedLock, topic: str, order_id: str, event: Contract
) -> None:
    now = datetime.now(timezone.utc)
    async with locks.hold(order_id):
        order = await store.get(order_id)
        if order is None:
            await store.park(order_id, topic, event.model_dump(mode="json", by_alias=True))
            logger.info("Order %s not visible yet; parked %s", order_id, topic)
            # 退避と同時に注文が作成された場合は、ここで取りこぼしを拾う
            order = await store.get(order_id)
            if order is not None:
                await apply_parked(store, order, now)
            return

        updated = aggregate.react(order, topic, event, now)
        if updated is None:
            logger.info(
                "Order %s is %s; %s causes no transition",
                order_id,
                order.status.value,
                topic,
            )
            return
        await store.save(updated, order.version)
        logger.info(
            "Order %s: %s → %s", order_id, order.status.value, updated.status.value
        )


def register(bus: EventBus, store: OrderStore, locks: KeyedLock) -> None:
    async def payment_processed(event: PaymentProcessed) -> None:
        await react(store, locks, PAYMENT_PROCESSED, event.order_id, event)

    async def inventory_updated(event: InventoryUpdated) -> None:
        await react(store, locks, INVENTORY_UPDATED, event.order_id, event)

    choreography.bind(
        bus,
        choreography.ORDER_SERVICE,
        {
            PAYMENT_PROCESSED: payment_processed,
            INVENTORY_UPDATED: inventory_updated,
        },
    )
