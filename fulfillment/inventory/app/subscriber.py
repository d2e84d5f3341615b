"""
Inventory Service — イベントリアクション

payment.processed を購読する。

  success → 予約を確定（在庫から差し引き）し inventory.updated (reserved) を発行
  failed  → 予約を解放（available に戻す）

どちらも冪等。再配信で確定済みの予約しか残っていなくても
reserved 通知は再発行する（前回の発行直前に落ちた場合に備える）。
"""

import logging
from datetime import datetime, timezone

from ... import choreography
from ...common.bus import EventBus
from ...common.contracts import (
    PAYMENT_PROCESSED,
    InventoryStatus,
    InventoryUpdated,
    PaymentProcessed,
    PaymentStatus,
)
from .aggregate import ReservationStatus
from .ledger import InventoryLedger

logger = logging.getLogger(__name__)


async def on_payment_processed(
    ledger: InventoryLedger, bus: EventBus, event: PaymentProcessed
) -> None:
    if event.status is PaymentStatus.FAILED:
        released = await ledger.release(event.order_id)
        logger.info(
            "Payment %s failed; released %d reservations for order %s",
            event.payment_id,
            len(released),
            event.order_id,
        )
        return

    await ledger.confirm(event.order_id)
    confirmed = await ledger.store.reservations_for(
        event.order_id, ReservationStatus.CONFIRMED
    )
    if not confirmed:
        logger.warning(
            "Payment %s succeeded but order %s has no confirmable reservations",
            event.payment_id,
            event.order_id,
        )
        return

    await bus.publish_event(
        InventoryUpdated(
            order_id=event.order_id,
            status=InventoryStatus.RESERVED,
            timestamp=datetime.now(timezone.utc),
        )
    )


def register(bus: EventBus, ledger: InventoryLedger) -> None:
    async def payment_processed(event: PaymentProcessed) -> None:
        await on_payment_processed(ledger, bus, event)

    choreography.bind(
        bus,
        choreography.INVENTORY_SERVICE,
        {PAYMENT_PROCESSED: payment_processed},
    )
