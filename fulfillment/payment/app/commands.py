"""
Payment Service — 決済処理 (Payment Processor)

order.created を受けて決済を実行し、結果を payment.processed として発行する。

  1. payment_id を採番
  2. ゲートウェイで課金（失敗・タイムアウトはそのまま failed、内部リトライなし）
  3. Payment を success / failed で保存
  4. payment.processed を発行

order.created の再配信では課金し直さない: その注文に決済が既にあれば
最後の結果を発行し直すだけ（前回、発行の直前に落ちた場合に備える）。
明示的な再試行 (retry_payment) は呼び出し側の判断で新しい payment_id を作る。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from ...common.bus import EventBus
from ...common.contracts import OrderCreated, PaymentProcessed, PaymentStatus
from ...common.errors import PaymentAlreadySettled, PaymentNotFound
from ...common.locks import KeyedLock
from .aggregate import Payment, PaymentState
from .gateway import PaymentGateway
from .store import PaymentStore

logger = logging.getLogger(__name__)


def new_payment_id() -> str:
    return f"PAY-{uuid4().hex[:16].upper()}"


async def process_payment(
    store: PaymentStore,
    bus: EventBus,
    gateway: PaymentGateway,
    order_id: str,
    user_id: str,
    amount: float,
) -> Payment:
    payment_id = new_payment_id()
    logger.info("Processing payment %s for order %s (%.2f)", payment_id, order_id, amount)

    result = await gateway.charge(amount, idempotency_key=payment_id)
    payment = Payment.from_charge(
        payment_id, order_id, user_id, amount, result, datetime.now(timezone.utc)
    )
    await store.insert(payment)
    await publish_outcome(bus, payment)

    if payment.status is PaymentState.SUCCESS:
        logger.info("Payment %s succeeded (%s)", payment_id, payment.transaction_id)
    else:
        logger.info("Payment %s failed: %s", payment_id, payment.failure_reason)
    return payment


async def publish_outcome(bus: EventBus, payment: Payment) -> None:
    await bus.publish_event(
        PaymentProcessed(
            order_id=payment.order_id,
            payment_id=payment.payment_id,
            status=PaymentStatus(payment.status.value),
            amount=payment.amount,
            transaction_id=payment.transaction_id,
            timestamp=payment.updated_at,
        )
    )


async def on_order_created(
    store: PaymentStore,
    bus: EventBus,
    gateway: PaymentGateway,
    locks: KeyedLock,
    event: OrderCreated,
) -> Payment:
    async with locks.hold(event.order_id):
        existing = await store.list_by_order(event.order_id)
        if existing:
            latest = _settled_payment(existing) or existing[-1]
            logger.info(
                "Order %s already has payment %s (%s); republishing outcome",
                event.order_id,
                latest.payment_id,
                latest.status.value,
            )
            await publish_outcome(bus, latest)
            return latest
        return await process_payment(
            store, bus, gateway, event.order_id, event.user_id, event.total_amount
        )


async def retry_payment(
    store: PaymentStore,
    bus: EventBus,
    gateway: PaymentGateway,
    locks: KeyedLock,
    order_id: str,
) -> Payment:
    """
    失敗した決済の再試行

    直近の失敗と同じ利用者・金額で新しい決済を行う。
    既に成功した決済があれば二重課金を避けるため拒否する。
    """
    async with locks.hold(order_id):
        payments = await store.list_by_order(order_id)
        settled = _settled_payment(payments)
        if settled is not None:
            raise PaymentAlreadySettled(order_id, settled.payment_id)
        failed = [p for p in payments if p.status is PaymentState.FAILED]
        if not failed:
            raise PaymentNotFound(f"failed payment for order {order_id}")
        last = failed[-1]
        return await process_payment(
            store, bus, gateway, order_id, last.user_id, last.amount
        )


def _settled_payment(payments: list[Payment]) -> Payment | None:
    return next((p for p in payments if p.status is PaymentState.SUCCESS), None)
