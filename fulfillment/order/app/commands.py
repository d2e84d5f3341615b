"""
Order Service — コマンドハンドラ (Write 側)

注文の作成と、イベントによる状態遷移の適用。

注文の作成より先にその注文宛てのイベントが届くことがある
（BFF は在庫を引き当ててから注文を作るため、在庫不足通知が先に来る）。
そうしたイベントは退避しておき、注文が見えるようになった時点で適用する。
退避イベントで終端状態になった注文については order.created を発行しない。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from ...common.bus import EventBus
from ...common.contracts import TOPICS, LineItem, OrderCreated
from ...common.errors import ConcurrentModification, DuplicateOrder
from ...common.locks import KeyedLock
from . import aggregate
from .aggregate import Order, OrderStatus
from .store import OrderStore

logger = logging.getLogger(__name__)


def new_order_id() -> str:
    return f"ORD-{uuid4().hex[:16].upper()}"


async def create_order(
    store: OrderStore,
    bus: EventBus,
    locks: KeyedLock,
    user_id: str,
    items: list[LineItem],
    order_id: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    注文作成コマンド

    1. 明細と合計金額を固定した PENDING の注文を保存
    2. 退避されていたイベントを適用
    3. まだ PENDING なら order.created を発行（決済サービスへ通知）

    同じ注文 ID・同じ内容での再送は既存の注文を返す。
    """
    now = now or datetime.now(timezone.utc)
    order = aggregate.new_order(order_id or new_order_id(), user_id, items, now)

    async with locks.hold(order.order_id):
        try:
            await store.insert(order)
            logger.info("Order created: %s total=%.2f", order.order_id, order.total_amount)
        except DuplicateOrder:
            existing = await store.get(order.order_id)
            if existing is None or not _same_request(existing, order):
                raise
            logger.info("Order %s already exists; treating as a resend", order.order_id)
            order = existing
        order = await apply_parked(store, order, now)

    if order.status is OrderStatus.PENDING:
        await bus.publish_event(
            OrderCreated(
                order_id=order.order_id,
                user_id=order.user_id,
                items=list(order.items),
                total_amount=order.total_amount,
                timestamp=order.created_at,
            )
        )
    else:
        logger.info(
            "Order %s settled as %s before publication (%s)",
            order.order_id,
            order.status.value,
            order.status_reason,
        )
    return order


async def apply_parked(store: OrderStore, order: Order, now: datetime) -> Order:
    """退避イベントを到着順に適用して保存する。"""
    parked = await store.take_parked(order.order_id)
    if not parked:
        return order

    updated = order
    for topic, payload in parked:
        event = TOPICS[topic].model_validate(payload)
        result = aggregate.react(updated, topic, event, now)
        if result is not None:
            logger.info(
                "Applied parked %s to order %s: %s → %s",
                topic,
                order.order_id,
                updated.status.value,
                result.status.value,
            )
            updated = result

    if updated is order:
        return order
    try:
        return await store.save(updated, order.version)
    except ConcurrentModification:
        # 取り出した分を戻してから再配信に任せる
        await store.restore_parked(order.order_id, parked)
        raise


def _same_request(existing: Order, requested: Order) -> bool:
    return existing.user_id == requested.user_id and existing.items == requested.items
