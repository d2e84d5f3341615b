"""
Order Service — 注文集約 (Order State Machine)

状態遷移:
    PENDING → CONFIRMED  (決済成功)
    PENDING → FAILED     (決済失敗)
    PENDING → CANCELLED  (在庫不足 / 予約の期限切れ)

終端状態からの遷移は存在しない。終端状態の注文に届いたイベントは
エラーにせず無視する（at-least-once 配信で同じイベントが何度も届くため）。

react_* は (注文, イベント) → 新しい注文 | None の純粋関数。
None は「変化なし」を表す。
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable

from ...common.contracts import (
    INVENTORY_UPDATED,
    PAYMENT_PROCESSED,
    Contract,
    InventoryStatus,
    InventoryUpdated,
    LineItem,
    PaymentProcessed,
    PaymentStatus,
)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: TERMINAL_STATUSES,
}


@dataclass(frozen=True)
class Order:
    order_id: str
    user_id: str
    items: tuple[LineItem, ...]
    total_amount: float
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    payment_id: str | None = None
    status_reason: str | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def new_order(
    order_id: str, user_id: str, items: list[LineItem], now: datetime
) -> Order:
    """明細と合計金額は作成時に固定し、以後は再計算しない。"""
    total = round(sum(item.price * item.quantity for item in items), 2)
    return Order(
        order_id=order_id,
        user_id=user_id,
        items=tuple(items),
        total_amount=total,
        status=OrderStatus.PENDING,
        created_at=now,
        updated_at=now,
    )


def is_valid_transition(prev: OrderStatus, next_: OrderStatus) -> bool:
    return next_ in ALLOWED_TRANSITIONS.get(prev, frozenset())


def transition(
    order: Order,
    status: OrderStatus,
    now: datetime,
    *,
    payment_id: str | None = None,
    reason: str | None = None,
) -> Order | None:
    if not is_valid_transition(order.status, status):
        return None
    return replace(
        order,
        status=status,
        payment_id=payment_id or order.payment_id,
        status_reason=reason,
        updated_at=now,
    )


def react_to_payment(order: Order, event: PaymentProcessed, now: datetime) -> Order | None:
    if event.status is PaymentStatus.SUCCESS:
        return transition(order, OrderStatus.CONFIRMED, now, payment_id=event.payment_id)
    return transition(
        order, OrderStatus.FAILED, now, reason=f"payment {event.payment_id} failed"
    )


def react_to_inventory(order: Order, event: InventoryUpdated, now: datetime) -> Order | None:
    if event.status is InventoryStatus.INSUFFICIENT:
        return transition(order, OrderStatus.CANCELLED, now, reason="insufficient inventory")
    if event.status is InventoryStatus.EXPIRED:
        return transition(order, OrderStatus.CANCELLED, now, reason="reservation expired")
    # RESERVED: 在庫確定の通知。注文の状態は決済イベントで決まる
    return None


REACTIONS: dict[str, Callable[[Order, Contract, datetime], Order | None]] = {
    PAYMENT_PROCESSED: react_to_payment,
    INVENTORY_UPDATED: react_to_inventory,
}


def react(order: Order, topic: str, event: Contract, now: datetime) -> Order | None:
    return REACTIONS[topic](order, event, now)
