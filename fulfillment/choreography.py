"""
Choreography — 購読テーブル

オーケストレーターを持たない Saga。どのサービスがどのイベントに反応するかを
ここで一覧として宣言し、各サービスはこの表に従ってハンドラを登録する。

  order.created      ──▶ payment-service
  payment.processed  ──▶ order-service, inventory-service
  inventory.updated  ──▶ order-service

  ┌─────────┐ order.created ┌─────────┐ payment.processed ┌───────────┐
  │  Order  │ ────────────▶ │ Payment │ ────────────────▶ │ Inventory │
  │         │ ◀──────────────────────── payment.processed │           │
  │         │ ◀──────────────────────── inventory.updated │           │
  └─────────┘                                             └───────────┘
"""

import logging
from typing import Awaitable, Callable

from .common import contracts
from .common.bus import EventBus, Handler

logger = logging.getLogger(__name__)

ORDER_SERVICE = "order-service"
PAYMENT_SERVICE = "payment-service"
INVENTORY_SERVICE = "inventory-service"

SUBSCRIPTIONS: dict[str, tuple[str, ...]] = {
    contracts.ORDER_CREATED: (PAYMENT_SERVICE,),
    contracts.PAYMENT_PROCESSED: (ORDER_SERVICE, INVENTORY_SERVICE),
    contracts.INVENTORY_UPDATED: (ORDER_SERVICE,),
}

Reaction = Callable[[contracts.Contract], Awaitable[None]]


def topics_for(service: str) -> list[str]:
    return [topic for topic, services in SUBSCRIPTIONS.items() if service in services]


def bind(bus: EventBus, service: str, reactions: dict[str, Reaction]) -> None:
    """
    サービスのリアクションをバスに登録する。

    表に宣言されていないトピックへの登録や、宣言済みトピックの登録漏れは
    起動時に ValueError として検出する。
    """
    declared = topics_for(service)
    if set(reactions) != set(declared):
        raise ValueError(
            f"{service} reactions {sorted(reactions)} do not match "
            f"declared subscriptions {sorted(declared)}"
        )
    for topic in declared:
        bus.subscribe(topic, service, _decoding(topic, reactions[topic]))


def _decoding(topic: str, reaction: Reaction) -> Handler:
    async def handler(envelope: dict) -> None:
        event = contracts.decode(topic, envelope)
        await reaction(event)

    return handler
