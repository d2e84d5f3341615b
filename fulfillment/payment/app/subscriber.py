"""
Payment Service — イベントリアクション

order.created を購読して決済を実行する。
"""

from ... import choreography
from ...common.bus import EventBus
from ...common.contracts import ORDER_CREATED, OrderCreated
from ...common.locks import KeyedLock
from . import commands
from .gateway import PaymentGateway
from .store import PaymentStore


def register(
    bus: EventBus, store: PaymentStore, gateway: PaymentGateway, locks: KeyedLock
) -> None:
    async def order_created(event: OrderCreated) -> None:
        await commands.on_order_created(store, bus, gateway, locks, event)

    choreography.bind(bus, choreography.PAYMENT_SERVICE, {ORDER_CREATED: order_created})
