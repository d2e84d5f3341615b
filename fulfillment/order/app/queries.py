"""
Order Service — クエリハンドラ (Read 側)
"""

from ...common.errors import OrderNotFound
from .aggregate import Order
from .store import OrderStore


def order_to_dict(order: Order) -> dict:
    return {
        "orderId": order.order_id,
        "userId": order.user_id,
        "items": [i.model_dump(mode="json", by_alias=True) for i in order.items],
        "totalAmount": order.total_amount,
        "status": order.status.value,
        "statusReason": order.status_reason,
        "paymentId": order.payment_id,
        "createdAt": order.created_at.isoformat(),
        "updatedAt": order.updated_at.isoformat(),
    }


async def get_order(store: OrderStore, order_id: str) -> dict:
    order = await store.get(order_id)
    if not order:
        raise OrderNotFound(order_id)
    return order_to_dict(order)


async def list_orders_by_user(store: OrderStore, user_id: str) -> list[dict]:
    """新しい順"""
    return [order_to_dict(o) for o in await store.list_by_user(user_id)]
