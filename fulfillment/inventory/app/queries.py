"""
Inventory Service — クエリハンドラ (Read 側)
"""

from .aggregate import InventoryItem, Reservation
from .store import InventoryStore


def item_to_dict(item: InventoryItem) -> dict:
    return {
        "productId": item.product_id,
        "productName": item.product_name,
        "quantity": item.quantity,
        "reserved": item.reserved,
        "available": item.available,
        "price": item.price,
        "updatedAt": item.updated_at.isoformat() if item.updated_at else None,
    }


def reservation_to_dict(reservation: Reservation) -> dict:
    return {
        "reservationId": reservation.reservation_id,
        "orderId": reservation.order_id,
        "productId": reservation.product_id,
        "quantity": reservation.quantity,
        "status": reservation.status.value,
        "createdAt": reservation.created_at.isoformat(),
        "expiresAt": reservation.expires_at.isoformat(),
    }


async def get_product(store: InventoryStore, product_id: str) -> dict | None:
    item = await store.get_item(product_id)
    if not item:
        return None
    return item_to_dict(item)


async def list_products(store: InventoryStore) -> list[dict]:
    return [item_to_dict(item) for item in await store.list_items()]


async def list_reservations(store: InventoryStore, order_id: str) -> list[dict]:
    return [reservation_to_dict(r) for r in await store.reservations_for(order_id)]
