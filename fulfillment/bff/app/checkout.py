"""
BFF — 注文の複合フロー

  ┌─────┐ 1. 商品価格を取得     ┌───────────────┐
  │ BFF │ ────────────────────▶ │ Inventory Svc │
  │     │ 2. 在庫を引き当て     │               │
  │     │ ────────────────────▶ │               │
  │     │ 3. 注文を作成         ┌───────────────┐
  │     │ ────────────────────▶ │ Order Svc     │
  └─────┘                       └───────────────┘

注文 ID は BFF が先に採番し、引き当てと注文作成の両方に同じ ID を使う。
在庫が足りなければ注文は作成しない（在庫サービスが insufficient を発行済み）。
引き当て後に注文作成が失敗した場合、予約は期限切れスイープで解放される。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import uuid4

import httpx

from ...common.errors import ProductNotFound

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    order_id: str
    success: bool
    order: dict | None = None
    reservations: list[dict] = field(default_factory=list)
    shortfall: list[dict] = field(default_factory=list)


def new_order_id() -> str:
    return f"ORD-{uuid4().hex[:16].upper()}"


async def fetch_prices(
    client: httpx.AsyncClient, inventory_url: str, product_ids: list[str]
) -> dict[str, float]:
    """商品ごとの価格を並列に取得する。"""
    responses = await asyncio.gather(
        *(client.get(f"{inventory_url}/api/inventory/{pid}") for pid in product_ids)
    )
    prices = {}
    for pid, resp in zip(product_ids, responses):
        if resp.status_code == 404:
            raise ProductNotFound(pid)
        resp.raise_for_status()
        prices[pid] = resp.json()["inventory"]["price"]
    return prices


async def place_order(
    client: httpx.AsyncClient,
    inventory_url: str,
    order_url: str,
    user_id: str,
    items: list[tuple[str, int]],
) -> CheckoutResult:
    order_id = new_order_id()
    prices = await fetch_prices(client, inventory_url, list(dict.fromkeys(p for p, _ in items)))

    # 1. 在庫引き当て
    resp = await client.post(
        f"{inventory_url}/api/inventory/reserve",
        json={
            "orderId": order_id,
            "items": [{"productId": pid, "quantity": qty} for pid, qty in items],
        },
    )
    if resp.status_code == 409:
        detail = resp.json().get("detail") or {}
        logger.info("Checkout %s rejected: insufficient inventory", order_id)
        return CheckoutResult(order_id, False, shortfall=detail.get("items", []))
    resp.raise_for_status()
    reservations = resp.json()["reservations"]

    # 2. 注文作成（価格は作成時点のスナップショット）
    resp = await client.post(
        f"{order_url}/api/orders",
        json={
            "orderId": order_id,
            "userId": user_id,
            "items": [
                {"productId": pid, "quantity": qty, "price": prices[pid]}
                for pid, qty in items
            ],
        },
    )
    resp.raise_for_status()
    logger.info("Checkout %s placed", order_id)
    return CheckoutResult(
        order_id, True, order=resp.json()["order"], reservations=reservations
    )
