import json

import httpx
import pytest

from fulfillment.bff.app import checkout
from fulfillment.common.errors import ProductNotFound

INVENTORY = "http://inventory.test"
ORDERS = "http://orders.test"
PRICES = {"p1": 5.0, "p2": 2.5}


def upstream(reserve_status: int = 200, calls: list | None = None):
    calls = calls if calls is not None else []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, str(request.url), body))
        path = request.url.path

        if request.method == "GET" and path.startswith("/api/inventory/"):
            pid = path.rsplit("/", 1)[-1]
            if pid not in PRICES:
                return httpx.Response(404, json={"detail": "Product not found"})
            return httpx.Response(200, json={"inventory": {"productId": pid, "price": PRICES[pid]}})

        if path == "/api/inventory/reserve":
            if reserve_status == 409:
                return httpx.Response(
                    409,
                    json={
                        "detail": {
                            "success": False,
                            "error": "Insufficient inventory",
                            "items": [{"productId": "p1", "requested": 9, "available": 4}],
                        }
                    },
                )
            return httpx.Response(
                reserve_status,
                json={"reservations": [{"orderId": body["orderId"], "productId": "p1"}]},
            )

        if path == "/api/orders":
            return httpx.Response(
                201, json={"order": {"orderId": body["orderId"], "status": "pending"}}
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler), calls


@pytest.mark.asyncio
async def test_reserves_then_creates_order_under_same_id():
    transport, calls = upstream()

    async with httpx.AsyncClient(transport=transport) as client:
        result = await checkout.place_order(
            client, INVENTORY, ORDERS, "u1", [("p1", 2), ("p2", 1)]
        )

    assert result.success
    assert result.order_id.startswith("ORD-")
    assert result.order == {"orderId": result.order_id, "status": "pending"}

    posts = [(url, body) for method, url, body in calls if method == "POST"]
    assert [url for url, _ in posts] == [
        f"{INVENTORY}/api/inventory/reserve",
        f"{ORDERS}/api/orders",
    ]
    reserve_body, order_body = posts[0][1], posts[1][1]
    assert reserve_body["orderId"] == order_body["orderId"] == result.order_id
    assert order_body["userId"] == "u1"
    assert order_body["items"] == [
        {"productId": "p1", "quantity": 2, "price": 5.0},
        {"productId": "p2", "quantity": 1, "price": 2.5},
    ]


@pytest.mark.asyncio
async def test_shortfall_skips_order_creation():
    transport, calls = upstream(reserve_status=409)

    async with httpx.AsyncClient(transport=transport) as client:
        result = await checkout.place_order(client, INVENTORY, ORDERS, "u1", [("p1", 9)])

    assert not result.success
    assert result.shortfall == [{"productId": "p1", "requested": 9, "available": 4}]
    assert all(not url.startswith(ORDERS) for _, url, _ in calls)


@pytest.mark.asyncio
async def test_unknown_product_is_not_found():
    transport, calls = upstream()

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ProductNotFound):
            await checkout.place_order(client, INVENTORY, ORDERS, "u1", [("ghost", 1)])

    assert all(method == "GET" for method, _, _ in calls)


@pytest.mark.asyncio
async def test_upstream_failure_propagates():
    transport, _ = upstream(reserve_status=503)

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await checkout.place_order(client, INVENTORY, ORDERS, "u1", [("p1", 1)])
