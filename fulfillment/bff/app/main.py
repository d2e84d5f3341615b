"""
BFF (Backend for Frontend) サービス

  フロントエンド専用の API ゲートウェイ。
  注文の複合フロー（引き当て → 注文作成）をまとめて 1 回の呼び出しにし、
  バックエンドサービスの構成をフロントエンドから隠蔽する。

  ┌──────────┐     ┌─────┐     ┌─────────────────┐
  │ Frontend │────▶│ BFF │────▶│ Order Service   │
  │          │     │     │────▶│ Inventory Svc   │
  └──────────┘     └─────┘     └─────────────────┘

  決済はイベント駆動で進むため、BFF から Payment Service は呼ばない。
"""

import logging
import os

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field

from ...common.config import configure_logging
from ...common.web import CamelModel, install_error_handlers
from . import checkout

ORDER_SERVICE_URL = os.environ["ORDER_SERVICE_URL"]
INVENTORY_SERVICE_URL = os.environ["INVENTORY_SERVICE_URL"]

logger = logging.getLogger(__name__)

configure_logging()
app = FastAPI(title="BFF - Backend for Frontend")
install_error_handlers(app)

# CORS 設定（フロントエンドの dev server からのアクセスを許可）
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(httpx.HTTPError)
async def upstream_failure(request: Request, exc: httpx.HTTPError) -> JSONResponse:
    logger.warning("Upstream call failed on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "Upstream service unavailable"},
    )


# ── Request Models ───────────────────────────────


class CheckoutItem(CamelModel):
    product_id: str
    quantity: int = Field(gt=0)


class CompleteOrderRequest(CamelModel):
    user_id: str
    items: list[CheckoutItem] = Field(min_length=1)


# ── フロントエンド向け集約 API ───────────────────


@app.post("/api/orders/complete", status_code=201)
async def complete_order(req: CompleteOrderRequest):
    """
    注文を確定する（BFF → Inventory → Order）

    BFF が:
    1. 商品価格を取得
    2. 採番した注文 ID で在庫を引き当て
    3. 引き当てに成功した場合のみ注文を作成

    以降の決済・確定は order.created を起点にイベントで進む。
    """
    async with httpx.AsyncClient(timeout=30.0) as client:
        result = await checkout.place_order(
            client,
            INVENTORY_SERVICE_URL,
            ORDER_SERVICE_URL,
            req.user_id,
            [(item.product_id, item.quantity) for item in req.items],
        )
    if not result.success:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "orderId": result.order_id,
                "error": "Insufficient inventory",
                "items": result.shortfall,
            },
        )
    return {
        "success": True,
        "order": result.order,
        "reservations": result.reservations,
    }


@app.get("/api/inventory")
async def get_inventory():
    """在庫一覧を取得（Inventory Service から取得して返す）"""
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{INVENTORY_SERVICE_URL}/api/inventory")
        resp.raise_for_status()
        return resp.json()


@app.get("/api/inventory/{product_id}")
async def get_inventory_item(product_id: str):
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{INVENTORY_SERVICE_URL}/api/inventory/{product_id}")
        if resp.status_code == 404:
            raise HTTPException(404, "Product not found")
        resp.raise_for_status()
        return resp.json()


@app.get("/api/orders/user/{user_id}")
async def get_user_orders(user_id: str):
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{ORDER_SERVICE_URL}/api/orders/user/{user_id}")
        resp.raise_for_status()
        return resp.json()


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str):
    """注文詳細（状態はイベントの進行に応じて pending → confirmed / cancelled）"""
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{ORDER_SERVICE_URL}/api/orders/{order_id}")
        if resp.status_code == 404:
            raise HTTPException(404, "Order not found")
        resp.raise_for_status()
        return resp.json()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "bff"}
