"""
Inventory Service — FastAPI エントリーポイント

在庫管理サービス。在庫と予約を所有し、
  - HTTP から在庫登録・引き当てを受け付け
  - payment.processed を購読して予約を確定 / 解放し
  - バックグラウンドで期限切れ予約をスイープする
"""

import asyncio
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ...common.config import configure_logging
from ...common.redis_bus import RedisStreamBus
from ...common.web import CamelModel, install_error_handlers
from . import queries, subscriber
from .expiry import ReservationExpiryScheduler
from .ledger import InventoryLedger
from .store import SqlInventoryStore, create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"inventory-{socket.gethostname()}")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)
store = SqlInventoryStore(async_session)
redis_pool: aioredis.Redis | None = None
ledger: InventoryLedger | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, ledger
    configure_logging()
    # ストアを開けなければ起動失敗（再起動は外側の監視に任せる）
    await create_schema(engine)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = RedisStreamBus(redis_pool, CONSUMER_NAME)
    ledger = InventoryLedger(store, bus)
    subscriber.register(bus, ledger)
    scheduler = ReservationExpiryScheduler(ledger, bus, redis=redis_pool)

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(bus.run(shutdown_event)),
        asyncio.create_task(scheduler.run(shutdown_event)),
    ]
    yield
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class StockRequest(CamelModel):
    product_id: str
    product_name: str
    quantity: int = Field(ge=0)
    price: float = Field(ge=0)


class ReserveLine(CamelModel):
    product_id: str
    quantity: int = Field(gt=0)


class ReserveRequest(CamelModel):
    order_id: str
    items: list[ReserveLine] = Field(min_length=1)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/api/inventory", status_code=201)
async def cmd_stock(req: StockRequest):
    """在庫登録"""
    item = await ledger.stock(req.product_id, req.product_name, req.quantity, req.price)
    return {"success": True, "inventory": queries.item_to_dict(item)}


@app.post("/api/inventory/reserve")
async def cmd_reserve(req: ReserveRequest):
    """在庫引き当て（全明細 all-or-nothing）"""
    result = await ledger.reserve(
        req.order_id, [(line.product_id, line.quantity) for line in req.items]
    )
    if not result.ok:
        raise HTTPException(
            status_code=409,
            detail={
                "success": False,
                "error": "Insufficient inventory",
                "items": [s.model_dump(mode="json", by_alias=True) for s in result.shortfall],
            },
        )
    return {
        "success": True,
        "message": "Inventory reserved",
        "reservations": [queries.reservation_to_dict(r) for r in result.reservations],
    }


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/api/inventory")
async def query_list_products():
    return {"success": True, "inventory": await queries.list_products(store)}


@app.get("/api/inventory/reservations/{order_id}")
async def query_order_reservations(order_id: str):
    return {"success": True, "reservations": await queries.list_reservations(store, order_id)}


@app.get("/api/inventory/{product_id}")
async def query_get_product(product_id: str):
    product = await queries.get_product(store, product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return {"success": True, "inventory": product}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
