"""
Order Service — FastAPI エントリーポイント

注文の作成を HTTP で受け付け、以降の状態遷移は
payment.processed / inventory.updated の購読でのみ行う。
"""

import asyncio
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from pydantic import Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ...common.bus import EventBus
from ...common.config import configure_logging
from ...common.contracts import LineItem
from ...common.locks import KeyedLock
from ...common.redis_bus import RedisStreamBus
from ...common.web import CamelModel, install_error_handlers
from . import commands, queries, subscriber
from .store import SqlOrderStore, create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"order-{socket.gethostname()}")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)
store = SqlOrderStore(async_session)
locks = KeyedLock()
redis_pool: aioredis.Redis | None = None
bus: EventBus | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, bus
    configure_logging()
    await create_schema(engine)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = RedisStreamBus(redis_pool, CONSUMER_NAME)
    subscriber.register(bus, store, locks)

    shutdown_event = asyncio.Event()
    bus_task = asyncio.create_task(bus.run(shutdown_event))
    yield
    shutdown_event.set()
    bus_task.cancel()
    await asyncio.gather(bus_task, return_exceptions=True)
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class CreateOrderRequest(CamelModel):
    user_id: str
    items: list[LineItem] = Field(min_length=1)
    order_id: str | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/api/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest):
    """注文作成コマンド"""
    order = await commands.create_order(
        store, bus, locks, req.user_id, req.items, order_id=req.order_id
    )
    return {
        "success": True,
        "order": {
            "orderId": order.order_id,
            "status": order.status.value,
            "totalAmount": order.total_amount,
        },
    }


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/api/orders/user/{user_id}")
async def query_list_user_orders(user_id: str):
    return {"success": True, "orders": await queries.list_orders_by_user(store, user_id)}


@app.get("/api/orders/{order_id}")
async def query_get_order(order_id: str):
    return {"success": True, "order": await queries.get_order(store, order_id)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
