"""
Payment Service — FastAPI エントリーポイント

order.created を購読して決済を行う。HTTP は参照と、失敗した決済の再試行のみ。
"""

import asyncio
import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ...common.bus import EventBus
from ...common.config import configure_logging
from ...common.locks import KeyedLock
from ...common.redis_bus import RedisStreamBus
from ...common.web import install_error_handlers
from . import commands, queries, subscriber
from .gateway import HttpGateway, PaymentGateway, SimulatedGateway
from .store import SqlPaymentStore, create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"payment-{socket.gethostname()}")
PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL")
PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "10.0"))
PAYMENT_SUCCESS_RATE = float(os.environ.get("PAYMENT_SUCCESS_RATE", "0.9"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)
store = SqlPaymentStore(async_session)
locks = KeyedLock()
redis_pool: aioredis.Redis | None = None
bus: EventBus | None = None


def build_gateway() -> PaymentGateway:
    if PAYMENT_GATEWAY_URL:
        return HttpGateway(PAYMENT_GATEWAY_URL, timeout=PAYMENT_GATEWAY_TIMEOUT)
    return SimulatedGateway(success_rate=PAYMENT_SUCCESS_RATE)


gateway = build_gateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, bus
    configure_logging()
    await create_schema(engine)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = RedisStreamBus(redis_pool, CONSUMER_NAME)
    subscriber.register(bus, store, gateway, locks)

    shutdown_event = asyncio.Event()
    bus_task = asyncio.create_task(bus.run(shutdown_event))
    yield
    shutdown_event.set()
    bus_task.cancel()
    await asyncio.gather(bus_task, return_exceptions=True)
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
install_error_handlers(app)


@app.post("/api/payments/retry/{order_id}")
async def cmd_retry_payment(order_id: str):
    """失敗した決済の再試行（呼び出し側の判断で実行する）"""
    payment = await commands.retry_payment(store, bus, gateway, locks, order_id)
    return {"success": True, "payment": queries.payment_to_dict(payment)}


@app.get("/api/payments/order/{order_id}")
async def query_order_payments(order_id: str):
    return {"success": True, "payments": await queries.list_order_payments(store, order_id)}


@app.get("/api/payments/{payment_id}")
async def query_get_payment(payment_id: str):
    return {"success": True, "payment": await queries.get_payment(store, payment_id)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
