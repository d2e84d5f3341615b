import random

import httpx
import pytest

from fulfillment.common.bus import InMemoryEventBus
from fulfillment.common.contracts import PAYMENT_PROCESSED, LineItem, OrderCreated
from fulfillment.common.errors import PaymentAlreadySettled, PaymentNotFound
from fulfillment.common.locks import KeyedLock
from fulfillment.payment.app import commands, queries
from fulfillment.payment.app.aggregate import PaymentState
from fulfillment.payment.app.gateway import HttpGateway, SimulatedGateway
from fulfillment.payment.app.store import MemoryPaymentStore

from tests.mocks import T0, ScriptedGateway


def order_created(order_id: str = "O1", amount: float = 25.0) -> OrderCreated:
    return OrderCreated(
        order_id=order_id,
        user_id="u1",
        items=[LineItem(product_id="p1", quantity=1, price=amount)],
        total_amount=amount,
        timestamp=T0,
    )


@pytest.fixture
def store() -> MemoryPaymentStore:
    return MemoryPaymentStore()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


# --- Processor --- #


@pytest.mark.asyncio
async def test_successful_charge_is_recorded_and_published(store, bus):
    gateway = ScriptedGateway(succeed=True)

    payment = await commands.on_order_created(store, bus, gateway, KeyedLock(), order_created())

    assert payment.status is PaymentState.SUCCESS
    assert payment.transaction_id == "TXN-1"
    assert gateway.charges == [(25.0, payment.payment_id)]

    [envelope] = bus.published(PAYMENT_PROCESSED)
    assert envelope["data"]["status"] == "success"
    assert envelope["data"]["transactionId"] == "TXN-1"
    assert envelope["data"]["paymentId"] == payment.payment_id


@pytest.mark.asyncio
async def test_failed_charge_has_no_transaction_id(store, bus):
    payment = await commands.on_order_created(
        store, bus, ScriptedGateway(succeed=False), KeyedLock(), order_created()
    )

    assert payment.status is PaymentState.FAILED
    assert payment.transaction_id is None
    assert payment.failure_reason == "Card declined"
    [envelope] = bus.published(PAYMENT_PROCESSED)
    assert envelope["data"]["status"] == "failed"
    assert envelope["data"]["transactionId"] is None


@pytest.mark.asyncio
async def test_redelivered_order_created_does_not_charge_twice(store, bus):
    gateway = ScriptedGateway()
    locks = KeyedLock()

    first = await commands.on_order_created(store, bus, gateway, locks, order_created())
    second = await commands.on_order_created(store, bus, gateway, locks, order_created())

    assert second == first
    assert len(gateway.charges) == 1
    assert len(await store.list_by_order("O1")) == 1
    # the outcome is republished for the redelivery
    assert len(bus.published(PAYMENT_PROCESSED)) == 2


@pytest.mark.asyncio
async def test_retry_after_failure_charges_again(store, bus):
    gateway = ScriptedGateway()
    gateway.outcomes = [False, True]
    locks = KeyedLock()
    failed = await commands.on_order_created(store, bus, gateway, locks, order_created())

    retried = await commands.retry_payment(store, bus, gateway, locks, "O1")

    assert retried.payment_id != failed.payment_id
    assert retried.status is PaymentState.SUCCESS
    assert retried.amount == 25.0
    assert [p["status"] for p in await queries.list_order_payments(store, "O1")] == [
        "failed",
        "success",
    ]


@pytest.mark.asyncio
async def test_retry_refused_once_paid(store, bus):
    gateway = ScriptedGateway()
    locks = KeyedLock()
    await commands.on_order_created(store, bus, gateway, locks, order_created())

    with pytest.raises(PaymentAlreadySettled):
        await commands.retry_payment(store, bus, gateway, locks, "O1")
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_retry_without_failed_payment_is_not_found(store, bus):
    with pytest.raises(PaymentNotFound):
        await commands.retry_payment(store, bus, ScriptedGateway(), KeyedLock(), "O9")


@pytest.mark.asyncio
async def test_get_payment_not_found(store):
    with pytest.raises(PaymentNotFound):
        await queries.get_payment(store, "PAY-missing")


# --- Gateways --- #


@pytest.mark.asyncio
async def test_simulated_gateway_follows_success_rate():
    always = SimulatedGateway(success_rate=1.0, latency=0, rng=random.Random(1))
    never = SimulatedGateway(success_rate=0.0, latency=0, rng=random.Random(1))

    ok = await always.charge(10.0, "PAY-1")
    declined = await never.charge(10.0, "PAY-2")

    assert ok.success and ok.transaction_id.startswith("TXN-")
    assert not declined.success and declined.transaction_id is None


@pytest.mark.asyncio
async def test_http_gateway_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, json={"status": "succeeded", "transactionId": "T-42"})

    gateway = HttpGateway("http://gateway.test", transport=httpx.MockTransport(handler))
    result = await gateway.charge(12.5, "PAY-1")

    assert result.success
    assert result.transaction_id == "T-42"
    assert seen["path"] == "/charges"
    assert b'"idempotencyKey":"PAY-1"' in seen["body"].replace(b" ", b"")


@pytest.mark.asyncio
async def test_http_gateway_decline():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            200, json={"status": "failed", "failureReason": "Insufficient funds"}
        )
    )
    result = await HttpGateway("http://gateway.test", transport=transport).charge(1.0, "PAY-1")

    assert not result.success
    assert result.failure_reason == "Insufficient funds"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[], ["ok"], "ok", None, 3])
async def test_http_gateway_non_object_body_is_a_failure(body):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    result = await HttpGateway("http://gateway.test", transport=transport).charge(1.0, "PAY-1")

    assert not result.success
    assert result.failure_reason == "Malformed gateway response"


@pytest.mark.asyncio
async def test_malformed_gateway_reply_records_failed_payment(store, bus):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["ok"]))
    gateway = HttpGateway("http://gateway.test", transport=transport)

    payment = await commands.on_order_created(store, bus, gateway, KeyedLock(), order_created())

    assert payment.status is PaymentState.FAILED
    assert payment.failure_reason == "Malformed gateway response"
    assert await store.list_by_order("O1") == [payment]
    [envelope] = bus.published(PAYMENT_PROCESSED)
    assert envelope["data"]["status"] == "failed"


@pytest.mark.asyncio
async def test_http_gateway_timeout_is_a_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    gateway = HttpGateway("http://gateway.test", transport=httpx.MockTransport(handler))
    result = await gateway.charge(1.0, "PAY-1")

    assert not result.success
    assert result.failure_reason == "Gateway timeout"


@pytest.mark.asyncio
async def test_http_gateway_server_error_is_a_failure():
    transport = httpx.MockTransport(lambda request: httpx.Response(502))
    result = await HttpGateway("http://gateway.test", transport=transport).charge(1.0, "PAY-1")

    assert not result.success
    assert result.failure_reason.startswith("Gateway error")
