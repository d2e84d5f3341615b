import pytest

from fulfillment.common.bus import InMemoryEventBus
from fulfillment.common.locks import KeyedLock
from fulfillment.inventory.app import subscriber as inventory_subscriber
from fulfillment.inventory.app.ledger import InventoryLedger
from fulfillment.inventory.app.store import MemoryInventoryStore
from fulfillment.order.app import subscriber as order_subscriber
from fulfillment.order.app.store import MemoryOrderStore
from fulfillment.payment.app import subscriber as payment_subscriber
from fulfillment.payment.app.store import MemoryPaymentStore
from tests.mocks import TTL, Saga, ScriptedGateway

# --- Test Fixtures --- #


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus(max_deliveries=3)


@pytest.fixture
def inventory_store() -> MemoryInventoryStore:
    return MemoryInventoryStore()


@pytest.fixture
def ledger(inventory_store: MemoryInventoryStore, bus: InMemoryEventBus) -> InventoryLedger:
    return InventoryLedger(inventory_store, bus, reservation_ttl=TTL, locks=KeyedLock())


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
async def saga(bus, ledger, inventory_store, gateway):
    """All three services wired on one in-memory bus."""
    orders = MemoryOrderStore()
    payments = MemoryPaymentStore()
    locks = KeyedLock()

    order_subscriber.register(bus, orders, locks)
    payment_subscriber.register(bus, payments, gateway, KeyedLock())
    inventory_subscriber.register(bus, ledger)
    bus.start()

    yield Saga(bus, ledger, inventory_store, orders, payments, gateway, locks)
    await bus.close()
