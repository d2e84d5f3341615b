"""Test doubles and shared constants for the saga tests."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fulfillment.common.bus import InMemoryEventBus
from fulfillment.common.locks import KeyedLock
from fulfillment.inventory.app.ledger import InventoryLedger
from fulfillment.inventory.app.store import MemoryInventoryStore
from fulfillment.order.app.store import MemoryOrderStore
from fulfillment.payment.app.gateway import ChargeResult, PaymentGateway
from fulfillment.payment.app.store import MemoryPaymentStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
TTL = timedelta(minutes=15)


class ScriptedGateway(PaymentGateway):
    """Deterministic gateway: returns queued outcomes, then the default."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.outcomes: list[bool] = []
        self.charges: list[tuple[float, str]] = []

    async def charge(self, amount: float, idempotency_key: str) -> ChargeResult:
        self.charges.append((amount, idempotency_key))
        success = self.outcomes.pop(0) if self.outcomes else self.succeed
        if success:
            return ChargeResult(success=True, transaction_id=f"TXN-{len(self.charges)}")
        return ChargeResult(success=False, failure_reason="Card declined")


@dataclass
class Saga:
    bus: InMemoryEventBus
    ledger: InventoryLedger
    inventory: MemoryInventoryStore
    orders: MemoryOrderStore
    payments: MemoryPaymentStore
    gateway: ScriptedGateway
    locks: KeyedLock
