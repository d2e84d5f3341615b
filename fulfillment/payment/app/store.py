"""
Payment Service — ストア
"""

from abc import ABC, abstractmethod

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .aggregate import Payment, PaymentState


class PaymentStore(ABC):
    @abstractmethod
    async def insert(self, payment: Payment) -> None: ...

    @abstractmethod
    async def get(self, payment_id: str) -> Payment | None: ...

    @abstractmethod
    async def list_by_order(self, order_id: str) -> list[Payment]:
        """古い順"""


class MemoryPaymentStore(PaymentStore):
    def __init__(self) -> None:
        self.payments: dict[str, Payment] = {}

    async def insert(self, payment: Payment) -> None:
        self.payments[payment.payment_id] = payment

    async def get(self, payment_id: str) -> Payment | None:
        return self.payments.get(payment_id)

    async def list_by_order(self, order_id: str) -> list[Payment]:
        # dict は挿入順を保つ
        return [p for p in self.payments.values() if p.order_id == order_id]


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS payments (
        id             SERIAL PRIMARY KEY,
        payment_id     VARCHAR(100) UNIQUE NOT NULL,
        order_id       VARCHAR(100) NOT NULL,
        user_id        VARCHAR(100) NOT NULL,
        amount         DECIMAL(10, 2) NOT NULL,
        status         VARCHAR(50) NOT NULL DEFAULT 'pending',
        transaction_id VARCHAR(200),
        failure_reason VARCHAR(500),
        created_at     TIMESTAMPTZ NOT NULL,
        updated_at     TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_payments_order ON payments (order_id, id)",
    # 1 注文につき成功は最大 1 件
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_payments_one_success
        ON payments (order_id) WHERE status = 'success'
    """,
]

_COLUMNS = (
    "payment_id, order_id, user_id, amount, status, transaction_id, "
    "failure_reason, created_at, updated_at"
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def _payment_from_row(row) -> Payment:
    return Payment(
        payment_id=row.payment_id,
        order_id=row.order_id,
        user_id=row.user_id,
        amount=float(row.amount),
        status=PaymentState(row.status),
        transaction_id=row.transaction_id,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlPaymentStore(PaymentStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, payment: Payment) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text(f"""
                    INSERT INTO payments ({_COLUMNS})
                    VALUES (:pid, :oid, :uid, :amount, :status, :txn,
                            :reason, :created, :updated)
                """),
                {
                    "pid": payment.payment_id,
                    "oid": payment.order_id,
                    "uid": payment.user_id,
                    "amount": payment.amount,
                    "status": payment.status.value,
                    "txn": payment.transaction_id,
                    "reason": payment.failure_reason,
                    "created": payment.created_at,
                    "updated": payment.updated_at,
                },
            )
            await session.commit()

    async def get(self, payment_id: str) -> Payment | None:
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM payments WHERE payment_id = :pid"),
                {"pid": payment_id},
            )
            row = result.fetchone()
            return _payment_from_row(row) if row else None

    async def list_by_order(self, order_id: str) -> list[Payment]:
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM payments WHERE order_id = :oid ORDER BY id"),
                {"oid": order_id},
            )
            return [_payment_from_row(row) for row in result.fetchall()]
