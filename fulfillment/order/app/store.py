"""
Order Service — ストア

注文の永続化。更新はバージョン番号による楽観的ロックで、
同じ注文への同時書き込みを検知する（競合は ConcurrentModification → 再配信）。

まだ作成されていない注文宛てに届いたイベントは parked_order_events に
退避し、注文作成時に到着順で適用する。
"""

import json
from abc import ABC, abstractmethod
from dataclasses import replace

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ...common.contracts import LineItem
from ...common.errors import ConcurrentModification, DuplicateOrder
from .aggregate import Order, OrderStatus


class OrderStore(ABC):
    @abstractmethod
    async def insert(self, order: Order) -> None: ...

    @abstractmethod
    async def get(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def save(self, order: Order, expected_version: int) -> Order:
        """expected_version と一致したときだけ書き込み、新しいバージョンの注文を返す。"""

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Order]: ...

    @abstractmethod
    async def park(self, order_id: str, topic: str, payload: dict) -> None: ...

    @abstractmethod
    async def take_parked(self, order_id: str) -> list[tuple[str, dict]]:
        """退避イベントを到着順に取り出して削除する（取り出せるのは 1 回だけ）。"""

    @abstractmethod
    async def restore_parked(self, order_id: str, events: list[tuple[str, dict]]) -> None:
        """take_parked で取り出したイベントを戻す（保存に失敗したとき用）。"""


# ── In-memory ────────────────────────────────────


class MemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.parked: dict[str, list[tuple[str, dict]]] = {}

    async def insert(self, order: Order) -> None:
        if order.order_id in self.orders:
            raise DuplicateOrder(order.order_id)
        self.orders[order.order_id] = order

    async def get(self, order_id: str) -> Order | None:
        return self.orders.get(order_id)

    async def save(self, order: Order, expected_version: int) -> Order:
        current = self.orders.get(order.order_id)
        if current is None or current.version != expected_version:
            raise ConcurrentModification("Order", order.order_id, expected_version)
        saved = replace(order, version=expected_version + 1)
        self.orders[order.order_id] = saved
        return saved

    async def list_by_user(self, user_id: str) -> list[Order]:
        orders = [o for o in self.orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def park(self, order_id: str, topic: str, payload: dict) -> None:
        self.parked.setdefault(order_id, []).append((topic, payload))

    async def take_parked(self, order_id: str) -> list[tuple[str, dict]]:
        return self.parked.pop(order_id, [])

    async def restore_parked(self, order_id: str, events: list[tuple[str, dict]]) -> None:
        if events:
            self.parked[order_id] = list(events) + self.parked.get(order_id, [])


# ── PostgreSQL ───────────────────────────────────

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id      VARCHAR(100) PRIMARY KEY,
        user_id       VARCHAR(100) NOT NULL,
        items         JSONB NOT NULL,
        total_amount  NUMERIC(12, 2) NOT NULL,
        status        VARCHAR(20) NOT NULL,
        payment_id    VARCHAR(100),
        status_reason VARCHAR(200),
        version       INTEGER NOT NULL,
        created_at    TIMESTAMPTZ NOT NULL,
        updated_at    TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user ON orders (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS parked_order_events (
        id        BIGSERIAL PRIMARY KEY,
        order_id  VARCHAR(100) NOT NULL,
        topic     VARCHAR(100) NOT NULL,
        payload   JSONB NOT NULL,
        parked_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_parked_order ON parked_order_events (order_id, id)",
]

_COLUMNS = (
    "order_id, user_id, items, total_amount, status, payment_id, "
    "status_reason, version, created_at, updated_at"
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def _json(value):
    return json.loads(value) if isinstance(value, str) else value


def _order_from_row(row) -> Order:
    return Order(
        order_id=row.order_id,
        user_id=row.user_id,
        items=tuple(LineItem.model_validate(i) for i in _json(row.items)),
        total_amount=float(row.total_amount),
        status=OrderStatus(row.status),
        payment_id=row.payment_id,
        status_reason=row.status_reason,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlOrderStore(OrderStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, order: Order) -> None:
        async with self._session_factory() as session:
            try:
                await session.execute(
                    text(f"""
                        INSERT INTO orders ({_COLUMNS})
                        VALUES (:oid, :uid, CAST(:items AS JSONB), :total, :status,
                                :payment_id, :reason, :version, :created, :updated)
                    """),
                    {
                        "oid": order.order_id,
                        "uid": order.user_id,
                        "items": json.dumps(
                            [i.model_dump(mode="json", by_alias=True) for i in order.items]
                        ),
                        "total": order.total_amount,
                        "status": order.status.value,
                        "payment_id": order.payment_id,
                        "reason": order.status_reason,
                        "version": order.version,
                        "created": order.created_at,
                        "updated": order.updated_at,
                    },
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateOrder(order.order_id) from e

    async def get(self, order_id: str) -> Order | None:
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM orders WHERE order_id = :oid"),
                {"oid": order_id},
            )
            row = result.fetchone()
            return _order_from_row(row) if row else None

    async def save(self, order: Order, expected_version: int) -> Order:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET status = :status, payment_id = :payment_id,
                        status_reason = :reason, updated_at = :updated,
                        version = version + 1
                    WHERE order_id = :oid AND version = :expected
                """),
                {
                    "status": order.status.value,
                    "payment_id": order.payment_id,
                    "reason": order.status_reason,
                    "updated": order.updated_at,
                    "oid": order.order_id,
                    "expected": expected_version,
                },
            )
            await session.commit()
            if result.rowcount != 1:
                raise ConcurrentModification("Order", order.order_id, expected_version)
        return replace(order, version=expected_version + 1)

    async def list_by_user(self, user_id: str) -> list[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"""
                    SELECT {_COLUMNS} FROM orders
                    WHERE user_id = :uid ORDER BY created_at DESC
                """),
                {"uid": user_id},
            )
            return [_order_from_row(row) for row in result.fetchall()]

    async def park(self, order_id: str, topic: str, payload: dict) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO parked_order_events (order_id, topic, payload)
                    VALUES (:oid, :topic, CAST(:payload AS JSONB))
                """),
                {"oid": order_id, "topic": topic, "payload": json.dumps(payload)},
            )
            await session.commit()

    async def take_parked(self, order_id: str) -> list[tuple[str, dict]]:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    DELETE FROM parked_order_events WHERE order_id = :oid
                    RETURNING id, topic, payload
                """),
                {"oid": order_id},
            )
            rows = sorted(result.fetchall(), key=lambda r: r.id)
            await session.commit()
            return [(row.topic, _json(row.payload)) for row in rows]

    async def restore_parked(self, order_id: str, events: list[tuple[str, dict]]) -> None:
        if not events:
            return
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO parked_order_events (order_id, topic, payload)
                    VALUES (:oid, :topic, CAST(:payload AS JSONB))
                """),
                [
                    {"oid": order_id, "topic": topic, "payload": json.dumps(payload)}
                    for topic, payload in events
                ],
            )
            await session.commit()
