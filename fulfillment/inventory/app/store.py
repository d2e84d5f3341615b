"""
Inventory Service — ストア

在庫と予約の永続化。Database per Service パターンで、
在庫サービスだけがこのテーブルを読み書きする。

  SqlInventoryStore    … PostgreSQL (SQLAlchemy asyncio)
  MemoryInventoryStore … プロセス内 dict（ローカル実行・テスト用）

プロセスをまたぐ競合に対しては、条件付き UPDATE で不変条件を守る:
  - 引き当て : WHERE quantity - reserved >= :qty
  - 確定/解放 : WHERE status = 'reserved'（予約の終端遷移は 1 回だけ）
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ...common.errors import DuplicateProduct, InventoryInvariantError
from .aggregate import InventoryItem, Reservation, ReservationStatus, settle_item

logger = logging.getLogger(__name__)


class InventoryStore(ABC):
    @abstractmethod
    async def add_item(self, item: InventoryItem) -> None: ...

    @abstractmethod
    async def get_item(self, product_id: str) -> InventoryItem | None: ...

    @abstractmethod
    async def get_items(self, product_ids: list[str]) -> dict[str, InventoryItem]: ...

    @abstractmethod
    async def list_items(self) -> list[InventoryItem]: ...

    @abstractmethod
    async def apply_reservations(
        self, reservations: list[Reservation], now: datetime
    ) -> bool:
        """
        全予約分の reserved 加算と予約の記録を all-or-nothing で行う。
        いずれかの商品で available が足りなければ何も変更せず False。
        """

    @abstractmethod
    async def reservations_for(
        self, order_id: str, status: ReservationStatus | None = None
    ) -> list[Reservation]: ...

    @abstractmethod
    async def expired_reservations(self, now: datetime) -> list[Reservation]: ...

    @abstractmethod
    async def settle(
        self, reservation: Reservation, status: ReservationStatus, now: datetime
    ) -> bool:
        """
        予約を reserved → status に遷移させ、在庫に反映する。
        予約が既に終端状態なら何もせず False。
        """


# ── In-memory ────────────────────────────────────


class MemoryInventoryStore(InventoryStore):
    """
    await を挟まずに読み書きするので、各メソッドはイベントループ上で原子的。
    """

    def __init__(self) -> None:
        self.items: dict[str, InventoryItem] = {}
        self.reservations: dict[str, Reservation] = {}

    async def add_item(self, item: InventoryItem) -> None:
        if item.product_id in self.items:
            raise DuplicateProduct(item.product_id)
        self.items[item.product_id] = item.checked()

    async def get_item(self, product_id: str) -> InventoryItem | None:
        return self.items.get(product_id)

    async def get_items(self, product_ids: list[str]) -> dict[str, InventoryItem]:
        return {pid: self.items[pid] for pid in product_ids if pid in self.items}

    async def list_items(self) -> list[InventoryItem]:
        return sorted(self.items.values(), key=lambda i: i.product_name)

    async def apply_reservations(
        self, reservations: list[Reservation], now: datetime
    ) -> bool:
        updated: dict[str, InventoryItem] = {}
        for r in reservations:
            item = updated.get(r.product_id) or self.items.get(r.product_id)
            if item is None or item.available < r.quantity:
                return False
            updated[r.product_id] = item.reserve(r.quantity, now)
        self.items.update(updated)
        for r in reservations:
            self.reservations[r.reservation_id] = r
        return True

    async def reservations_for(
        self, order_id: str, status: ReservationStatus | None = None
    ) -> list[Reservation]:
        return [
            r
            for r in self.reservations.values()
            if r.order_id == order_id and (status is None or r.status is status)
        ]

    async def expired_reservations(self, now: datetime) -> list[Reservation]:
        return sorted(
            (r for r in self.reservations.values() if r.is_expired(now)),
            key=lambda r: r.expires_at,
        )

    async def settle(
        self, reservation: Reservation, status: ReservationStatus, now: datetime
    ) -> bool:
        current = self.reservations.get(reservation.reservation_id)
        if current is None or not current.is_open:
            return False
        item = settle_item(self.items[current.product_id], current, status, now)
        self.items[item.product_id] = item
        self.reservations[current.reservation_id] = replace(current, status=status)
        return True


# ── PostgreSQL ───────────────────────────────────

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS inventory_items (
        product_id   VARCHAR(100) PRIMARY KEY,
        product_name VARCHAR(200) NOT NULL,
        quantity     INTEGER NOT NULL CHECK (quantity >= 0),
        reserved     INTEGER NOT NULL DEFAULT 0 CHECK (reserved >= 0),
        price        NUMERIC(10, 2) NOT NULL,
        updated_at   TIMESTAMPTZ NOT NULL,
        CHECK (quantity - reserved >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        reservation_id VARCHAR(64) PRIMARY KEY,
        order_id       VARCHAR(100) NOT NULL,
        product_id     VARCHAR(100) NOT NULL REFERENCES inventory_items (product_id),
        quantity       INTEGER NOT NULL CHECK (quantity > 0),
        status         VARCHAR(20) NOT NULL,
        created_at     TIMESTAMPTZ NOT NULL,
        expires_at     TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_reservations_order ON reservations (order_id)",
    """
    CREATE INDEX IF NOT EXISTS ix_reservations_open_expiry
        ON reservations (expires_at) WHERE status = 'reserved'
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


class _Insufficient(Exception):
    """条件付き UPDATE が 0 行 → トランザクションをロールバックさせる"""


def _item_from_row(row) -> InventoryItem:
    return InventoryItem(
        product_id=row.product_id,
        product_name=row.product_name,
        quantity=row.quantity,
        reserved=row.reserved,
        price=float(row.price),
        updated_at=row.updated_at,
    )


def _reservation_from_row(row) -> Reservation:
    return Reservation(
        reservation_id=row.reservation_id,
        order_id=row.order_id,
        product_id=row.product_id,
        quantity=row.quantity,
        status=ReservationStatus(row.status),
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


_ITEM_COLUMNS = "product_id, product_name, quantity, reserved, price, updated_at"
_RESERVATION_COLUMNS = (
    "reservation_id, order_id, product_id, quantity, status, created_at, expires_at"
)


class SqlInventoryStore(InventoryStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_item(self, item: InventoryItem) -> None:
        item.checked()
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"""
                    INSERT INTO inventory_items ({_ITEM_COLUMNS})
                    VALUES (:pid, :name, :qty, :reserved, :price, :now)
                    ON CONFLICT (product_id) DO NOTHING
                """),
                {
                    "pid": item.product_id,
                    "name": item.product_name,
                    "qty": item.quantity,
                    "reserved": item.reserved,
                    "price": item.price,
                    "now": item.updated_at,
                },
            )
            await session.commit()
            if result.rowcount == 0:
                raise DuplicateProduct(item.product_id)

    async def get_item(self, product_id: str) -> InventoryItem | None:
        items = await self.get_items([product_id])
        return items.get(product_id)

    async def get_items(self, product_ids: list[str]) -> dict[str, InventoryItem]:
        if not product_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"""
                    SELECT {_ITEM_COLUMNS} FROM inventory_items
                    WHERE product_id = ANY(:ids)
                """),
                {"ids": list(product_ids)},
            )
            return {row.product_id: _item_from_row(row) for row in result.fetchall()}

    async def list_items(self) -> list[InventoryItem]:
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_ITEM_COLUMNS} FROM inventory_items ORDER BY product_name"),
            )
            return [_item_from_row(row) for row in result.fetchall()]

    async def apply_reservations(
        self, reservations: list[Reservation], now: datetime
    ) -> bool:
        try:
            async with self._session_factory() as session, session.begin():
                for r in reservations:
                    result = await session.execute(
                        text("""
                            UPDATE inventory_items
                            SET reserved = reserved + :qty, updated_at = :now
                            WHERE product_id = :pid AND quantity - reserved >= :qty
                        """),
                        {"qty": r.quantity, "now": now, "pid": r.product_id},
                    )
                    if result.rowcount != 1:
                        raise _Insufficient(r.product_id)
                    await session.execute(
                        text(f"""
                            INSERT INTO reservations ({_RESERVATION_COLUMNS})
                            VALUES (:rid, :oid, :pid, :qty, :status, :created, :expires)
                        """),
                        {
                            "rid": r.reservation_id,
                            "oid": r.order_id,
                            "pid": r.product_id,
                            "qty": r.quantity,
                            "status": r.status.value,
                            "created": r.created_at,
                            "expires": r.expires_at,
                        },
                    )
        except _Insufficient as e:
            logger.info("Reservation lost a race on %s; rolled back", e)
            return False
        return True

    async def reservations_for(
        self, order_id: str, status: ReservationStatus | None = None
    ) -> list[Reservation]:
        query = f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE order_id = :oid"
        params: dict = {"oid": order_id}
        if status is not None:
            query += " AND status = :status"
            params["status"] = status.value
        async with self._session_factory() as session:
            result = await session.execute(text(query + " ORDER BY created_at"), params)
            return [_reservation_from_row(row) for row in result.fetchall()]

    async def expired_reservations(self, now: datetime) -> list[Reservation]:
        async with self._session_factory() as session:
            result = await session.execute(
                text(f"""
                    SELECT {_RESERVATION_COLUMNS} FROM reservations
                    WHERE status = 'reserved' AND expires_at <= :now
                    ORDER BY expires_at
                """),
                {"now": now},
            )
            return [_reservation_from_row(row) for row in result.fetchall()]

    async def settle(
        self, reservation: Reservation, status: ReservationStatus, now: datetime
    ) -> bool:
        committed = reservation.quantity if status is ReservationStatus.CONFIRMED else 0
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                text("""
                    UPDATE reservations SET status = :status
                    WHERE reservation_id = :rid AND status = 'reserved'
                """),
                {"status": status.value, "rid": reservation.reservation_id},
            )
            if result.rowcount == 0:
                return False
            result = await session.execute(
                text("""
                    UPDATE inventory_items
                    SET quantity = quantity - :committed,
                        reserved = reserved - :qty,
                        updated_at = :now
                    WHERE product_id = :pid
                      AND reserved >= :qty
                      AND quantity >= :committed
                """),
                {
                    "committed": committed,
                    "qty": reservation.quantity,
                    "now": now,
                    "pid": reservation.product_id,
                },
            )
            if result.rowcount != 1:
                # 例外で抜けるとトランザクションはロールバックされる
                raise InventoryInvariantError(
                    reservation.product_id,
                    f"cannot settle {reservation.reservation_id} as {status.value}",
                )
        return True
