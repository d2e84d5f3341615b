"""
Inventory Service — 在庫集約 (Inventory Aggregate)

在庫数と引き当て数を保持する。
available = quantity - reserved で算出し、すべての更新で

    reserved >= 0  かつ  available >= 0

を検査する。更新は新しいインスタンスを返す純粋関数として書き、
ストアへの反映は ledger が行う。
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from ...common.contracts import ShortfallItem
from ...common.errors import InventoryInvariantError


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass(frozen=True)
class InventoryItem:
    product_id: str
    product_name: str
    quantity: int
    price: float
    reserved: int = 0
    updated_at: datetime | None = None

    @property
    def available(self) -> int:
        return self.quantity - self.reserved

    def checked(self) -> "InventoryItem":
        if self.quantity < 0 or self.reserved < 0 or self.available < 0:
            raise InventoryInvariantError(
                self.product_id, f"quantity={self.quantity}, reserved={self.reserved}"
            )
        return self

    def reserve(self, quantity: int, now: datetime) -> "InventoryItem":
        """引き当て: reserved を増やす"""
        return replace(self, reserved=self.reserved + quantity, updated_at=now).checked()

    def commit(self, quantity: int, now: datetime) -> "InventoryItem":
        """確定: quantity と reserved を同時に減らす（在庫から恒久的に除く）"""
        return replace(
            self,
            quantity=self.quantity - quantity,
            reserved=self.reserved - quantity,
            updated_at=now,
        ).checked()

    def release(self, quantity: int, now: datetime) -> "InventoryItem":
        """解放: reserved だけを減らす（quantity は変えない）"""
        return replace(self, reserved=self.reserved - quantity, updated_at=now).checked()


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    order_id: str
    product_id: str
    quantity: int
    status: ReservationStatus
    created_at: datetime
    expires_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status is ReservationStatus.RESERVED

    def is_expired(self, now: datetime) -> bool:
        return self.is_open and self.expires_at <= now


def settle_item(
    item: InventoryItem, reservation: Reservation, status: ReservationStatus, now: datetime
) -> InventoryItem:
    """予約を終端状態にしたときの在庫の変化"""
    if status is ReservationStatus.CONFIRMED:
        return item.commit(reservation.quantity, now)
    if status is ReservationStatus.RELEASED:
        return item.release(reservation.quantity, now)
    raise ValueError(f"{status} is not a terminal reservation status")


def merge_lines(lines: list[tuple[str, int]]) -> dict[str, int]:
    """同じ商品の明細を 1 行にまとめる（予約は注文 × 商品で 1 件）。"""
    merged: dict[str, int] = {}
    for product_id, quantity in lines:
        if quantity <= 0:
            raise ValueError(f"quantity must be positive for {product_id}")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def find_shortfall(
    items: dict[str, InventoryItem], requested: dict[str, int]
) -> list[ShortfallItem]:
    """要求数が available を超える商品をすべて列挙する。未登録の商品は available=0。"""
    shortfall = []
    for product_id, quantity in requested.items():
        item = items.get(product_id)
        available = item.available if item else 0
        if available < quantity:
            shortfall.append(
                ShortfallItem(
                    product_id=product_id, requested=quantity, available=available
                )
            )
    return shortfall
