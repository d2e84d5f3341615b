"""
共通 — イベント契約 (Event Contracts)

サービス間を流れるイベントの定義。トピックごとにペイロードを型付けし、
エンベロープにスキーマバージョンを持たせる。

  {
    "eventId": "...",
    "eventType": "payment.processed",   # = トピック名
    "schemaVersion": 1,
    "data": {"orderId": ..., "status": "success", ...}
  }

status は列挙型で受け取り、未知の値は EventContractError として明示的に拒否する
（黙って別の分岐に落ちることはない）。
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import EventContractError

ORDER_CREATED = "order.created"
PAYMENT_PROCESSED = "payment.processed"
INVENTORY_UPDATED = "inventory.updated"

SCHEMA_VERSION = 1


class PaymentStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class InventoryStatus(str, Enum):
    RESERVED = "reserved"
    INSUFFICIENT = "insufficient"
    EXPIRED = "expired"


class Contract(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class LineItem(Contract):
    product_id: str
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)


class ShortfallItem(Contract):
    product_id: str
    requested: int
    available: int


class OrderCreated(Contract):
    """注文が作成された"""
    order_id: str
    user_id: str
    items: list[LineItem]
    total_amount: float
    timestamp: datetime


class PaymentProcessed(Contract):
    """決済の試行が完了した（成功 / 失敗）"""
    order_id: str
    payment_id: str
    status: PaymentStatus
    amount: float
    transaction_id: str | None = None
    timestamp: datetime

    @model_validator(mode="after")
    def _transaction_id_iff_success(self) -> "PaymentProcessed":
        if (self.status is PaymentStatus.SUCCESS) != (self.transaction_id is not None):
            raise ValueError("transactionId must be present iff status is success")
        return self


class InventoryUpdated(Contract):
    """在庫の引き当て結果（確定 / 不足 / 期限切れ解放）"""
    order_id: str
    status: InventoryStatus
    items: list[ShortfallItem] | None = None
    timestamp: datetime


TOPICS: dict[str, type[Contract]] = {
    ORDER_CREATED: OrderCreated,
    PAYMENT_PROCESSED: PaymentProcessed,
    INVENTORY_UPDATED: InventoryUpdated,
}


def topic_of(event: Contract) -> str:
    for topic, model in TOPICS.items():
        if isinstance(event, model):
            return topic
    raise EventContractError(f"No topic for {type(event).__name__}")


def encode(event: Contract) -> dict:
    """イベントをエンベロープ付きの JSON 互換 dict にする。"""
    return {
        "eventId": uuid4().hex,
        "eventType": topic_of(event),
        "schemaVersion": SCHEMA_VERSION,
        "data": event.model_dump(mode="json", by_alias=True),
    }


def decode(topic: str, envelope: dict) -> Contract:
    """エンベロープを検証してトピックの型に戻す。"""
    model = TOPICS.get(topic)
    if model is None:
        raise EventContractError(f"Unknown topic: {topic}")
    if envelope.get("eventType") != topic:
        raise EventContractError(
            f"eventType {envelope.get('eventType')!r} does not match topic {topic!r}"
        )
    if envelope.get("schemaVersion") != SCHEMA_VERSION:
        raise EventContractError(
            f"Unsupported schemaVersion {envelope.get('schemaVersion')!r} on {topic}"
        )
    try:
        return model.model_validate(envelope.get("data"))
    except ValidationError as e:
        raise EventContractError(f"Invalid {topic} payload: {e}") from e
