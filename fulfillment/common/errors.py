"""
共通 — エラー分類

業務上の拒否（在庫不足・決済失敗）は例外ではなく値として扱う。
ここに定義するのは「処理を中断すべき」事象だけ。

  TransientError        … インフラ障害。ハンドラは ack しない → 再配信される
  EventContractError    … ペイロード不正。再試行しても直らない → dead-letter
  InventoryInvariantError … available = quantity - reserved を壊す更新を拒否
"""


class FulfillmentError(Exception):
    """全エラーの基底クラス"""


class TransientError(FulfillmentError):
    """一時的な障害（ブローカー/ストア到達不可など）。再試行で回復しうる。"""


class ConcurrentModification(TransientError):
    """楽観的ロックのバージョン競合"""

    def __init__(self, entity: str, key: str, expected_version: int):
        super().__init__(
            f"{entity} {key} was modified concurrently (expected version {expected_version})"
        )
        self.entity = entity
        self.key = key
        self.expected_version = expected_version


class EventContractError(FulfillmentError):
    """イベントのスキーマ違反・未知のステータス値"""


class InventoryInvariantError(FulfillmentError):
    """在庫の不変条件を破る更新"""

    def __init__(self, product_id: str, detail: str):
        super().__init__(f"Invariant violated for {product_id}: {detail}")
        self.product_id = product_id


class NotFound(FulfillmentError):
    entity = "Entity"

    def __init__(self, key: str):
        super().__init__(f"{self.entity} not found: {key}")
        self.key = key


class OrderNotFound(NotFound):
    entity = "Order"


class ProductNotFound(NotFound):
    entity = "Product"


class PaymentNotFound(NotFound):
    entity = "Payment"


class Conflict(FulfillmentError):
    """既存状態と衝突するリクエスト (HTTP 409)"""


class DuplicateOrder(Conflict):
    def __init__(self, order_id: str):
        super().__init__(f"Order already exists: {order_id}")
        self.order_id = order_id


class DuplicateProduct(Conflict):
    def __init__(self, product_id: str):
        super().__init__(f"Product already exists: {product_id}")
        self.product_id = product_id


class PaymentAlreadySettled(Conflict):
    def __init__(self, order_id: str, payment_id: str):
        super().__init__(f"Order {order_id} already paid by {payment_id}")
        self.order_id = order_id
        self.payment_id = payment_id


class ReservationMismatch(Conflict):
    """同じ注文 ID で、既存の予約と異なる明細の引き当てを求められた"""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already holds reservations for different items")
        self.order_id = order_id
