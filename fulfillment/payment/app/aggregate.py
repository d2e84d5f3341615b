"""
Payment Service — 決済集約

1 回の決済試行 = 1 件の Payment。失敗した決済の再試行は新しい payment_id を持つ。
transaction_id は成功したときだけ持つ。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .gateway import ChargeResult


class PaymentState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class Payment:
    payment_id: str
    order_id: str
    user_id: str
    amount: float
    status: PaymentState
    created_at: datetime
    updated_at: datetime
    transaction_id: str | None = None
    failure_reason: str | None = None

    @classmethod
    def from_charge(
        cls,
        payment_id: str,
        order_id: str,
        user_id: str,
        amount: float,
        result: ChargeResult,
        now: datetime,
    ) -> "Payment":
        return cls(
            payment_id=payment_id,
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            status=PaymentState.SUCCESS if result.success else PaymentState.FAILED,
            transaction_id=result.transaction_id if result.success else None,
            failure_reason=None if result.success else result.failure_reason,
            created_at=now,
            updated_at=now,
        )
