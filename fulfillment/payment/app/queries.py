"""
Payment Service — クエリハンドラ (Read 側)
"""

from ...common.errors import PaymentNotFound
from .aggregate import Payment
from .store import PaymentStore


def payment_to_dict(payment: Payment) -> dict:
    return {
        "paymentId": payment.payment_id,
        "orderId": payment.order_id,
        "userId": payment.user_id,
        "amount": payment.amount,
        "status": payment.status.value,
        "transactionId": payment.transaction_id,
        "failureReason": payment.failure_reason,
        "createdAt": payment.created_at.isoformat(),
        "updatedAt": payment.updated_at.isoformat(),
    }


async def get_payment(store: PaymentStore, payment_id: str) -> dict:
    payment = await store.get(payment_id)
    if not payment:
        raise PaymentNotFound(payment_id)
    return payment_to_dict(payment)


async def list_order_payments(store: PaymentStore, order_id: str) -> list[dict]:
    return [payment_to_dict(p) for p in await store.list_by_order(order_id)]
