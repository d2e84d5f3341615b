"""
Payment Service — 決済ゲートウェイ

ゲートウェイは遅く、失敗し、こちらからは制御できない外部依存として扱う。

  SimulatedGateway … 一定確率で成功するシミュレーター（開発用）
  HttpGateway      … HTTP の決済ゲートウェイ。タイムアウト・通信エラーは
                     「成功扱い」ではなく失敗として返す

どちらも例外を投げずに ChargeResult を返す（リトライはしない: fail-fast）。
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(self, amount: float, idempotency_key: str) -> ChargeResult: ...


class SimulatedGateway(PaymentGateway):
    def __init__(
        self,
        success_rate: float = 0.9,
        latency: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = success_rate
        self.latency = latency
        self.rng = rng or random.Random()

    async def charge(self, amount: float, idempotency_key: str) -> ChargeResult:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.rng.random() < self.success_rate:
            return ChargeResult(success=True, transaction_id=f"TXN-{uuid4().hex[:16].upper()}")
        return ChargeResult(success=False, failure_reason="Declined by simulator")


class HttpGateway(PaymentGateway):
    """
    POST {base_url}/charges  {"amount": ..., "idempotencyKey": ...}
      → {"status": "succeeded", "transactionId": "..."}
      → {"status": "failed", "failureReason": "..."}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def charge(self, amount: float, idempotency_key: str) -> ChargeResult:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.post(
                    "/charges",
                    json={"amount": amount, "idempotencyKey": idempotency_key},
                )
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException:
            logger.warning("Gateway timed out for %s", idempotency_key)
            return ChargeResult(success=False, failure_reason="Gateway timeout")
        except httpx.HTTPError as e:
            logger.warning("Gateway error for %s: %s", idempotency_key, e)
            return ChargeResult(success=False, failure_reason=f"Gateway error: {e}")
        except ValueError:
            return ChargeResult(success=False, failure_reason="Malformed gateway response")

        if not isinstance(body, dict):
            logger.warning("Gateway returned a non-object body for %s", idempotency_key)
            return ChargeResult(success=False, failure_reason="Malformed gateway response")
        if body.get("status") == "succeeded" and body.get("transactionId"):
            return ChargeResult(success=True, transaction_id=body["transactionId"])
        return ChargeResult(
            success=False, failure_reason=body.get("failureReason") or "Declined"
        )
