"""
Payment — 開発・テスト用のフェイク決済プロバイダ

script に積んだ結果を呼び出しごとに順に返す (例外なら送出する)。
script が空になったら should_succeed に従う。
delay をコーディネーターのタイムアウトより長くすると、応答しないプロバイダを再現できる。
"""

import asyncio
from decimal import Decimal
from uuid import uuid4

from .gateway import PaymentProvider, PaymentStatus, ProviderResult, RefundResult


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.refund_should_succeed: bool = True
        self.delay: float = 0.0
        self.script: list[ProviderResult | Exception] = []
        self.refund_script: list[RefundResult | Exception] = []
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def charges(self) -> list[dict]:
        return [call for call in self.calls if call["method"] == "charge"]

    def refunds(self) -> list[dict]:
        return [call for call in self.calls if call["method"] == "refund"]

    async def charge(
        self,
        amount: Decimal,
        order_id: str,
        method: str,
        idempotency_key: str,
    ) -> ProviderResult:
        self.calls.append(
            {
                "method": "charge",
                "amount": amount,
                "order_id": order_id,
                "payment_method": method,
                "idempotency_key": idempotency_key,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)

        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        if self.should_succeed:
            return ProviderResult(status=PaymentStatus.SUCCEEDED, transaction_id=f"fake_txn_{uuid4().hex[:12]}")
        return ProviderResult(status=PaymentStatus.FAILED, failure_reason=self.failure_reason)

    async def refund(
        self,
        order_id: str,
        transaction_id: str | None,
        amount: Decimal,
        idempotency_key: str,
    ) -> RefundResult:
        self.calls.append(
            {
                "method": "refund",
                "order_id": order_id,
                "transaction_id": transaction_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
            }
        )

        if self.refund_script:
            outcome = self.refund_script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        if self.refund_should_succeed:
            return RefundResult(success=True, refund_id=f"fake_ref_{uuid4().hex[:12]}")
        return RefundResult(success=False, failure_reason=self.failure_reason)
