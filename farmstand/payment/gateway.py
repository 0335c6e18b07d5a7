"""
Payment — 決済プロバイダのポート (抽象インターフェース)

アダプタは確定した結果を ProviderResult で返し、通信障害や解釈できない
ステータスは PaymentProviderError として送出する。
コーディネーターが再試行するのは後者だけ。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class ProviderResult:
    """プロバイダが返した課金結果"""

    status: PaymentStatus
    transaction_id: str | None = None
    failure_reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == PaymentStatus.FAILED

    @property
    def pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    failure_reason: str | None = None


class PaymentProvider(ABC):
    @abstractmethod
    async def charge(
        self,
        amount: Decimal,
        order_id: str,
        method: str,
        idempotency_key: str,
    ) -> ProviderResult:
        """注文の代金を購入者に課金する。"""
        ...

    @abstractmethod
    async def refund(
        self,
        order_id: str,
        transaction_id: str | None,
        amount: Decimal,
        idempotency_key: str,
    ) -> RefundResult:
        """課金を取り消す (返金)。"""
        ...
