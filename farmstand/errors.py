"""
エラー分類 (Error Taxonomy)

致命的でないエラーは Result に包んで呼び出し側へ返す。
呼び出し側(注文ステートマシン)が次の合法な遷移を決められるようにするため。
LedgerWriteFailed だけは例外として送出し、処理全体を中断する。
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class EngineError(Exception):
    """エンジンが返すすべてのエラーの基底クラス"""

    code = "engine_error"
    retryable = False


class InvalidRequest(EngineError):
    code = "invalid_request"


class NotAuthorized(EngineError):
    code = "not_authorized"


class InsufficientStock(EngineError):
    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_id}: "
            f"requested={requested}, available={available}"
        )


class InvalidTransition(EngineError):
    code = "invalid_transition"


class ReservationExpired(EngineError):
    code = "reservation_expired"

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} has expired")


class ReservationConflict(EngineError):
    code = "reservation_conflict"


class LedgerWriteFailed(EngineError):
    """台帳への書き込み失敗 (致命的)。メモリ上の状態は変更しない。"""

    code = "ledger_write_failed"


class PaymentProviderError(EngineError):
    code = "payment_provider_error"
    retryable = True


class ReconciliationRequired(EngineError):
    """決済結果が曖昧。自動処理を止め、オペレーターの確認を待つ。"""

    code = "reconciliation_required"

    def __init__(self, order_id: str, reason: str) -> None:
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id} requires reconciliation: {reason}")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    操作結果。

    success=True なら value に結果、False なら error に分類済みのエラー。
    """

    value: T | None = None
    error: EngineError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error is not None else None

    @classmethod
    def ok(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: EngineError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
