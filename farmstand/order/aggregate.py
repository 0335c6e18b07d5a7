"""
Order — 注文集約と状態遷移

状態遷移:
    pending   → reserved   (在庫引き当て成功)
    reserved  → paid       (決済確定 + 在庫確定)
    paid      → fulfilled  (配送完了の通知)
    reserved  → cancelled  (購入者/システムによるキャンセル、決済失敗)
    pending   → cancelled  (引き当て失敗、放置された注文の破棄)
    reserved  → expired    (予約の期限切れ)
    paid      → refunding → cancelled  (返金)

transition() は純粋関数。注文を変更せず、新しい注文かエラーを返す。
現在の状態を作ったのと同じイベント (last_event) の再送は、冪等な再試行として何もしない。
遷移先が同じでも別のイベントなら、通常の遷移と同じく遷移元を確認する。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel

from ..errors import InvalidTransition, Result
from ..store import VersionedStore
from .events import OrderLedgerEvent


class OrderStatus(str, Enum):
    PENDING = "pending"
    RESERVED = "reserved"
    PAID = "paid"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDING = "refunding"


class OrderEvent(str, Enum):
    RESERVE = "reserve"
    PAY = "pay"
    FULFILL = "fulfill"
    CANCEL = "cancel"
    EXPIRE = "expire"
    REFUND = "refund"
    REFUND_COMPLETE = "refund_complete"


TRANSITIONS: dict[OrderEvent, tuple[frozenset[OrderStatus], OrderStatus]] = {
    OrderEvent.RESERVE: (frozenset({OrderStatus.PENDING}), OrderStatus.RESERVED),
    OrderEvent.PAY: (frozenset({OrderStatus.RESERVED}), OrderStatus.PAID),
    OrderEvent.FULFILL: (frozenset({OrderStatus.PAID}), OrderStatus.FULFILLED),
    OrderEvent.CANCEL: (frozenset({OrderStatus.PENDING, OrderStatus.RESERVED}), OrderStatus.CANCELLED),
    OrderEvent.EXPIRE: (frozenset({OrderStatus.RESERVED}), OrderStatus.EXPIRED),
    OrderEvent.REFUND: (frozenset({OrderStatus.PAID}), OrderStatus.REFUNDING),
    OrderEvent.REFUND_COMPLETE: (frozenset({OrderStatus.REFUNDING}), OrderStatus.CANCELLED),
}

LEDGER_EVENTS = {
    OrderEvent.RESERVE: OrderLedgerEvent.ORDER_RESERVED,
    OrderEvent.PAY: OrderLedgerEvent.ORDER_PAID,
    OrderEvent.FULFILL: OrderLedgerEvent.ORDER_FULFILLED,
    OrderEvent.CANCEL: OrderLedgerEvent.ORDER_CANCELLED,
    OrderEvent.EXPIRE: OrderLedgerEvent.ORDER_EXPIRED,
    OrderEvent.REFUND: OrderLedgerEvent.ORDER_REFUNDING,
    OrderEvent.REFUND_COMPLETE: OrderLedgerEvent.ORDER_CANCELLED,
}

TERMINAL_STATUSES = frozenset({OrderStatus.FULFILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED})


class OrderLine(BaseModel):
    product_id: str
    quantity: int
    unit_price_snapshot: Decimal | None = None


class Order(BaseModel):
    id: str
    buyer_id: str
    lines: list[OrderLine]
    total_amount: Decimal | None = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime
    reservation_id: str | None = None
    payment_reference: str | None = None
    reconciliation_required: bool = False
    reconciliation_reason: str | None = None
    last_event: OrderEvent | None = None
    version: int = 1


def transition(order: Order, event: OrderEvent, **changes) -> Result[Order]:
    """状態遷移関数。不正な遷移は InvalidTransition、注文はそのまま。"""
    sources, target = TRANSITIONS[event]
    if order.status == target and order.last_event == event:
        return Result.ok(order)
    if order.status not in sources:
        return Result.fail(
            InvalidTransition(
                f"Order {order.id}: cannot {event.value} from {order.status.value}"
            )
        )
    if "total_amount" in changes and order.total_amount is not None:
        return Result.fail(InvalidTransition(f"Order {order.id}: total_amount is already fixed"))
    return Result.ok(
        order.model_copy(update={**changes, "status": target, "last_event": event, "version": order.version + 1})
    )


def flag(order: Order, reason: str) -> Order:
    """照合待ちの印を付ける。状態は変えない。"""
    return order.model_copy(
        update={
            "reconciliation_required": True,
            "reconciliation_reason": reason,
            "version": order.version + 1,
        }
    )


def clear_flag(order: Order) -> Order:
    return order.model_copy(
        update={
            "reconciliation_required": False,
            "reconciliation_reason": None,
            "version": order.version + 1,
        }
    )


class OrderBook(VersionedStore[Order]):
    model = Order

    def with_status(self, status: OrderStatus) -> list[Order]:
        return [o for o in self.values() if o.status == status]

    def flagged(self) -> list[Order]:
        return [o for o in self.values() if o.reconciliation_required]
