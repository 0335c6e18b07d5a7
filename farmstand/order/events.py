"""
Order — イベント定義

注文ドメインで台帳に記録されるイベント種別。
"""

from enum import Enum


class OrderLedgerEvent(str, Enum):
    ORDER_SUBMITTED = "OrderSubmitted"
    ORDER_RESERVED = "OrderReserved"
    ORDER_PAID = "OrderPaid"
    ORDER_FULFILLED = "OrderFulfilled"
    ORDER_CANCELLED = "OrderCancelled"
    ORDER_EXPIRED = "OrderExpired"
    ORDER_REFUNDING = "OrderRefunding"
    # 決済結果が曖昧で、オペレーターの照合待ちになった
    ORDER_FLAGGED = "OrderFlaggedForReconciliation"
    ORDER_FLAG_CLEARED = "OrderReconciled"
