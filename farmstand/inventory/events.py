"""
Inventory — イベント定義

在庫ドメインで台帳に記録されるイベント種別。過去形で命名する。
"""

from enum import Enum


class InventoryEvent(str, Enum):
    PRODUCT_REGISTERED = "ProductRegistered"
    PRODUCT_RESTOCKED = "ProductRestocked"
    PRODUCT_REPRICED = "ProductRepriced"
    # 引き当て (仮押さえ) が作られた
    STOCK_HELD = "StockHeld"
    # 引き当てが解放され、在庫に戻った
    HOLD_RELEASED = "HoldReleased"
    # 引き当てが確定し、在庫から差し引かれた
    STOCK_COMMITTED = "StockCommitted"

    RESERVATION_CREATED = "ReservationCreated"
    RESERVATION_RELEASED = "ReservationReleased"
    RESERVATION_EXPIRED = "ReservationExpired"
    RESERVATION_COMMITTED = "ReservationCommitted"
