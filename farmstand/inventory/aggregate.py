"""
Inventory — 商品と予約の集約

available_quantity は確定済みの在庫数、reserved は有効な予約の合計。
実際に引き当て可能な数は available_quantity - reserved で算出する。

各メソッドは自身を変更せず、version を 1 つ進めた新しいインスタンスを返す。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class Product(BaseModel):
    id: str
    owner_id: str
    price: Decimal = Field(ge=0)
    available_quantity: int = Field(ge=0)
    reserved: int = Field(default=0, ge=0)
    version: int = 1

    @property
    def effective_available(self) -> int:
        return self.available_quantity - self.reserved

    def _next(self, **changes) -> "Product":
        return self.model_copy(update={**changes, "version": self.version + 1})

    def hold(self, quantity: int) -> "Product":
        return self._next(reserved=self.reserved + quantity)

    def release_hold(self, quantity: int) -> "Product":
        return self._next(reserved=self.reserved - quantity)

    def commit_hold(self, quantity: int) -> "Product":
        return self._next(
            reserved=self.reserved - quantity,
            available_quantity=self.available_quantity - quantity,
        )

    def restock(self, quantity: int) -> "Product":
        return self._next(available_quantity=self.available_quantity + quantity)

    def reprice(self, price: Decimal) -> "Product":
        return self._next(price=price)


class LineItem(BaseModel):
    """予約リクエストの 1 行"""

    product_id: str
    quantity: int


class ReservationState(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    COMMITTED = "committed"


class ReservedLine(BaseModel):
    product_id: str
    quantity_held: int
    unit_price_snapshot: Decimal


class Reservation(BaseModel):
    id: str
    order_id: str
    buyer_id: str
    lines: list[ReservedLine]
    total_amount: Decimal
    state: ReservationState = ReservationState.ACTIVE
    created_at: datetime
    expires_at: datetime
    version: int = 1

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def holds(self) -> dict[str, int]:
        """商品ごとの引き当て数 (同一商品の複数行は合算)"""
        totals: dict[str, int] = {}
        for line in self.lines:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity_held
        return totals

    def with_state(self, state: ReservationState) -> "Reservation":
        return self.model_copy(update={"state": state, "version": self.version + 1})
