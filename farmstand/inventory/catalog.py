"""
Inventory — カタログと予約のストア

カタログは外部コラボレーターだが、引き当て中の在庫数を書き換えるのは
予約エンジンだけ。どちらも明示的なオブジェクトとして各操作に渡す。
"""

from ..store import VersionedStore
from .aggregate import Product, Reservation, ReservationState


class CatalogStore(VersionedStore[Product]):
    model = Product


class ReservationBook(VersionedStore[Reservation]):
    model = Reservation

    def active(self) -> list[Reservation]:
        return [r for r in self.values() if r.state == ReservationState.ACTIVE]

    def active_for_order(self, order_id: str) -> Reservation | None:
        return next((r for r in self.active() if r.order_id == order_id), None)

    def held_quantity(self, product_id: str) -> int:
        """有効な予約が押さえている数量の合計"""
        return sum(r.holds().get(product_id, 0) for r in self.active())
