"""
Inventory — クエリハンドラ (読み取り側)
"""

from .aggregate import Product, Reservation
from .catalog import CatalogStore, ReservationBook


def _product_view(product: Product) -> dict:
    return {
        "id": product.id,
        "owner_id": product.owner_id,
        "price": str(product.price),
        "available_quantity": product.available_quantity,
        "reserved": product.reserved,
        "available": product.effective_available,
        "version": product.version,
    }


def get_product(catalog: CatalogStore, product_id: str) -> dict | None:
    product = catalog.get(product_id)
    if product is None:
        return None
    return _product_view(product)


def list_products(catalog: CatalogStore, owner_id: str | None = None) -> list[dict]:
    return [
        _product_view(product)
        for product in sorted(catalog.values(), key=lambda p: p.id)
        if owner_id is None or product.owner_id == owner_id
    ]


def _reservation_view(reservation: Reservation) -> dict:
    return {
        "id": reservation.id,
        "order_id": reservation.order_id,
        "buyer_id": reservation.buyer_id,
        "state": reservation.state.value,
        "total_amount": str(reservation.total_amount),
        "expires_at": reservation.expires_at.isoformat(),
        "lines": [
            {
                "product_id": line.product_id,
                "quantity_held": line.quantity_held,
                "unit_price_snapshot": str(line.unit_price_snapshot),
            }
            for line in reservation.lines
        ],
    }


def list_active_reservations(reservations: ReservationBook) -> list[dict]:
    """有効期限の近い順に返す。"""
    return [
        _reservation_view(r)
        for r in sorted(reservations.active(), key=lambda r: r.expires_at)
    ]
