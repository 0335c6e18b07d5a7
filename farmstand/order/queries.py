"""
Order — クエリハンドラ (読み取り側)
"""

from .aggregate import Order, OrderBook, OrderStatus


def _order_view(order: Order) -> dict:
    return {
        "id": order.id,
        "buyer_id": order.buyer_id,
        "status": order.status.value,
        "total_amount": str(order.total_amount) if order.total_amount is not None else None,
        "reservation_id": order.reservation_id,
        "payment_reference": order.payment_reference,
        "reconciliation_required": order.reconciliation_required,
        "reconciliation_reason": order.reconciliation_reason,
        "created_at": order.created_at.isoformat(),
        "lines": [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price_snapshot": str(line.unit_price_snapshot)
                if line.unit_price_snapshot is not None
                else None,
            }
            for line in order.lines
        ],
    }


def get_order(orders: OrderBook, order_id: str) -> dict | None:
    order = orders.get(order_id)
    if order is None:
        return None
    return _order_view(order)


def list_orders(
    orders: OrderBook,
    buyer_id: str | None = None,
    status: OrderStatus | None = None,
) -> list[dict]:
    """新しい順に返す。"""
    return [
        _order_view(order)
        for order in sorted(orders.values(), key=lambda o: o.created_at, reverse=True)
        if (buyer_id is None or order.buyer_id == buyer_id)
        and (status is None or order.status == status)
    ]


def list_flagged_orders(orders: OrderBook) -> list[dict]:
    """オペレーターの照合待ちの注文"""
    return [_order_view(order) for order in sorted(orders.flagged(), key=lambda o: o.created_at)]
