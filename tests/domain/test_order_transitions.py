"""Tests for the pure order transition function."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from farmstand.errors import InvalidTransition
from farmstand.order.aggregate import (
    Order,
    OrderEvent,
    OrderLine,
    OrderStatus,
    clear_flag,
    flag,
    transition,
)


def _make_order(**overrides):
    defaults = {
        "id": "ord-001",
        "buyer_id": "buyer-a",
        "lines": [OrderLine(product_id="tomatoes", quantity=3)],
        "created_at": datetime(2026, 5, 1, tzinfo=timezone.utc),
    }
    defaults.update(overrides)
    return Order(**defaults)


LEGAL = [
    (OrderStatus.PENDING, OrderEvent.RESERVE, OrderStatus.RESERVED),
    (OrderStatus.RESERVED, OrderEvent.PAY, OrderStatus.PAID),
    (OrderStatus.PAID, OrderEvent.FULFILL, OrderStatus.FULFILLED),
    (OrderStatus.RESERVED, OrderEvent.CANCEL, OrderStatus.CANCELLED),
    (OrderStatus.PENDING, OrderEvent.CANCEL, OrderStatus.CANCELLED),
    (OrderStatus.RESERVED, OrderEvent.EXPIRE, OrderStatus.EXPIRED),
    (OrderStatus.PAID, OrderEvent.REFUND, OrderStatus.REFUNDING),
    (OrderStatus.REFUNDING, OrderEvent.REFUND_COMPLETE, OrderStatus.CANCELLED),
]


class TestLegalTransitions:
    @pytest.mark.parametrize("source,event,target", LEGAL)
    def test_transition_moves_to_target(self, source, event, target):
        order = _make_order(status=source)
        result = transition(order, event)
        assert result.success
        assert result.value.status == target
        assert result.value.version == order.version + 1

    def test_transition_does_not_mutate_input(self):
        order = _make_order()
        transition(order, OrderEvent.RESERVE)
        assert order.status == OrderStatus.PENDING
        assert order.version == 1

    def test_reserve_fixes_total_amount(self):
        order = _make_order()
        result = transition(order, OrderEvent.RESERVE, total_amount=Decimal("7.50"), reservation_id="res-1")
        assert result.value.total_amount == Decimal("7.50")
        assert result.value.reservation_id == "res-1"


class TestIllegalTransitions:
    @pytest.mark.parametrize(
        "source,event",
        [
            (OrderStatus.PENDING, OrderEvent.PAY),
            (OrderStatus.PENDING, OrderEvent.FULFILL),
            (OrderStatus.RESERVED, OrderEvent.FULFILL),
            (OrderStatus.PAID, OrderEvent.CANCEL),
            (OrderStatus.PAID, OrderEvent.EXPIRE),
            (OrderStatus.FULFILLED, OrderEvent.REFUND),
            (OrderStatus.CANCELLED, OrderEvent.PAY),
            (OrderStatus.EXPIRED, OrderEvent.RESERVE),
            (OrderStatus.EXPIRED, OrderEvent.CANCEL),
        ],
    )
    def test_illegal_transition_fails(self, source, event):
        order = _make_order(status=source)
        result = transition(order, event)
        assert not result.success
        assert isinstance(result.error, InvalidTransition)

    def test_total_amount_cannot_be_recomputed(self):
        order = _make_order(status=OrderStatus.PENDING, total_amount=Decimal("1.00"))
        result = transition(order, OrderEvent.RESERVE, total_amount=Decimal("2.00"))
        assert isinstance(result.error, InvalidTransition)


class TestIdempotentRetry:
    def test_retry_of_same_event_is_a_no_op(self):
        order = _make_order(status=OrderStatus.CANCELLED, last_event=OrderEvent.CANCEL, version=4)
        result = transition(order, OrderEvent.CANCEL)
        assert result.success
        assert result.value is order

    def test_transition_records_the_event(self):
        cancelled = transition(_make_order(status=OrderStatus.RESERVED), OrderEvent.CANCEL).value
        assert cancelled.last_event == OrderEvent.CANCEL
        assert transition(cancelled, OrderEvent.CANCEL).value is cancelled

    def test_refund_complete_on_order_cancelled_from_reserved_fails(self):
        order = _make_order(status=OrderStatus.CANCELLED, last_event=OrderEvent.CANCEL)
        result = transition(order, OrderEvent.REFUND_COMPLETE)
        assert isinstance(result.error, InvalidTransition)

    def test_cancel_after_refund_is_not_a_retry(self):
        order = _make_order(status=OrderStatus.CANCELLED, last_event=OrderEvent.REFUND_COMPLETE)
        assert isinstance(transition(order, OrderEvent.CANCEL).error, InvalidTransition)
        assert transition(order, OrderEvent.REFUND_COMPLETE).value is order


class TestReconciliationFlag:
    def test_flag_keeps_status(self):
        order = _make_order(status=OrderStatus.RESERVED)
        flagged = flag(order, "provider timeout")
        assert flagged.status == OrderStatus.RESERVED
        assert flagged.reconciliation_required
        assert flagged.reconciliation_reason == "provider timeout"
        assert flagged.version == order.version + 1

    def test_clear_flag(self):
        flagged = flag(_make_order(), "provider timeout")
        cleared = clear_flag(flagged)
        assert not cleared.reconciliation_required
        assert cleared.reconciliation_reason is None
