"""Tests for the reservation engine: reserve, release, commit and expiry."""

from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from farmstand.errors import (
    InsufficientStock,
    InvalidRequest,
    InvalidTransition,
    NotAuthorized,
    ReservationExpired,
)
from farmstand.inventory.aggregate import ReservationState
from farmstand.inventory.events import InventoryEvent


class TestReserve:
    async def test_reserve_holds_stock_and_snapshots_prices(self, market, stock):
        await stock("tomatoes", 10, price="2.50")
        await stock("eggs", 12, price="0.40")

        result = await market.engine.reserve("buyer-a", [("tomatoes", 3), ("eggs", 6)], order_id="ord-1")

        assert result.success
        reservation = result.value
        assert reservation.state == ReservationState.ACTIVE
        assert reservation.total_amount == Decimal("9.90")
        assert [line.unit_price_snapshot for line in reservation.lines] == [Decimal("2.50"), Decimal("0.40")]
        assert market.catalog.get("tomatoes").effective_available == 7
        assert market.catalog.get("tomatoes").available_quantity == 10

    async def test_reservation_expires_after_ttl(self, market, stock, clock):
        await stock("tomatoes", 10)
        reservation = (await market.engine.reserve("buyer-a", [("tomatoes", 1)], order_id="ord-1")).value
        assert reservation.expires_at - clock.now == market.settings.reservation_ttl

    async def test_scenario_release_frees_stock_for_next_buyer(self, market, stock):
        await stock("P", 5)

        first = await market.engine.reserve("buyer-a", [("P", 3)], order_id="ord-a")
        assert first.success
        assert market.catalog.get("P").effective_available == 2

        second = await market.engine.reserve("buyer-b", [("P", 3)], order_id="ord-b")
        assert isinstance(second.error, InsufficientStock)
        assert second.error.product_id == "P"

        assert (await market.engine.release(first.value.id)).success
        third = await market.engine.reserve("buyer-b", [("P", 3)], order_id="ord-b")
        assert third.success

    async def test_all_or_nothing_names_first_failing_product(self, market, stock):
        await stock("A", 5)
        await stock("B", 1)
        await stock("C", 0)

        result = await market.engine.reserve("buyer-a", [("A", 2), ("B", 2), ("C", 1)], order_id="ord-1")

        assert isinstance(result.error, InsufficientStock)
        assert result.error.product_id == "B"
        assert market.catalog.get("A").reserved == 0
        assert market.catalog.get("B").reserved == 0
        assert market.reservations.active() == []

    async def test_duplicate_lines_are_checked_together(self, market, stock):
        await stock("A", 5)
        result = await market.engine.reserve("buyer-a", [("A", 3), ("A", 3)], order_id="ord-1")
        assert isinstance(result.error, InsufficientStock)
        assert result.error.requested == 6

    async def test_unknown_product_is_insufficient_stock(self, market):
        result = await market.engine.reserve("buyer-a", [("ghost", 1)], order_id="ord-1")
        assert isinstance(result.error, InsufficientStock)
        assert result.error.available == 0

    async def test_rejects_empty_and_non_positive_requests(self, market, stock):
        await stock("A", 5)
        assert isinstance((await market.engine.reserve("buyer-a", [], order_id="o")).error, InvalidRequest)
        assert isinstance((await market.engine.reserve("buyer-a", [("A", 0)], order_id="o")).error, InvalidRequest)
        assert isinstance((await market.engine.reserve("buyer-a", [("A", -2)], order_id="o")).error, InvalidRequest)

    @pytest.mark.parametrize(
        "line_items",
        [
            [{"product_id": "A", "quantity": 1}],
            [5],
            [("A",)],
            [("A", "several")],
            None,
        ],
    )
    async def test_malformed_line_items_are_invalid_requests(self, market, stock, line_items):
        await stock("A", 5)

        result = await market.engine.reserve("buyer-a", line_items, order_id="o")

        assert isinstance(result.error, InvalidRequest)
        assert market.catalog.get("A").reserved == 0

    async def test_one_active_reservation_per_order(self, market, stock):
        await stock("A", 5)
        assert (await market.engine.reserve("buyer-a", [("A", 1)], order_id="ord-1")).success
        again = await market.engine.reserve("buyer-a", [("A", 1)], order_id="ord-1")
        assert isinstance(again.error, InvalidTransition)
        assert market.catalog.get("A").reserved == 1

    async def test_reserve_records_an_entry_per_product_change(self, market, stock):
        await stock("A", 5)
        await stock("B", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 1), ("B", 2)], order_id="ord-1")).value

        entries = await market.ledger.load_all_events()
        held = [e for e in entries if e.event_type == InventoryEvent.STOCK_HELD.value]
        assert sorted(e.entity_id for e in held) == ["A", "B"]
        created = [e for e in entries if e.event_type == InventoryEvent.RESERVATION_CREATED.value]
        assert [e.entity_id for e in created] == [reservation.id]


class TestRelease:
    async def test_release_is_idempotent(self, market, stock):
        await stock("A", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value

        first = await market.engine.release(reservation.id)
        second = await market.engine.release(reservation.id)

        assert first.value.state == ReservationState.RELEASED
        assert second.value.state == ReservationState.RELEASED
        assert market.catalog.get("A").reserved == 0
        assert market.catalog.get("A").available_quantity == 5

    async def test_release_of_committed_reservation_is_a_no_op(self, market, stock):
        await stock("A", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value
        await market.engine.commit(reservation.id)

        result = await market.engine.release(reservation.id)

        assert result.value.state == ReservationState.COMMITTED
        assert market.catalog.get("A").available_quantity == 3

    async def test_release_unknown_reservation(self, market):
        result = await market.engine.release("missing")
        assert isinstance(result.error, InvalidTransition)


class TestCommit:
    async def test_commit_deducts_stock_permanently(self, market, stock):
        await stock("A", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value

        result = await market.engine.commit(reservation.id)

        assert result.value.state == ReservationState.COMMITTED
        product = market.catalog.get("A")
        assert product.available_quantity == 3
        assert product.reserved == 0

    async def test_commit_twice_does_not_double_deduct(self, market, stock):
        await stock("A", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value

        await market.engine.commit(reservation.id)
        again = await market.engine.commit(reservation.id)

        assert again.success
        assert market.catalog.get("A").available_quantity == 3

    async def test_commit_expired_reservation_fails_and_releases(self, market, stock, clock):
        await stock("A", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value
        clock.advance(minutes=16)

        result = await market.engine.commit(reservation.id)

        assert isinstance(result.error, ReservationExpired)
        assert market.reservations.get(reservation.id).state == ReservationState.RELEASED
        assert market.catalog.get("A").effective_available == 5

    async def test_commit_released_reservation_is_invalid(self, market, stock):
        await stock("A", 5)
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value
        await market.engine.release(reservation.id)

        result = await market.engine.commit(reservation.id)

        assert isinstance(result.error, InvalidTransition)
        assert market.catalog.get("A").available_quantity == 5


class TestExpirySweep:
    async def test_sweep_releases_only_expired_reservations(self, market, stock, clock):
        await stock("A", 10)
        old = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value
        clock.advance(minutes=10)
        fresh = (await market.engine.reserve("buyer-b", [("A", 3)], order_id="ord-2")).value
        clock.advance(minutes=6)

        released = await market.engine.sweep_expired()

        assert [r.id for r in released] == [old.id]
        assert market.reservations.get(fresh.id).state == ReservationState.ACTIVE
        assert market.catalog.get("A").reserved == 3

    async def test_sweep_skips_excluded_orders(self, market, stock, clock):
        await stock("A", 10)
        await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")
        clock.advance(minutes=20)

        released = await market.engine.sweep_expired(exclude_orders=["ord-1"])

        assert released == []
        assert market.catalog.get("A").reserved == 2


class TestCatalogOwner:
    async def test_price_change_does_not_touch_existing_reservations(self, market, stock, farmer):
        await stock("A", 10, price="2.00")
        reservation = (await market.engine.reserve("buyer-a", [("A", 2)], order_id="ord-1")).value

        await market.engine.set_price(farmer, "A", Decimal("3.00"))

        assert market.reservations.get(reservation.id).total_amount == Decimal("4.00")
        later = (await market.engine.reserve("buyer-b", [("A", 1)], order_id="ord-2")).value
        assert later.total_amount == Decimal("3.00")

    async def test_restock_increases_committed_quantity(self, market, stock, farmer):
        await stock("A", 1)
        result = await market.engine.restock(farmer, "A", 4)
        assert result.value.available_quantity == 5

    async def test_only_owner_may_restock(self, market, stock, buyer):
        await stock("A", 1)
        result = await market.engine.restock(buyer, "A", 4)
        assert isinstance(result.error, NotAuthorized)
        assert market.catalog.get("A").available_quantity == 1

    async def test_product_cannot_be_registered_twice(self, market, stock, farmer):
        await stock("A", 1)
        result = await market.engine.register_product(farmer, "A", Decimal("1.00"), 3)
        assert isinstance(result.error, InvalidRequest)

    async def test_catalog_changes_are_logged_with_their_event(self, market, stock, farmer):
        await stock("A", 1)

        with capture_logs() as logs:
            restocked = await market.engine.restock(farmer, "A", 4)
            repriced = await market.engine.set_price(farmer, "A", Decimal("3.00"))

        assert restocked.success and repriced.success
        updates = [entry for entry in logs if entry["event"] == "product_updated"]
        assert [entry["product_event"] for entry in updates] == [
            InventoryEvent.PRODUCT_RESTOCKED.value,
            InventoryEvent.PRODUCT_REPRICED.value,
        ]
