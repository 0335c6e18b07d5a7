"""
Inventory — 予約エンジン (コマンド側)

在庫の引き当て(reserve)・解放(release)・確定(commit)を処理する。

並行性:
  商品ごとに asyncio.Lock を持ち、複数商品にまたがる予約では
  商品 ID の昇順でロックを取る (デッドロック回避)。
  ロック取得が lock_timeout を超えたら ReservationConflict を返し、
  それまでに取ったロックはすべて解放する。

永続化:
  変更内容はまず台帳に書き、成功してからストアへ反映する。
  台帳への書き込み失敗 (LedgerWriteFailed) はそのまま送出され、
  ストアは一切変更されない。
"""

import asyncio
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Callable, Iterable, Sequence
from uuid import uuid4

import structlog

from ..errors import (
    InsufficientStock,
    InvalidRequest,
    InvalidTransition,
    ReservationConflict,
    ReservationExpired,
    Result,
)
from ..identity import Principal, Role, authorize
from ..ledger.event_store import Ledger
from ..ledger.events import LedgerEntry
from ..utils.clock import utcnow
from .aggregate import LineItem, Product, Reservation, ReservationState, ReservedLine
from .catalog import CatalogStore, ReservationBook
from .events import InventoryEvent

logger = structlog.get_logger(__name__)

DEFAULT_RESERVATION_TTL = timedelta(minutes=15)


def normalize_line_items(line_items: Iterable) -> list[LineItem]:
    """
    (product_id, quantity) のタプルまたは LineItem を受け付ける。

    形の崩れた行や数量 0 以下の行は InvalidRequest。
    """
    try:
        items = [
            item if isinstance(item, LineItem) else LineItem(product_id=item[0], quantity=item[1])
            for item in line_items
        ]
    except (TypeError, KeyError, IndexError, ValueError) as exc:
        raise InvalidRequest(f"Malformed line items: {exc}") from exc
    if not items:
        raise InvalidRequest("An order needs at least one line item")
    for item in items:
        if item.quantity <= 0:
            raise InvalidRequest(f"Quantity for {item.product_id} must be positive, got {item.quantity}")
    return items


class ReservationEngine:
    def __init__(
        self,
        catalog: CatalogStore,
        reservations: ReservationBook,
        ledger: Ledger,
        *,
        reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.catalog = catalog
        self.reservations = reservations
        self.ledger = ledger
        self.reservation_ttl = reservation_ttl
        self.lock_timeout = lock_timeout
        self.clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _locked(self, product_ids: Iterable[str]) -> AsyncIterator[None]:
        """商品ロックを昇順に取る。途中で失敗したら取得済みのロックを解放する。"""
        async with AsyncExitStack() as stack:
            for product_id in sorted(set(product_ids)):
                lock = self._locks[product_id]
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
                except asyncio.TimeoutError:
                    raise ReservationConflict(
                        f"Timed out waiting for product {product_id}"
                    ) from None
                stack.callback(lock.release)
            yield

    # ── 引き当て ─────────────────────────────────

    async def reserve(
        self,
        buyer_id: str,
        line_items: Sequence,
        *,
        order_id: str,
    ) -> Result[Reservation]:
        """
        在庫引き当てコマンド

        1. 全行について 引き当て可能数 >= 要求数 を確認
        2. 1 行でも足りなければ、最初に足りなかった商品で InsufficientStock
           (何も押さえない)
        3. 足りれば価格をスナップショットし、予約を active で作成
        """
        try:
            items = normalize_line_items(line_items)
        except InvalidRequest as exc:
            return Result.fail(exc)

        try:
            async with self._locked(item.product_id for item in items):
                return await self._reserve_locked(buyer_id, items, order_id)
        except ReservationConflict as exc:
            logger.warning("reservation_conflict", order_id=order_id, error=str(exc))
            return Result.fail(exc)

    async def _reserve_locked(
        self,
        buyer_id: str,
        items: list[LineItem],
        order_id: str,
    ) -> Result[Reservation]:
        if self.reservations.active_for_order(order_id) is not None:
            return Result.fail(
                InvalidTransition(f"Order {order_id} already has an active reservation")
            )

        needed: dict[str, int] = {}
        for item in items:
            product = self.catalog.get(item.product_id)
            needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity
            available = product.effective_available if product is not None else 0
            if product is None or needed[item.product_id] > available:
                logger.info(
                    "reservation_rejected",
                    order_id=order_id,
                    product_id=item.product_id,
                    requested=needed[item.product_id],
                    available=available,
                )
                return Result.fail(InsufficientStock(item.product_id, needed[item.product_id], available))

        now = self.clock()
        lines = [
            ReservedLine(
                product_id=item.product_id,
                quantity_held=item.quantity,
                unit_price_snapshot=self.catalog.get(item.product_id).price,
            )
            for item in items
        ]
        reservation = Reservation(
            id=str(uuid4()),
            order_id=order_id,
            buyer_id=buyer_id,
            lines=lines,
            total_amount=sum((line.unit_price_snapshot * line.quantity_held for line in lines), Decimal("0")),
            created_at=now,
            expires_at=now + self.reservation_ttl,
        )

        cause = f"reservation {reservation.id} for order {order_id}"
        updated: list[Product] = []
        entries: list[LedgerEntry] = []
        for product_id, quantity in needed.items():
            before = self.catalog.get(product_id)
            after = before.hold(quantity)
            updated.append(after)
            entries.append(
                LedgerEntry.of("Product", before, after, InventoryEvent.STOCK_HELD.value, cause, now)
            )
        entries.append(
            LedgerEntry.of(
                "Reservation", None, reservation, InventoryEvent.RESERVATION_CREATED.value, cause, now
            )
        )

        await self.ledger.record_many(entries)
        for product in updated:
            self.catalog.put(product)
        self.reservations.put(reservation)

        logger.info(
            "stock_reserved",
            reservation_id=reservation.id,
            order_id=order_id,
            total_amount=str(reservation.total_amount),
            expires_at=reservation.expires_at.isoformat(),
        )
        return Result.ok(reservation)

    # ── 解放 ─────────────────────────────────────

    async def release(self, reservation_id: str, *, cause: str = "released") -> Result[Reservation]:
        """
        在庫解放コマンド (冪等)

        released / committed の予約に対しては何もせず成功を返す。
        存在しない予約だけが InvalidTransition になる。
        """
        return await self._release(reservation_id, cause, InventoryEvent.RESERVATION_RELEASED)

    async def expire(self, reservation_id: str, now: datetime | None = None) -> Result[Reservation]:
        """期限切れによる解放。期限前の予約はそのまま返す。"""
        reservation = self.reservations.get(reservation_id)
        if reservation is None:
            return Result.fail(InvalidTransition(f"Reservation {reservation_id} does not exist"))
        if not reservation.is_expired(now or self.clock()):
            return Result.ok(reservation)
        return await self._release(reservation_id, "expired", InventoryEvent.RESERVATION_EXPIRED)

    async def _release(
        self,
        reservation_id: str,
        cause: str,
        event: InventoryEvent,
    ) -> Result[Reservation]:
        reservation = self.reservations.get(reservation_id)
        if reservation is None:
            return Result.fail(InvalidTransition(f"Reservation {reservation_id} does not exist"))
        if reservation.state != ReservationState.ACTIVE:
            return Result.ok(reservation)

        try:
            async with self._locked(reservation.holds()):
                return await self._release_locked(reservation_id, cause, event)
        except ReservationConflict as exc:
            logger.warning("release_conflict", reservation_id=reservation_id, error=str(exc))
            return Result.fail(exc)

    async def _release_locked(
        self,
        reservation_id: str,
        cause: str,
        event: InventoryEvent,
    ) -> Result[Reservation]:
        # ロック待ちの間に他の呼び出しが解放・確定している可能性がある
        reservation = self.reservations.get(reservation_id)
        if reservation.state != ReservationState.ACTIVE:
            return Result.ok(reservation)

        now = self.clock()
        released = reservation.with_state(ReservationState.RELEASED)
        updated, entries = self._product_changes(
            reservation, Product.release_hold, InventoryEvent.HOLD_RELEASED, cause, now
        )
        entries.append(LedgerEntry.of("Reservation", reservation, released, event.value, cause, now))

        await self.ledger.record_many(entries)
        for product in updated:
            self.catalog.put(product)
        self.reservations.put(released)

        logger.info(
            "reservation_released",
            reservation_id=reservation_id,
            order_id=reservation.order_id,
            cause=cause,
        )
        return Result.ok(released)

    # ── 確定 ─────────────────────────────────────

    async def commit(self, reservation_id: str) -> Result[Reservation]:
        """
        在庫確定コマンド

        active → committed。引き当て分を available_quantity から差し引く。
        期限切れの予約はその場で解放し ReservationExpired を返す。
        """
        reservation = self.reservations.get(reservation_id)
        if reservation is None:
            return Result.fail(InvalidTransition(f"Reservation {reservation_id} does not exist"))

        try:
            async with self._locked(reservation.holds()):
                return await self._commit_locked(reservation_id)
        except ReservationConflict as exc:
            logger.warning("commit_conflict", reservation_id=reservation_id, error=str(exc))
            return Result.fail(exc)

    async def _commit_locked(self, reservation_id: str) -> Result[Reservation]:
        reservation = self.reservations.get(reservation_id)
        if reservation.state == ReservationState.COMMITTED:
            return Result.ok(reservation)
        if reservation.state != ReservationState.ACTIVE:
            return Result.fail(
                InvalidTransition(
                    f"Reservation {reservation_id} is {reservation.state.value}, not active"
                )
            )

        now = self.clock()
        if reservation.is_expired(now):
            await self._release_locked(reservation_id, "expired", InventoryEvent.RESERVATION_EXPIRED)
            return Result.fail(ReservationExpired(reservation_id))

        cause = f"commit of reservation {reservation_id} for order {reservation.order_id}"
        committed = reservation.with_state(ReservationState.COMMITTED)
        updated, entries = self._product_changes(
            reservation, Product.commit_hold, InventoryEvent.STOCK_COMMITTED, cause, now
        )
        entries.append(
            LedgerEntry.of(
                "Reservation", reservation, committed, InventoryEvent.RESERVATION_COMMITTED.value, cause, now
            )
        )

        await self.ledger.record_many(entries)
        for product in updated:
            self.catalog.put(product)
        self.reservations.put(committed)

        logger.info("reservation_committed", reservation_id=reservation_id, order_id=reservation.order_id)
        return Result.ok(committed)

    def _product_changes(
        self,
        reservation: Reservation,
        change: Callable[[Product, int], Product],
        event: InventoryEvent,
        cause: str,
        now: datetime,
    ) -> tuple[list[Product], list[LedgerEntry]]:
        updated: list[Product] = []
        entries: list[LedgerEntry] = []
        for product_id, quantity in reservation.holds().items():
            before = self.catalog.get(product_id)
            after = change(before, quantity)
            updated.append(after)
            entries.append(LedgerEntry.of("Product", before, after, event.value, cause, now))
        return updated, entries

    # ── 期限切れの掃除 ───────────────────────────

    async def sweep_expired(
        self,
        now: datetime | None = None,
        *,
        exclude_orders: Iterable[str] = (),
    ) -> list[Reservation]:
        """
        期限切れの active 予約を解放する。

        exclude_orders に含まれる注文 (照合待ち) の予約には触れない。
        """
        now = now or self.clock()
        excluded = set(exclude_orders)
        released: list[Reservation] = []
        for reservation in self.reservations.active():
            if reservation.order_id in excluded or not reservation.is_expired(now):
                continue
            result = await self.expire(reservation.id, now)
            if result.success:
                released.append(result.value)
        if released:
            logger.info("expired_reservations_released", count=len(released))
        return released

    # ── カタログ所有者の操作 ─────────────────────

    async def register_product(
        self,
        principal: Principal,
        product_id: str,
        price: Decimal,
        quantity: int,
    ) -> Result[Product]:
        denied = authorize(principal, Role.FARMER)
        if denied:
            return Result.fail(denied)
        if quantity < 0 or Decimal(price) < 0:
            return Result.fail(InvalidRequest("Price and quantity must not be negative"))

        try:
            async with self._locked([product_id]):
                if self.catalog.get(product_id) is not None:
                    return Result.fail(InvalidRequest(f"Product {product_id} already exists"))
                product = Product(
                    id=product_id,
                    owner_id=principal.user_id,
                    price=Decimal(price),
                    available_quantity=quantity,
                )
                await self.ledger.record(
                    LedgerEntry.of(
                        "Product",
                        None,
                        product,
                        InventoryEvent.PRODUCT_REGISTERED.value,
                        f"registered by {principal.user_id}",
                        self.clock(),
                    )
                )
                self.catalog.put(product)
        except ReservationConflict as exc:
            return Result.fail(exc)

        logger.info("product_registered", product_id=product_id, owner_id=principal.user_id, quantity=quantity)
        return Result.ok(product)

    async def restock(self, principal: Principal, product_id: str, quantity: int) -> Result[Product]:
        if quantity <= 0:
            return Result.fail(InvalidRequest("Restock quantity must be positive"))
        return await self._update_product(
            principal,
            product_id,
            lambda product: product.restock(quantity),
            InventoryEvent.PRODUCT_RESTOCKED,
        )

    async def set_price(self, principal: Principal, product_id: str, price: Decimal) -> Result[Product]:
        """価格変更。既存の予約・注文の total_amount には影響しない。"""
        if Decimal(price) < 0:
            return Result.fail(InvalidRequest("Price must not be negative"))
        return await self._update_product(
            principal,
            product_id,
            lambda product: product.reprice(Decimal(price)),
            InventoryEvent.PRODUCT_REPRICED,
        )

    async def _update_product(
        self,
        principal: Principal,
        product_id: str,
        change: Callable[[Product], Product],
        event: InventoryEvent,
    ) -> Result[Product]:
        try:
            async with self._locked([product_id]):
                before = self.catalog.get(product_id)
                if before is None:
                    return Result.fail(InvalidRequest(f"Product {product_id} does not exist"))
                denied = authorize(principal, Role.FARMER, owner_id=before.owner_id)
                if denied:
                    return Result.fail(denied)
                after = change(before)
                await self.ledger.record(
                    LedgerEntry.of("Product", before, after, event.value, f"by {principal.user_id}", self.clock())
                )
                self.catalog.put(after)
        except ReservationConflict as exc:
            return Result.fail(exc)

        logger.info("product_updated", product_id=product_id, product_event=event.value)
        return Result.ok(after)
