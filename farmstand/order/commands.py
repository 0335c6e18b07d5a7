"""
Order — 注文ステートマシン (コマンド側)

注文のライフサイクルを管理する。状態の判定は aggregate.transition() に任せ、
ここでは副作用 (在庫の解放、台帳への記録、ストアの更新) を扱う。

注文ごとに asyncio.Lock を持ち、同じ注文への操作を直列化する。
決済コーディネーターは lock_for() でロックを取ったうえで apply() を呼ぶ。
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import uuid4

import structlog

from ..errors import (
    InsufficientStock,
    InvalidRequest,
    InvalidTransition,
    ReconciliationRequired,
    Result,
)
from ..identity import SYSTEM, Principal, Role, authorize
from ..inventory.aggregate import ReservationState
from ..inventory.commands import ReservationEngine, normalize_line_items
from ..ledger.event_store import Ledger
from ..ledger.events import LedgerEntry
from ..utils.clock import utcnow
from .aggregate import (
    LEDGER_EVENTS,
    Order,
    OrderBook,
    OrderEvent,
    OrderLine,
    OrderStatus,
    clear_flag,
    flag,
    transition,
)
from .events import OrderLedgerEvent

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    expired_orders: list[str] = field(default_factory=list)
    released_reservations: list[str] = field(default_factory=list)
    abandoned_orders: list[str] = field(default_factory=list)


class OrderStateMachine:
    def __init__(
        self,
        orders: OrderBook,
        engine: ReservationEngine,
        ledger: Ledger,
        *,
        pending_order_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.orders = orders
        self.engine = engine
        self.ledger = ledger
        self.pending_order_ttl = pending_order_ttl
        self.clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, order_id: str) -> asyncio.Lock:
        return self._locks[order_id]

    def busy(self, order_id: str) -> bool:
        """注文のロックが取られている (決済などの処理中) か"""
        lock = self._locks.get(order_id)
        return lock is not None and lock.locked()

    # ── 台帳付きの状態変更 (ロック保持が前提) ─────

    async def apply(self, order: Order, event: OrderEvent, cause: str, **changes) -> Result[Order]:
        """遷移を判定し、状態が変わる場合だけ台帳に記録してストアへ反映する。"""
        result = transition(order, event, **changes)
        if not result.success or result.value is order:
            return result

        updated = result.value
        await self.ledger.record(
            LedgerEntry.of("Order", order, updated, LEDGER_EVENTS[event].value, cause, self.clock())
        )
        self.orders.put(updated)
        logger.info(
            "order_transitioned",
            order_id=order.id,
            order_event=event.value,
            status=updated.status.value,
            cause=cause,
        )
        return Result.ok(updated)

    async def flag_for_reconciliation(self, order: Order, reason: str) -> Order:
        updated = flag(order, reason)
        await self.ledger.record(
            LedgerEntry.of("Order", order, updated, OrderLedgerEvent.ORDER_FLAGGED.value, reason, self.clock())
        )
        self.orders.put(updated)
        logger.warning("order_flagged_for_reconciliation", order_id=order.id, reason=reason)
        return updated

    async def clear_reconciliation(self, order: Order, cause: str) -> Order:
        if not order.reconciliation_required:
            return order
        updated = clear_flag(order)
        await self.ledger.record(
            LedgerEntry.of("Order", order, updated, OrderLedgerEvent.ORDER_FLAG_CLEARED.value, cause, self.clock())
        )
        self.orders.put(updated)
        logger.info("order_reconciled", order_id=order.id, cause=cause)
        return updated

    # ── 注文作成と引き当て ───────────────────────

    async def submit(self, principal: Principal, line_items: Sequence) -> Result[Order]:
        """
        注文作成コマンド

        1. pending の注文を作成し台帳に記録
        2. 在庫を引き当てて reserved へ
        3. 在庫不足なら注文を cancelled にし、InsufficientStock を返す
        """
        denied = authorize(principal, Role.BUYER)
        if denied:
            return Result.fail(denied)
        try:
            items = normalize_line_items(line_items)
        except InvalidRequest as exc:
            return Result.fail(exc)

        now = self.clock()
        order = Order(
            id=str(uuid4()),
            buyer_id=principal.user_id,
            lines=[OrderLine(product_id=item.product_id, quantity=item.quantity) for item in items],
            created_at=now,
        )
        await self.ledger.record(
            LedgerEntry.of(
                "Order",
                None,
                order,
                OrderLedgerEvent.ORDER_SUBMITTED.value,
                f"submitted by {principal.user_id}",
                now,
            )
        )
        self.orders.put(order)
        logger.info("order_submitted", order_id=order.id, buyer_id=principal.user_id, lines=len(items))

        result = await self.reserve(order.id)
        if not result.success and isinstance(result.error, (InsufficientStock, InvalidRequest)):
            async with self.lock_for(order.id):
                await self.apply(
                    self.orders.get(order.id),
                    OrderEvent.CANCEL,
                    f"reservation failed: {result.reason}",
                )
        return result

    async def reserve(self, order_id: str) -> Result[Order]:
        """
        pending の注文に在庫を引き当てる。

        ReservationConflict の場合は pending のまま残すので、再試行できる。
        """
        async with self.lock_for(order_id):
            order = self.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            if order.status == OrderStatus.RESERVED:
                return Result.ok(order)
            if order.status != OrderStatus.PENDING:
                return Result.fail(
                    InvalidTransition(f"Order {order_id}: cannot reserve from {order.status.value}")
                )

            reserved = await self.engine.reserve(
                order.buyer_id,
                [(line.product_id, line.quantity) for line in order.lines],
                order_id=order.id,
            )
            if not reserved.success:
                return Result.fail(reserved.error)

            reservation = reserved.value
            return await self.apply(
                order,
                OrderEvent.RESERVE,
                f"reservation {reservation.id}",
                reservation_id=reservation.id,
                lines=[
                    OrderLine(
                        product_id=line.product_id,
                        quantity=line.quantity_held,
                        unit_price_snapshot=line.unit_price_snapshot,
                    )
                    for line in reservation.lines
                ],
                total_amount=reservation.total_amount,
            )

    # ── キャンセル・期限切れ ─────────────────────

    async def cancel(
        self,
        principal: Principal,
        order_id: str,
        reason: str = "cancelled by buyer",
    ) -> Result[Order]:
        """
        注文キャンセルコマンド

        reserved の注文は予約を解放してから cancelled にする。
        照合待ちの注文を取り消せるのはオペレーターだけ。
        """
        async with self.lock_for(order_id):
            order = self.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            denied = authorize(principal, Role.BUYER, owner_id=order.buyer_id)
            if denied:
                return Result.fail(denied)
            if order.reconciliation_required and principal.role != Role.OPERATOR:
                return Result.fail(ReconciliationRequired(order.id, order.reconciliation_reason or ""))
            return await self._release_and_apply(order, OrderEvent.CANCEL, reason)

    async def expire(self, order_id: str) -> Result[Order]:
        """予約の期限切れ。reserved → expired、予約は解放する。"""
        async with self.lock_for(order_id):
            order = self.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            if order.reconciliation_required:
                return Result.fail(ReconciliationRequired(order.id, order.reconciliation_reason or ""))
            return await self._release_and_apply(order, OrderEvent.EXPIRE, "expired")

    async def _release_and_apply(self, order: Order, event: OrderEvent, cause: str) -> Result[Order]:
        check = transition(order, event)
        if not check.success or check.value is order:
            return check
        if order.reservation_id is not None:
            released = await self.engine.release(order.reservation_id, cause=cause)
            if not released.success:
                return Result.fail(released.error)
        return await self.apply(order, event, cause)

    # ── 配送完了 ─────────────────────────────────

    async def fulfill(self, principal: Principal, order_id: str) -> Result[Order]:
        """外部の配送完了通知。paid の注文だけ受け付ける。"""
        denied = authorize(principal, Role.DRIVER)
        if denied:
            return Result.fail(denied)
        async with self.lock_for(order_id):
            order = self.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            return await self.apply(order, OrderEvent.FULFILL, f"delivered, signalled by {principal.user_id}")

    # ── 定期掃除 ─────────────────────────────────

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """
        期限切れ予約と放置注文の掃除

        - 予約が期限切れ (または解放済み) の reserved 注文 → expired
        - 注文に紐づかない期限切れ予約 → 解放
        - 引き当てが一度も成功していない古い pending 注文 → cancelled
        照合待ちの注文と、決済処理中 (ロック中) の注文には触れない。
        """
        now = now or self.clock()
        report = SweepReport()

        for order in self.orders.with_status(OrderStatus.RESERVED):
            if order.reconciliation_required or self.busy(order.id):
                continue
            reservation = (
                self.engine.reservations.get(order.reservation_id)
                if order.reservation_id is not None
                else None
            )
            stale = (
                reservation is None
                or reservation.state == ReservationState.RELEASED
                or (reservation.state == ReservationState.ACTIVE and reservation.is_expired(now))
            )
            if stale:
                result = await self.expire(order.id)
                if result.success:
                    report.expired_orders.append(order.id)

        # 注文ロックを取ってから解放する。決済中の注文の予約は解放しない
        for reservation in self.engine.reservations.active():
            if not reservation.is_expired(now) or self.busy(reservation.order_id):
                continue
            async with self.lock_for(reservation.order_id):
                order = self.orders.get(reservation.order_id)
                if order is not None and order.reconciliation_required:
                    continue
                result = await self.engine.expire(reservation.id, now)
            if result.success and result.value.state == ReservationState.RELEASED:
                report.released_reservations.append(reservation.id)

        cutoff = now - self.pending_order_ttl
        for order in self.orders.with_status(OrderStatus.PENDING):
            if order.created_at > cutoff or self.busy(order.id):
                continue
            result = await self.cancel(SYSTEM, order.id, reason="abandoned before reservation")
            if result.success:
                report.abandoned_orders.append(order.id)

        if report.expired_orders or report.released_reservations or report.abandoned_orders:
            logger.info(
                "sweep_complete",
                expired_orders=len(report.expired_orders),
                released_reservations=len(report.released_reservations),
                abandoned_orders=len(report.abandoned_orders),
            )
        return report
