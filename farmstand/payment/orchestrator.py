"""
Payment Coordinator — 決済・在庫確定 Saga

オーケストレーション型 Saga:
  決済結果に応じて在庫の確定/解放と注文の遷移を制御する。
  途中で失敗したら補償トランザクションで整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 決済プロバイダに課金を依頼 (タイムアウト + 指数バックオフで再試行) │
  │     ├─ 成功 → 在庫を確定 (commit)                              │
  │     │    ├─ 成功 → 注文を paid へ                              │
  │     │    └─ 失敗 → 決済を取り消し、予約を解放、注文を cancelled   │
  │     │              (補償トランザクション。paid には絶対にしない)  │
  │     ├─ 失敗 → 予約を解放、注文を cancelled                      │
  │     └─ 保留/不明・再試行の上限 → reserved のまま照合待ちにする     │
  │              (在庫の確定も解放もしない)                          │
  └──────────────────────────────────────────────────────────────┘
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from ..errors import (
    InvalidTransition,
    PaymentProviderError,
    ReconciliationRequired,
    Result,
)
from ..identity import Principal, Role, authorize
from ..inventory.commands import ReservationEngine
from ..order.aggregate import Order, OrderEvent, OrderStatus
from ..order.commands import OrderStateMachine
from .gateway import PaymentProvider, ProviderResult, RefundResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# 照合フラグを外す (決済結果が確定した)
RESOLVED = {"reconciliation_required": False, "reconciliation_reason": None}


def _step(saga_log: list[dict], action: str, status: str = "EXECUTING") -> dict:
    step = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    saga_log.append(step)
    return step


class PaymentCoordinator:
    """決済 Saga のオーケストレーター"""

    def __init__(
        self,
        machine: OrderStateMachine,
        engine: ReservationEngine,
        provider: PaymentProvider,
        *,
        redis: aioredis.Redis | None = None,
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        provider_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.machine = machine
        self.engine = engine
        self.provider = provider
        self.redis = redis
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.provider_timeout = provider_timeout
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """attempt 回目の失敗後に待つ秒数"""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    async def _with_retry(
        self,
        action: str,
        order_id: str,
        call: Callable[[int], Awaitable[T]],
    ) -> T:
        """
        プロバイダ呼び出しを再試行する。

        各呼び出しは provider_timeout で打ち切る (キャンセルされる)。
        PaymentProviderError とタイムアウトだけを再試行し、
        上限に達したら最後のエラーを包んだ PaymentProviderError を送出する。
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(call(attempt), timeout=self.provider_timeout)
            except asyncio.TimeoutError:
                last_error = PaymentProviderError(f"{action} timed out after {self.provider_timeout}s")
            except PaymentProviderError as e:
                last_error = e
            logger.warning(
                "payment_provider_retry",
                order_id=order_id,
                action=action,
                attempt=attempt,
                error=str(last_error),
            )
            if attempt < self.max_attempts:
                await self._sleep(self.backoff(attempt))
        raise PaymentProviderError(f"{action} failed after {self.max_attempts} attempts: {last_error}")

    # ── 課金 ─────────────────────────────────────

    async def charge(self, principal: Principal, order_id: str, method: str) -> Result[Order]:
        """
        reserved の注文に課金し、結果を confirm_payment と同じ手順で反映する。

        冪等キーは "{order_id}-{attempt}"。
        """
        saga_log: list[dict] = []
        async with self.machine.lock_for(order_id):
            order = self.machine.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            denied = authorize(principal, Role.BUYER, owner_id=order.buyer_id)
            if denied:
                return Result.fail(denied)
            if order.reconciliation_required:
                return Result.fail(ReconciliationRequired(order.id, order.reconciliation_reason or ""))
            if order.status != OrderStatus.RESERVED:
                return Result.fail(
                    InvalidTransition(f"Order {order_id} is {order.status.value}, only reserved orders can be charged")
                )

            step = _step(saga_log, "ChargePayment")
            try:
                result = await self._with_retry(
                    "charge",
                    order.id,
                    lambda attempt: self.provider.charge(
                        order.total_amount, order.id, method, f"{order.id}-{attempt}"
                    ),
                )
            except PaymentProviderError as e:
                step["status"] = "FAILED"
                step["error"] = str(e)
                return await self._needs_reconciliation(order, str(e), saga_log)

            step["status"] = "COMPLETED"
            step["provider_status"] = result.status.value
            return await self._confirm_locked(order_id, result, saga_log)

    # ── 決済結果の反映 ───────────────────────────

    async def confirm_payment(self, order_id: str, provider_result: ProviderResult) -> Result[Order]:
        """
        決済結果を反映する。注文は reserved であること。

        同じ成功結果での再確認は、paid の注文をそのまま返す (冪等)。
        """
        async with self.machine.lock_for(order_id):
            return await self._confirm_locked(order_id, provider_result, [])

    async def _confirm_locked(
        self,
        order_id: str,
        provider_result: ProviderResult,
        saga_log: list[dict],
    ) -> Result[Order]:
        order = self.machine.orders.get(order_id)
        if order is None:
            return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
        if (
            order.status == OrderStatus.PAID
            and provider_result.success
            and order.payment_reference == provider_result.transaction_id
        ):
            return Result.ok(order)
        if order.status != OrderStatus.RESERVED:
            return Result.fail(
                InvalidTransition(
                    f"Order {order_id} is {order.status.value}, payment can only be confirmed for reserved orders"
                )
            )

        if provider_result.pending:
            return await self._needs_reconciliation(order, "payment provider reported pending", saga_log)

        if provider_result.failed:
            return await self._payment_failed(order, provider_result, saga_log)

        # ── 決済成功 → 在庫確定 ─────────────────
        step = _step(saga_log, "CommitStock")
        committed = await self.engine.commit(order.reservation_id)
        if committed.success:
            step["status"] = "COMPLETED"
            step = _step(saga_log, "MarkPaid")
            paid = await self.machine.apply(
                order,
                OrderEvent.PAY,
                f"payment {provider_result.transaction_id}",
                payment_reference=provider_result.transaction_id,
                **RESOLVED,
            )
            step["status"] = "COMPLETED" if paid.success else "FAILED"
            await self._publish_payment_event("PaymentCompleted", order_id, saga_log)
            return paid

        step["status"] = "FAILED"
        step["error"] = committed.reason
        logger.warning(
            "stock_commit_failed_after_payment",
            order_id=order_id,
            reservation_id=order.reservation_id,
            error=committed.reason,
        )

        # ── 補償: 決済取り消し → 予約解放 → 注文キャンセル ──
        step = _step(saga_log, "ReversePayment (COMPENSATING)")
        reversal_error: str | None = None
        try:
            refund = await self._refund(order, provider_result.transaction_id)
        except PaymentProviderError as e:
            reversal_error = str(e)
        else:
            if not refund.success:
                reversal_error = refund.failure_reason or "refund declined"
        step["status"] = "FAILED" if reversal_error else "COMPLETED"

        step = _step(saga_log, "ReleaseStock (COMPENSATING)")
        released = await self.engine.release(order.reservation_id, cause="payment reversed")
        step["status"] = "COMPLETED" if released.success else "FAILED"

        changes = dict(RESOLVED)
        if reversal_error:
            # 返金できていない。注文は cancelled にするが、お金の照合はオペレーターに任せる
            changes = {
                "reconciliation_required": True,
                "reconciliation_reason": f"payment reversal failed: {reversal_error}",
            }
        step = _step(saga_log, "CancelOrder (COMPENSATING)")
        cancelled = await self.machine.apply(
            order,
            OrderEvent.CANCEL,
            f"stock commit failed: {committed.reason}",
            payment_reference=provider_result.transaction_id,
            **changes,
        )
        step["status"] = "COMPLETED" if cancelled.success else "FAILED"

        await self._publish_payment_event("PaymentCompensated", order_id, saga_log)
        return Result.fail(committed.error)

    async def _payment_failed(
        self,
        order: Order,
        provider_result: ProviderResult,
        saga_log: list[dict],
    ) -> Result[Order]:
        reason = provider_result.failure_reason or "payment failed"
        step = _step(saga_log, "ReleaseStock (COMPENSATING)")
        released = await self.engine.release(order.reservation_id, cause=f"payment failed: {reason}")
        if not released.success:
            step["status"] = "FAILED"
            step["error"] = released.reason
            return Result.fail(released.error)
        step["status"] = "COMPLETED"

        step = _step(saga_log, "CancelOrder (COMPENSATING)")
        cancelled = await self.machine.apply(order, OrderEvent.CANCEL, f"payment failed: {reason}", **RESOLVED)
        step["status"] = "COMPLETED" if cancelled.success else "FAILED"
        await self._publish_payment_event("PaymentFailed", order.id, saga_log)
        return cancelled

    async def _needs_reconciliation(self, order: Order, reason: str, saga_log: list[dict]) -> Result[Order]:
        """曖昧な結果。在庫には触れず、注文に照合待ちの印を付ける。"""
        _step(saga_log, "FlagForReconciliation", "COMPLETED")
        await self.machine.flag_for_reconciliation(order, reason)
        await self._publish_payment_event("PaymentReconciliationRequired", order.id, saga_log)
        return Result.fail(ReconciliationRequired(order.id, reason))

    async def _refund(self, order: Order, transaction_id: str | None) -> RefundResult:
        return await self._with_retry(
            "refund",
            order.id,
            lambda attempt: self.provider.refund(
                order.id, transaction_id, order.total_amount, f"{order.id}-refund-{attempt}"
            ),
        )

    # ── 返金 ─────────────────────────────────────

    async def refund_payment(self, principal: Principal, order_id: str) -> Result[Order]:
        """paid → refunding → cancelled。返金に失敗したら refunding のまま照合待ち。"""
        saga_log: list[dict] = []
        async with self.machine.lock_for(order_id):
            order = self.machine.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            denied = authorize(principal, Role.BUYER, owner_id=order.buyer_id)
            if denied:
                return Result.fail(denied)

            if order.status == OrderStatus.PAID:
                refunding = await self.machine.apply(
                    order, OrderEvent.REFUND, f"refund requested by {principal.user_id}"
                )
                order = refunding.value
            elif order.status != OrderStatus.REFUNDING:
                return Result.fail(
                    InvalidTransition(f"Order {order_id} is {order.status.value}, only paid orders can be refunded")
                )

            step = _step(saga_log, "RefundPayment")
            try:
                refund = await self._refund(order, order.payment_reference)
            except PaymentProviderError as e:
                step["status"] = "FAILED"
                return await self._needs_reconciliation(order, str(e), saga_log)
            if not refund.success:
                step["status"] = "FAILED"
                return await self._needs_reconciliation(
                    order, f"refund declined: {refund.failure_reason}", saga_log
                )
            step["status"] = "COMPLETED"

            completed = await self.machine.apply(
                self.machine.orders.get(order_id),
                OrderEvent.REFUND_COMPLETE,
                f"refund {refund.refund_id}",
                **RESOLVED,
            )
            await self._publish_payment_event("RefundCompleted", order_id, saga_log)
            return completed

    # ── オペレーターによる照合 ───────────────────

    async def resolve_reconciliation(
        self,
        principal: Principal,
        order_id: str,
        provider_result: ProviderResult | None = None,
    ) -> Result[Order]:
        """
        照合待ちの注文を解決する (オペレーター専用)。

        reserved の注文には確定した決済結果を渡し、通常の確認手順で処理する。
        それ以外 (返金の失敗など) は、手作業での解決を記録して印を外す。
        """
        denied = authorize(principal)
        if denied:
            return Result.fail(denied)

        async with self.machine.lock_for(order_id):
            order = self.machine.orders.get(order_id)
            if order is None:
                return Result.fail(InvalidTransition(f"Order {order_id} does not exist"))
            if not order.reconciliation_required:
                return Result.fail(InvalidTransition(f"Order {order_id} is not awaiting reconciliation"))

            if order.status == OrderStatus.RESERVED:
                if provider_result is None or provider_result.pending:
                    return Result.fail(
                        ReconciliationRequired(order.id, "a definitive payment result is required")
                    )
                return await self._confirm_locked(order_id, provider_result, [])

            resolved = await self.machine.clear_reconciliation(order, f"resolved by {principal.user_id}")
            return Result.ok(resolved)

    async def _publish_payment_event(self, event_type: str, order_id: str, saga_log: list[dict]) -> None:
        """Saga のイベントを Redis に発行する。"""
        logger.info("payment_saga_finished", event_type=event_type, order_id=order_id, steps=len(saga_log))
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                "payment_events",
                json.dumps(
                    {
                        "event_type": event_type,
                        "order_id": order_id,
                        "saga_log": saga_log,
                    },
                    default=str,
                ),
            )
        except RedisError as e:
            logger.warning("payment_event_publish_failed", order_id=order_id, error=str(e))
