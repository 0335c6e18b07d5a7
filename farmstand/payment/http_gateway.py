"""
Payment — HTTP 決済プロバイダのアダプタ

httpx で JSON をやり取りする。冪等キーは Idempotency-Key ヘッダで送り、
再試行しても二重に課金されないようにする。
"""

from decimal import Decimal

import httpx
import structlog

from ..errors import PaymentProviderError
from .gateway import PaymentProvider, PaymentStatus, ProviderResult, RefundResult

logger = structlog.get_logger(__name__)


class HttpPaymentProvider(PaymentProvider):
    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        try:
            resp = await self.client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"Payment provider unreachable: {e}") from e

        # 4xx は確定した応答 (402 カード拒否など)。5xx は再試行の対象
        if resp.status_code >= 500:
            raise PaymentProviderError(f"Payment provider error {resp.status_code}: {resp.text}")
        try:
            body = resp.json()
        except ValueError as e:
            raise PaymentProviderError(f"Malformed provider response: {resp.text!r}") from e
        if not isinstance(body, dict):
            raise PaymentProviderError(f"Malformed provider response: {resp.text!r}")
        return body

    async def charge(
        self,
        amount: Decimal,
        order_id: str,
        method: str,
        idempotency_key: str,
    ) -> ProviderResult:
        body = await self._post(
            "/charges",
            {"amount": str(amount), "order_id": order_id, "method": method},
            idempotency_key,
        )
        try:
            status = PaymentStatus(body.get("status"))
        except ValueError:
            raise PaymentProviderError(f"Unknown payment status: {body.get('status')!r}") from None

        logger.info("provider_charge_response", order_id=order_id, status=status.value)
        return ProviderResult(
            status=status,
            transaction_id=body.get("transaction_id"),
            failure_reason=body.get("failure_reason"),
        )

    async def refund(
        self,
        order_id: str,
        transaction_id: str | None,
        amount: Decimal,
        idempotency_key: str,
    ) -> RefundResult:
        body = await self._post(
            "/refunds",
            {"amount": str(amount), "order_id": order_id, "transaction_id": transaction_id},
            idempotency_key,
        )
        status = body.get("status")
        if status not in ("succeeded", "failed"):
            raise PaymentProviderError(f"Unknown refund status: {status!r}")
        return RefundResult(
            success=status == "succeeded",
            refund_id=body.get("refund_id"),
            failure_reason=body.get("failure_reason"),
        )
