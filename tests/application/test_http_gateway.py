"""Tests for the HTTP payment provider adapter."""

import json
from decimal import Decimal

import httpx
import pytest

from farmstand.errors import PaymentProviderError
from farmstand.payment.gateway import PaymentStatus
from farmstand.payment.http_gateway import HttpPaymentProvider


def _provider(handler) -> HttpPaymentProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPaymentProvider("https://pay.example.test/", client=client)


class TestCharge:
    async def test_success_sends_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers["Idempotency-Key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "succeeded", "transaction_id": "txn-9"})

        provider = _provider(handler)
        result = await provider.charge(Decimal("7.50"), "ord-1", "card", "ord-1-1")
        await provider.aclose()

        assert result.success
        assert result.transaction_id == "txn-9"
        assert seen["url"] == "https://pay.example.test/charges"
        assert seen["key"] == "ord-1-1"
        assert seen["body"] == {"amount": "7.50", "order_id": "ord-1", "method": "card"}

    async def test_declined_is_a_definitive_failure(self):
        def handler(request):
            return httpx.Response(402, json={"status": "failed", "failure_reason": "Card declined"})

        result = await _provider(handler).charge(Decimal("1"), "ord-1", "card", "ord-1-1")

        assert result.status == PaymentStatus.FAILED
        assert result.failure_reason == "Card declined"

    async def test_pending_is_passed_through(self):
        def handler(request):
            return httpx.Response(202, json={"status": "pending"})

        result = await _provider(handler).charge(Decimal("1"), "ord-1", "card", "ord-1-1")
        assert result.pending

    async def test_server_error_is_retryable(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(PaymentProviderError) as exc_info:
            await _provider(handler).charge(Decimal("1"), "ord-1", "card", "ord-1-1")
        assert exc_info.value.retryable

    async def test_unknown_status_is_an_error(self):
        def handler(request):
            return httpx.Response(200, json={"status": "maybe"})

        with pytest.raises(PaymentProviderError, match="Unknown payment status"):
            await _provider(handler).charge(Decimal("1"), "ord-1", "card", "ord-1-1")

    async def test_malformed_body_is_an_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(PaymentProviderError, match="Malformed"):
            await _provider(handler).charge(Decimal("1"), "ord-1", "card", "ord-1-1")

    async def test_connection_error_is_an_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PaymentProviderError, match="unreachable"):
            await _provider(handler).charge(Decimal("1"), "ord-1", "card", "ord-1-1")


class TestRefund:
    async def test_refund_success(self):
        def handler(request):
            assert request.url.path == "/refunds"
            assert json.loads(request.content)["transaction_id"] == "txn-9"
            return httpx.Response(200, json={"status": "succeeded", "refund_id": "ref-1"})

        result = await _provider(handler).refund("ord-1", "txn-9", Decimal("7.50"), "ord-1-refund-1")

        assert result.success
        assert result.refund_id == "ref-1"

    async def test_refund_declined(self):
        def handler(request):
            return httpx.Response(409, json={"status": "failed", "failure_reason": "already refunded"})

        result = await _provider(handler).refund("ord-1", "txn-9", Decimal("7.50"), "ord-1-refund-1")

        assert not result.success
        assert result.failure_reason == "already refunded"

    async def test_refund_unknown_status(self):
        def handler(request):
            return httpx.Response(200, json={"status": "pending"})

        with pytest.raises(PaymentProviderError, match="Unknown refund status"):
            await _provider(handler).refund("ord-1", "txn-9", Decimal("7.50"), "ord-1-refund-1")
