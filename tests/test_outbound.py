# tests/test_outbound.py
"""Tests for the outbound HTTP adapters: notification webhook and payment gateway."""
from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from tripod.infra.notification_channels import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    DisabledChannel,
    OutboundNotification,
    WebhookChannel,
    sign_payload,
)
from tripod.infra.payment_gateway import PaymentGatewayError, StripeGateway, to_minor_units


def _session(status: int = 200, body=None, *, raises: Exception | None = None) -> MagicMock:
    """aiohttp-like session whose post() is an async context manager."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body)

    session = MagicMock()
    if raises is not None:
        session.post.side_effect = raises
    else:
        session.post.return_value.__aenter__ = AsyncMock(return_value=resp)
        session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


NOTIFICATION = OutboundNotification(
    user_id="v1", type="job_assigned_vendor", title="New job assigned", message="Job A-12345", link="/jobs/1",
)


# ============================================================================
# Webhook channel
# ============================================================================

class TestWebhookChannel:
    @pytest.mark.asyncio
    async def test_signed_post(self):
        session = _session(204)
        channel = WebhookChannel(url="https://hooks.example.com/ops", secret="s3cret")

        with patch("tripod.infra.notification_channels.get_default_session", return_value=session):
            assert await channel.send(NOTIFICATION) is True

        kwargs = session.post.call_args.kwargs
        body = kwargs["data"]
        headers = kwargs["headers"]
        assert json.loads(body)["user_id"] == "v1"
        assert headers[SIGNATURE_HEADER] == sign_payload("s3cret", headers[TIMESTAMP_HEADER], body)

    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self):
        session = _session(200)
        channel = WebhookChannel(url="https://hooks.example.com/ops", secret="")

        with patch("tripod.infra.notification_channels.get_default_session", return_value=session):
            await channel.send(NOTIFICATION)

        assert SIGNATURE_HEADER not in session.post.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_http_error_is_reported(self):
        channel = WebhookChannel(url="https://hooks.example.com/ops", secret="")

        with patch("tripod.infra.notification_channels.get_default_session", return_value=_session(500)):
            assert await channel.send(NOTIFICATION) is False

    @pytest.mark.asyncio
    async def test_network_error_is_reported(self):
        channel = WebhookChannel(url="https://hooks.example.com/ops", secret="")
        session = _session(raises=aiohttp.ClientConnectionError("refused"))

        with patch("tripod.infra.notification_channels.get_default_session", return_value=session):
            assert await channel.send(NOTIFICATION) is False

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        assert await WebhookChannel(url="", secret="").send(NOTIFICATION) is False

    @pytest.mark.asyncio
    async def test_disabled_channel_accepts(self):
        assert await DisabledChannel().send(NOTIFICATION) is True


# ============================================================================
# Payment gateway
# ============================================================================

class TestStripeGateway:
    def test_minor_units(self):
        assert to_minor_units(Decimal("12.345")) == 1235
        assert to_minor_units(Decimal("10")) == 1000

    @pytest.mark.asyncio
    async def test_refund_success(self):
        session = _session(200, {"id": "re_123", "status": "succeeded"})
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com/")

        with patch("tripod.infra.payment_gateway.get_payments_session", return_value=session):
            receipt = await gateway.refund("pi_1", Decimal("25.50"), idempotency_key="ref-1", reason="late")

        assert receipt.provider_refund_id == "re_123"
        url = session.post.call_args[0][0]
        kwargs = session.post.call_args.kwargs
        assert url == "https://api.example.com/v1/refunds"
        assert kwargs["data"]["amount"] == "2550"
        assert kwargs["headers"]["Idempotency-Key"] == "ref-1"

    @pytest.mark.asyncio
    async def test_success_without_refund_id_is_an_error(self):
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com")

        with patch("tripod.infra.payment_gateway.get_payments_session",
                   return_value=_session(200, {"status": "succeeded"})):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await gateway.refund("pi_1", Decimal("5"), idempotency_key="ref-1")

        assert exc_info.value.code == "malformed_response"

    @pytest.mark.asyncio
    async def test_declined_not_retryable(self):
        session = _session(402, {"error": {"code": "charge_already_refunded", "message": "Already refunded"}})
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com")

        with patch("tripod.infra.payment_gateway.get_payments_session", return_value=session):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await gateway.refund("pi_1", Decimal("5"), idempotency_key="ref-1")

        assert exc_info.value.code == "charge_already_refunded"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_server_error_retryable(self):
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com")

        with patch("tripod.infra.payment_gateway.get_payments_session", return_value=_session(503, None)):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await gateway.refund("pi_1", Decimal("5"), idempotency_key="ref-1")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_network_error_retryable(self):
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com")
        session = _session(raises=aiohttp.ClientConnectionError("reset"))

        with patch("tripod.infra.payment_gateway.get_payments_session", return_value=session):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await gateway.refund("pi_1", Decimal("5"), idempotency_key="ref-1")

        assert exc_info.value.status == 0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        with pytest.raises(PaymentGatewayError, match="not configured"):
            await StripeGateway(secret_key="", api_base="https://api.example.com").refund(
                "pi_1", Decimal("5"), idempotency_key="ref-1",
            )

    @pytest.mark.asyncio
    async def test_charge_confirms_off_session(self):
        session = _session(200, {"id": "pi_9", "status": "succeeded"})
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com", currency="eur")

        with patch("tripod.infra.payment_gateway.get_payments_session", return_value=session):
            receipt = await gateway.charge(
                "cus_1", "pm_1", Decimal("40.00"), idempotency_key="pay-1", description="Job A-12345",
            )

        assert receipt.provider_payment_id == "pi_9"
        assert receipt.succeeded is True
        url = session.post.call_args[0][0]
        form = session.post.call_args.kwargs["data"]
        assert url == "https://api.example.com/v1/payment_intents"
        assert form["amount"] == "4000"
        assert form["currency"] == "eur"
        assert form["confirm"] == "true"
        assert session.post.call_args.kwargs["headers"]["Idempotency-Key"] == "pay-1"

    @pytest.mark.asyncio
    async def test_card_decline_code_is_reported(self):
        body = {"error": {"type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds",
                          "message": "Your card has insufficient funds."}}
        gateway = StripeGateway(secret_key="sk_test_x", api_base="https://api.example.com")

        with patch("tripod.infra.payment_gateway.get_payments_session", return_value=_session(402, body)):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await gateway.charge("cus_1", "pm_1", Decimal("5"), idempotency_key="pay-1", description="x")

        assert exc_info.value.code == "insufficient_funds"
        assert exc_info.value.retryable is False
