# tripod/infra/payment_gateway.py
"""
Charges and refunds through the Stripe REST API
(``POST /v1/payment_intents`` and ``POST /v1/refunds``).

Error classification (PaymentGatewayError.retryable):
- Card declined, already refunded, invalid request → NOT retryable
- Authentication failure                           → NOT retryable (needs config fix)
- Rate limiting (429)                              → retryable
- Network / timeout / 5xx                          → retryable
- 200 without an object id                         → retryable (provider state unknown)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import aiohttp

from tripod.config import settings
from tripod.infra.http_client import get_payments_session
from tripod.infra.logging_config import get_logger
from tripod.infra.metrics import inc_counter

logger = get_logger(__name__)


class PaymentGatewayError(Exception):
    """
    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        code:       Provider error code, when present.
        retryable:  Whether trying again later could succeed.
    """

    def __init__(self, status: int, code: str | None, message: str, *, retryable: bool = False):
        self.status = status
        self.code = code
        self.retryable = retryable
        super().__init__(f"Payment provider error {status} (code={code}): {message}")


@dataclass
class RefundReceipt:
    provider_refund_id: str
    status: str


@dataclass
class ChargeReceipt:
    provider_payment_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


def to_minor_units(amount: Decimal) -> int:
    """Stripe amounts are integers in the currency's smallest unit."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:

    def __init__(self, secret_key: str | None = None, api_base: str | None = None, currency: str | None = None):
        self._secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self._api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self._currency = currency or settings.stripe_currency

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    async def _post(self, path: str, form: dict, *, idempotency_key: str, metric: str) -> dict:
        if not self.is_configured():
            raise PaymentGatewayError(0, "not_configured", "Payment provider is not configured")

        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Idempotency-Key": idempotency_key,
        }

        try:
            session = get_payments_session()
            async with session.post(f"{self._api_base}{path}", data=form, headers=headers) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    body = None

                if resp.status == 200:
                    if not body or not body.get("id"):
                        inc_counter(metric, status="error")
                        logger.error(f"Provider response for {path} has no object id")
                        raise PaymentGatewayError(
                            200, "malformed_response", "Response has no id", retryable=True,
                        )
                    inc_counter(metric, status="ok")
                    return body

                error = (body or {}).get("error", {})
                code = error.get("decline_code") or error.get("code") or error.get("type")
                message = error.get("message", "Unknown error")
                retryable = resp.status == 429 or resp.status >= 500
                inc_counter(metric, status="error")
                logger.error(f"Provider call {path} failed: status={resp.status}, code={code}")
                raise PaymentGatewayError(resp.status, code, message, retryable=retryable)

        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            inc_counter(metric, status="network_error")
            raise PaymentGatewayError(0, None, f"{type(exc).__name__}: {exc}", retryable=True) from exc

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
        description: str,
    ) -> ChargeReceipt:
        """
        Charge a saved card off-session and confirm immediately.

        ``idempotency_key`` (the payment id) makes a retried call return the
        original payment intent instead of charging twice.
        """
        form = {
            "amount": str(to_minor_units(amount)),
            "currency": self._currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "confirm": "true",
            "off_session": "true",
            "description": description[:500],
            "metadata[tripod_payment_id]": idempotency_key,
        }
        body = await self._post(
            "/v1/payment_intents", form, idempotency_key=idempotency_key, metric="payment_charges_total",
        )
        logger.info(f"Provider charge created: id={body['id']}, status={body.get('status')}")
        return ChargeReceipt(provider_payment_id=body["id"], status=body.get("status", "processing"))

    async def refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
        reason: str | None = None,
    ) -> RefundReceipt:
        """
        Refund ``amount`` of a payment intent.

        ``idempotency_key`` (the refund id) makes a retried call return the
        original refund instead of refunding twice.
        """
        form = {
            "payment_intent": payment_intent_id,
            "amount": str(to_minor_units(amount)),
            "metadata[tripod_refund_id]": idempotency_key,
        }
        if reason:
            form["metadata[reason]"] = reason[:500]

        body = await self._post(
            "/v1/refunds", form, idempotency_key=idempotency_key, metric="payment_refunds_total",
        )
        logger.info(f"Provider refund created: id={body['id']}, status={body.get('status')}")
        return RefundReceipt(provider_refund_id=body["id"], status=body.get("status", "succeeded"))


_gateway: StripeGateway | None = None


def get_payment_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
