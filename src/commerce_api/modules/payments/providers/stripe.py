"""Stripe payment provider implementation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import stripe

from ..errors import DeclinedError, GatewayError, GatewayErrorCode
from .base import (
    AuthorizationResult,
    BasePaymentProvider,
    PaymentResult,
    RefundResult,
    StatusResult,
    register_provider,
)

# Refund reasons Stripe accepts verbatim; anything else travels in metadata
_STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}

# Uncaptured PaymentIntents are released after seven days
_AUTHORIZATION_WINDOW = timedelta(days=7)

_INVALID_REQUEST_CODES = {
    "resource_missing": GatewayErrorCode.NOT_FOUND,
    "charge_expired_for_capture": GatewayErrorCode.AUTHORIZATION_EXPIRED,
    "payment_intent_unexpected_state": GatewayErrorCode.ALREADY_CAPTURED,
    "charge_already_captured": GatewayErrorCode.ALREADY_CAPTURED,
}


@register_provider("stripe")
class StripeProvider(BasePaymentProvider):
    """Stripe payment provider implementation.

    Uses the Payment Intents API through the official SDK. The API key is
    passed per request so that tenants never share global SDK state; the
    blocking SDK calls run in a worker thread.
    """

    fee_percentage = Decimal("2.9")
    fee_fixed_cents = 30

    @property
    def provider_name(self) -> str:
        """Return provider name."""
        return "stripe"

    @property
    def api_key(self) -> str:
        return self.require_credential("secret_key")

    async def _call(self, func: Any, *args: Any, **params: Any) -> Any:
        """Run a blocking SDK call in a thread, translating Stripe errors."""
        try:
            return await asyncio.to_thread(func, *args, api_key=self.api_key, **params)
        except stripe.CardError as e:
            raise DeclinedError(
                str(e),
                error_code=GatewayErrorCode.CARD_DECLINED,
                gateway_response=e.json_body or {},
            ) from e
        except stripe.AuthenticationError as e:
            raise GatewayError(
                "Stripe rejected the API key",
                error_code=GatewayErrorCode.AUTHENTICATION_ERROR,
            ) from e
        except stripe.APIConnectionError as e:
            raise GatewayError(
                f"Could not reach Stripe: {e}",
                error_code=GatewayErrorCode.NETWORK_ERROR,
            ) from e
        except stripe.InvalidRequestError as e:
            raise GatewayError(
                str(e),
                error_code=_INVALID_REQUEST_CODES.get(e.code or "", GatewayErrorCode.INVALID_REQUEST),
                gateway_response=e.json_body or {},
            ) from e
        except stripe.StripeError as e:
            raise GatewayError(
                f"Stripe API error: {e}",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response=e.json_body or {},
            ) from e

    def _intent_params(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        payment_method_id = payment_method.get("payment_method_id") or payment_method.get("token")
        if not payment_method_id:
            raise GatewayError(
                "Stripe payment_method_id is required",
                error_code=GatewayErrorCode.INVALID_REQUEST,
            )
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "payment_method": payment_method_id,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if payment_method.get("customer_id"):
            params["customer"] = payment_method["customer_id"]
        return params

    async def _authorize(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> AuthorizationResult:
        params = self._intent_params(amount_cents, currency, payment_method, metadata)
        intent = await self._call(stripe.PaymentIntent.create, capture_method="manual", **params)

        if intent.status != "requires_capture":
            raise DeclinedError(
                f"Stripe authorization ended in status {intent.status}",
                gateway_response=intent.to_dict(),
            )

        return AuthorizationResult(
            success=True,
            reference=intent.id,
            amount_cents=intent.amount,
            currency=intent.currency.upper(),
            expires_at=datetime.now(timezone.utc) + _AUTHORIZATION_WINDOW,
            gateway_response=intent.to_dict(),
        )

    async def _capture(self, authorization_id: str, amount_cents: int | None) -> PaymentResult:
        params: dict[str, Any] = {}
        if amount_cents is not None:
            params["amount_to_capture"] = amount_cents
        intent = await self._call(stripe.PaymentIntent.capture, authorization_id, **params)
        return self._payment_result(intent)

    async def _charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> PaymentResult:
        params = self._intent_params(amount_cents, currency, payment_method, metadata)
        intent = await self._call(stripe.PaymentIntent.create, capture_method="automatic", **params)
        if intent.status not in ("succeeded", "processing"):
            raise DeclinedError(
                f"Stripe charge ended in status {intent.status}",
                gateway_response=intent.to_dict(),
            )
        return self._payment_result(intent)

    def _payment_result(self, intent: Any) -> PaymentResult:
        captured = getattr(intent, "amount_received", None) or intent.amount
        return PaymentResult(
            success=True,
            reference=intent.id,
            amount_cents=captured,
            currency=intent.currency.upper(),
            status=self._map_stripe_status(intent.status),
            gateway_fee_cents=self.calculate_gateway_fee(captured),
            gateway_response=intent.to_dict(),
        )

    async def _refund(
        self,
        gateway_transaction_id: str,
        amount_cents: int,
        reason: str | None,
        currency: str,
    ) -> RefundResult:
        refund_params: dict[str, Any] = {"amount": amount_cents}

        # Determine if it's a charge or payment intent
        if gateway_transaction_id.startswith("ch_"):
            refund_params["charge"] = gateway_transaction_id
        else:
            refund_params["payment_intent"] = gateway_transaction_id

        if reason:
            if reason in _STRIPE_REFUND_REASONS:
                refund_params["reason"] = reason
            else:
                refund_params["reason"] = "requested_by_customer"
                refund_params["metadata"] = {"reason": reason}

        refund = await self._call(stripe.Refund.create, **refund_params)

        if refund.status in ("failed", "canceled"):
            raise GatewayError(
                f"Stripe refund {refund.id} {refund.status}",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response=refund.to_dict(),
            )

        return RefundResult(
            success=True,
            reference=refund.id,
            amount_cents=refund.amount,
            currency=refund.currency.upper(),
            status="completed" if refund.status == "succeeded" else "pending",
            gateway_response=refund.to_dict(),
        )

    async def _get_status(self, transaction_id: str) -> StatusResult:
        if transaction_id.startswith("re_"):
            obj = await self._call(stripe.Refund.retrieve, transaction_id)
            status = {"succeeded": "completed", "failed": "failed", "canceled": "failed"}.get(
                obj.status, "pending"
            )
        elif transaction_id.startswith("ch_"):
            obj = await self._call(stripe.Charge.retrieve, transaction_id)
            status = {"succeeded": "succeeded", "failed": "failed"}.get(obj.status, "pending")
        else:
            obj = await self._call(stripe.PaymentIntent.retrieve, transaction_id)
            status = self._map_stripe_status(obj.status)

        return StatusResult(
            success=True,
            reference=obj.id,
            status=status,
            amount_cents=obj.amount,
            currency=obj.currency.upper(),
            gateway_response=obj.to_dict(),
        )

    def validate_webhook(self, raw_payload: bytes, signature_header: str | None) -> bool:
        webhook_secret = self.get_credential("webhook_secret")
        if not webhook_secret or not signature_header:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"),
                signature_header,
                webhook_secret,
                tolerance=self.get_config("webhook_tolerance", 300),
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    async def verify_credentials(self) -> None:
        await self._call(stripe.Balance.retrieve)

    def _map_stripe_status(self, stripe_status: str) -> str:
        """Map Stripe status to our internal status.

        Args:
            stripe_status: Stripe payment intent status

        Returns:
            Internal status string
        """
        status_map = {
            "requires_payment_method": "failed",
            "requires_confirmation": "pending",
            "requires_action": "pending",
            "processing": "pending",
            "requires_capture": "authorized",
            "canceled": "failed",
            "succeeded": "succeeded",
        }
        return status_map.get(stripe_status, "pending")
