"""Square payment provider implementation."""

from __future__ import annotations

import base64
import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx

from ..errors import DeclinedError, GatewayError, GatewayErrorCode
from .base import (
    AuthorizationResult,
    BasePaymentProvider,
    PaymentResult,
    RefundResult,
    StatusResult,
    register_provider,
)

SQUARE_API_VERSION = "2024-06-04"

_ERROR_CODES = {
    "UNAUTHORIZED": GatewayErrorCode.AUTHENTICATION_ERROR,
    "ACCESS_TOKEN_EXPIRED": GatewayErrorCode.AUTHENTICATION_ERROR,
    "ACCESS_TOKEN_REVOKED": GatewayErrorCode.AUTHENTICATION_ERROR,
    "NOT_FOUND": GatewayErrorCode.NOT_FOUND,
    "PAYMENT_NOT_REFUNDABLE": GatewayErrorCode.INVALID_REQUEST,
    "BAD_REQUEST": GatewayErrorCode.INVALID_REQUEST,
    "INVALID_VALUE": GatewayErrorCode.INVALID_REQUEST,
}

# Delayed-capture card payments are cancelled after seven days
_AUTHORIZATION_WINDOW = timedelta(days=7)


@register_provider("square")
class SquareProvider(BasePaymentProvider):
    """Square payment provider implementation.

    Uses the Square Payments and Refunds APIs over HTTPS. ``payment_method``
    carries a card nonce or stored card id as ``source_id``.
    """

    fee_percentage = Decimal("2.9")
    fee_fixed_cents = 30

    @property
    def provider_name(self) -> str:
        """Return provider name."""
        return "square"

    def _get_base_url(self) -> str:
        if self.is_test_mode():
            return "https://connect.squareupsandbox.com"
        return "https://connect.squareup.com"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.require_credential('access_token')}",
            "Square-Version": self.get_config("api_version", SQUARE_API_VERSION),
            "Content-Type": "application/json",
        }

    async def _make_api_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = self._headers()
        kwargs: dict[str, Any] = {"headers": headers}
        if method.upper() != "GET":
            kwargs["json"] = data or {}

        async with self._http_client() as client:
            response = await self._send(client, method.upper(), f"{self._get_base_url()}{endpoint}", **kwargs)

        if response.is_success:
            return self._json(response)
        self._raise_for_error(response)
        return {}  # pragma: no cover

    def _raise_for_error(self, response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        if not isinstance(body, dict):
            body = {"raw": body}

        error = (body.get("errors") or [{}])[0]
        category = error.get("category", "")
        square_code = error.get("code", "")
        message = f"Square {response.status_code} {square_code}: {error.get('detail', '')}".strip()

        if category == "PAYMENT_METHOD_ERROR":
            raise DeclinedError(message, gateway_response=body)
        if square_code in _ERROR_CODES:
            code = _ERROR_CODES[square_code]
        elif response.status_code == 401:
            code = GatewayErrorCode.AUTHENTICATION_ERROR
        elif response.status_code == 404:
            code = GatewayErrorCode.NOT_FOUND
        elif category == "INVALID_REQUEST_ERROR":
            code = GatewayErrorCode.INVALID_REQUEST
        else:
            code = GatewayErrorCode.PROVIDER_ERROR
        raise GatewayError(message, error_code=code, gateway_response=body)

    def _location_id(self) -> str:
        location_id = self.get_credential("location_id") or self.get_config("location_id")
        if not location_id:
            raise GatewayError(
                "Square location_id not configured",
                error_code=GatewayErrorCode.INVALID_REQUEST,
            )
        return location_id

    def _payment_body(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
        autocomplete: bool,
    ) -> dict[str, Any]:
        source_id = payment_method.get("source_id") or payment_method.get("token")
        if not source_id:
            raise GatewayError(
                "Square source_id is required",
                error_code=GatewayErrorCode.INVALID_REQUEST,
            )
        body: dict[str, Any] = {
            "source_id": source_id,
            "idempotency_key": str(uuid.uuid4()),
            "amount_money": {"amount": amount_cents, "currency": currency.upper()},
            "autocomplete": autocomplete,
            "location_id": self._location_id(),
        }
        if metadata.get("order_id"):
            body["reference_id"] = str(metadata["order_id"])[:40]
        if payment_method.get("customer_id"):
            body["customer_id"] = payment_method["customer_id"]
        return body

    async def _create_payment(self, body: dict[str, Any]) -> dict[str, Any]:
        result = await self._make_api_request("POST", "/v2/payments", body)
        payment = result.get("payment", {})
        if payment.get("status") in ("FAILED", "CANCELED"):
            raise DeclinedError(
                f"Square payment ended in status {payment.get('status')}",
                gateway_response=result,
            )
        return result

    async def _authorize(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> AuthorizationResult:
        body = self._payment_body(amount_cents, currency, payment_method, metadata, autocomplete=False)
        result = await self._create_payment(body)
        payment = self._require(result, "payment")

        expires_at = datetime.now(timezone.utc) + _AUTHORIZATION_WINDOW
        if payment.get("delayed_until"):
            expires_at = datetime.fromisoformat(payment["delayed_until"].replace("Z", "+00:00"))

        money = payment.get("amount_money", {})
        return AuthorizationResult(
            success=True,
            reference=self._require(payment, "id"),
            amount_cents=money.get("amount", amount_cents),
            currency=money.get("currency", currency.upper()),
            expires_at=expires_at,
            gateway_response=result,
        )

    async def _capture(self, authorization_id: str, amount_cents: int | None) -> PaymentResult:
        if amount_cents is not None:
            current = await self._make_api_request("GET", f"/v2/payments/{authorization_id}")
            authorized = current.get("payment", {}).get("amount_money", {}).get("amount")
            if authorized != amount_cents:
                raise GatewayError(
                    "Square cannot capture a different amount than authorized",
                    error_code=GatewayErrorCode.INVALID_REQUEST,
                )

        result = await self._make_api_request("POST", f"/v2/payments/{authorization_id}/complete")
        return self._payment_result(result)

    async def _charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> PaymentResult:
        body = self._payment_body(amount_cents, currency, payment_method, metadata, autocomplete=True)
        result = await self._create_payment(body)
        return self._payment_result(result)

    def _payment_result(self, result: dict[str, Any]) -> PaymentResult:
        payment = self._require(result, "payment")
        money = payment.get("amount_money", {})
        amount = money.get("amount", 0)
        return PaymentResult(
            success=True,
            reference=self._require(payment, "id"),
            amount_cents=amount,
            currency=money.get("currency", "USD"),
            status=self._map_square_status(payment.get("status")),
            gateway_fee_cents=self.calculate_gateway_fee(amount),
            gateway_response=result,
        )

    async def _refund(
        self,
        gateway_transaction_id: str,
        amount_cents: int,
        reason: str | None,
        currency: str,
    ) -> RefundResult:
        body: dict[str, Any] = {
            "idempotency_key": str(uuid.uuid4()),
            "payment_id": gateway_transaction_id,
            "amount_money": {"amount": amount_cents, "currency": currency.upper()},
        }
        if reason:
            body["reason"] = reason[:192]

        result = await self._make_api_request("POST", "/v2/refunds", body)
        refund = self._require(result, "refund")
        status = refund.get("status")
        if status in ("REJECTED", "FAILED"):
            raise GatewayError(
                f"Square refund {refund.get('id')} {status}",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response=result,
            )

        money = refund.get("amount_money", {})
        return RefundResult(
            success=True,
            reference=self._require(refund, "id"),
            amount_cents=money.get("amount", amount_cents),
            currency=money.get("currency", currency.upper()),
            status="completed" if status == "COMPLETED" else "pending",
            gateway_response=result,
        )

    async def _get_status(self, transaction_id: str) -> StatusResult:
        try:
            result = await self._make_api_request("GET", f"/v2/refunds/{transaction_id}")
            obj = result.get("refund", {})
            status = {"COMPLETED": "completed", "REJECTED": "failed", "FAILED": "failed"}.get(
                obj.get("status"), "pending"
            )
        except GatewayError as e:
            if e.error_code is not GatewayErrorCode.NOT_FOUND:
                raise
            result = await self._make_api_request("GET", f"/v2/payments/{transaction_id}")
            obj = result.get("payment", {})
            status = self._map_square_status(obj.get("status"))

        money = obj.get("amount_money", {})
        return StatusResult(
            success=True,
            reference=obj.get("id", transaction_id),
            status=status,
            amount_cents=money.get("amount", 0),
            currency=money.get("currency"),
            gateway_response=result,
        )

    def validate_webhook(self, raw_payload: bytes, signature_header: str | None) -> bool:
        """Check ``x-square-hmacsha256-signature`` over notification URL + body."""
        signature_key = self.get_credential("webhook_signature_key")
        notification_url = self.get_config("webhook_notification_url") or self.get_credential(
            "webhook_notification_url"
        )
        if not signature_key or not notification_url or not signature_header:
            return False
        digest = hmac.new(
            signature_key.encode(),
            notification_url.encode() + raw_payload,
            hashlib.sha256,
        ).digest()
        expected = base64.b64encode(digest).decode()
        received = signature_header.strip().encode("utf-8", "replace")
        return hmac.compare_digest(expected.encode(), received)

    async def verify_credentials(self) -> None:
        await self._make_api_request("GET", "/v2/locations")

    def _map_square_status(self, square_status: str | None) -> str:
        status_map = {
            "APPROVED": "authorized",
            "PENDING": "pending",
            "COMPLETED": "succeeded",
            "CANCELED": "failed",
            "FAILED": "failed",
        }
        return status_map.get(square_status or "", "pending")
