"""PayPal payment provider implementation."""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx

from ..errors import DeclinedError, GatewayError, GatewayErrorCode
from ..utils.money import to_major_units, to_minor_units
from .base import (
    AuthorizationResult,
    BasePaymentProvider,
    PaymentResult,
    RefundResult,
    StatusResult,
    register_provider,
)

# PayPal issue names that mean the payer or the instrument said no
_DECLINE_ISSUES = {
    "INSTRUMENT_DECLINED",
    "PAYER_ACTION_REQUIRED",
    "PAYER_CANNOT_PAY",
    "TRANSACTION_REFUSED",
    "CARD_EXPIRED",
}

_ISSUE_CODES = {
    "AUTHORIZATION_EXPIRED": GatewayErrorCode.AUTHORIZATION_EXPIRED,
    "AUTHORIZATION_ALREADY_CAPTURED": GatewayErrorCode.ALREADY_CAPTURED,
    "ORDER_ALREADY_CAPTURED": GatewayErrorCode.ALREADY_CAPTURED,
    "ORDER_ALREADY_AUTHORIZED": GatewayErrorCode.ALREADY_CAPTURED,
    "CAPTURE_FULLY_REFUNDED": GatewayErrorCode.INVALID_REQUEST,
    "RESOURCE_NOT_FOUND": GatewayErrorCode.NOT_FOUND,
}

# PayPal honours an authorization for 29 days; the first 3 are guaranteed
_AUTHORIZATION_WINDOW = timedelta(days=29)


@register_provider("paypal")
class PayPalProvider(BasePaymentProvider):
    """PayPal payment provider implementation.

    Uses the PayPal REST API v2 (Orders and Payments). ``payment_method``
    carries the id of an order the payer already approved on PayPal.
    """

    fee_percentage = Decimal("3.49")
    fee_fixed_cents = 49

    @property
    def provider_name(self) -> str:
        """Return provider name."""
        return "paypal"

    def _get_base_url(self) -> str:
        """Get PayPal API base URL based on mode.

        Returns:
            API base URL
        """
        if self.is_test_mode():
            return "https://api-m.sandbox.paypal.com"
        return "https://api-m.paypal.com"

    def _get_auth_header(self) -> str:
        """Get Basic Auth header for the PayPal token endpoint."""
        client_id = self.require_credential("client_id")
        client_secret = self.require_credential("client_secret")
        encoded = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
        return f"Basic {encoded}"

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        """Get PayPal OAuth access token.

        Raises:
            GatewayError: If PayPal rejects the client credentials
        """
        response = await self._send(
            client,
            "POST",
            f"{self._get_base_url()}/v1/oauth2/token",
            headers={
                "Authorization": self._get_auth_header(),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            content="grant_type=client_credentials",
        )
        if response.status_code != 200:
            raise GatewayError(
                "PayPal rejected the client credentials",
                error_code=GatewayErrorCode.AUTHENTICATION_ERROR,
            )
        return self._require(self._json(response), "access_token")

    async def _make_api_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request to PayPal.

        Args:
            method: HTTP method (GET, POST)
            endpoint: API endpoint (e.g., '/v2/checkout/orders')
            data: Request body data

        Returns:
            Response JSON

        Raises:
            GatewayError: On transport or API failure
            DeclinedError: When PayPal refuses the instrument
        """
        async with self._http_client() as client:
            access_token = await self._get_access_token(client)
            headers = {
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            }
            kwargs: dict[str, Any] = {"headers": headers}
            if method.upper() != "GET":
                kwargs["json"] = data or {}
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

        details = body.get("details") or [{}]
        issue = details[0].get("issue") or body.get("name") or ""
        message = f"PayPal {response.status_code} {issue}: {body.get('message', '')}".strip()

        if issue in _DECLINE_ISSUES:
            raise DeclinedError(message, gateway_response=body)
        if response.status_code in (401, 403):
            code = GatewayErrorCode.AUTHENTICATION_ERROR
        elif response.status_code == 404:
            code = GatewayErrorCode.NOT_FOUND
        elif issue in _ISSUE_CODES:
            code = _ISSUE_CODES[issue]
        elif response.status_code in (400, 422):
            code = GatewayErrorCode.INVALID_REQUEST
        else:
            code = GatewayErrorCode.PROVIDER_ERROR
        raise GatewayError(message, error_code=code, gateway_response=body)

    @staticmethod
    def _order_id(payment_method: dict[str, Any]) -> str:
        order_id = payment_method.get("order_id") or payment_method.get("token")
        if not order_id:
            raise GatewayError(
                "PayPal order_id is required",
                error_code=GatewayErrorCode.INVALID_REQUEST,
            )
        return order_id

    @staticmethod
    def _first_payment(result: dict[str, Any], kind: str) -> dict[str, Any]:
        for unit in result.get("purchase_units", []):
            entries = unit.get("payments", {}).get(kind, [])
            if entries:
                return entries[0]
        raise GatewayError(
            f"PayPal response carries no {kind}",
            error_code=GatewayErrorCode.PROVIDER_ERROR,
            gateway_response=result,
        )

    @staticmethod
    def _amount(entry: dict[str, Any], fallback_cents: int, fallback_currency: str) -> tuple[int, str]:
        amount = entry.get("amount")
        if not amount:
            return fallback_cents, fallback_currency.upper()
        currency = amount["currency_code"]
        return to_minor_units(amount["value"], currency), currency

    async def _authorize(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> AuthorizationResult:
        order_id = self._order_id(payment_method)
        result = await self._make_api_request("POST", f"/v2/checkout/orders/{order_id}/authorize")
        authorization = self._first_payment(result, "authorizations")

        if authorization.get("status") not in ("CREATED", "PENDING"):
            raise DeclinedError(
                f"PayPal authorization ended in status {authorization.get('status')}",
                gateway_response=result,
            )

        authorized_cents, authorized_currency = self._amount(authorization, amount_cents, currency)
        expires_at = datetime.now(timezone.utc) + _AUTHORIZATION_WINDOW
        if authorization.get("expiration_time"):
            expires_at = datetime.fromisoformat(authorization["expiration_time"].replace("Z", "+00:00"))

        return AuthorizationResult(
            success=True,
            reference=self._require(authorization, "id"),
            amount_cents=authorized_cents,
            currency=authorized_currency,
            expires_at=expires_at,
            gateway_response=result,
        )

    async def _capture(self, authorization_id: str, amount_cents: int | None) -> PaymentResult:
        body: dict[str, Any] = {"final_capture": True}
        if amount_cents is not None:
            currency = self.get_config("currency", "USD")
            body["amount"] = {"value": to_major_units(amount_cents, currency), "currency_code": currency}

        result = await self._make_api_request(
            "POST",
            f"/v2/payments/authorizations/{authorization_id}/capture",
            body,
        )
        captured_cents, currency = self._amount(result, amount_cents or 0, self.get_config("currency", "USD"))
        return PaymentResult(
            success=True,
            reference=self._require(result, "id"),
            amount_cents=captured_cents,
            currency=currency,
            status=self._map_paypal_status(result.get("status")),
            gateway_fee_cents=self.calculate_gateway_fee(captured_cents),
            gateway_response=result,
        )

    async def _charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> PaymentResult:
        order_id = self._order_id(payment_method)
        result = await self._make_api_request("POST", f"/v2/checkout/orders/{order_id}/capture")
        capture = self._first_payment(result, "captures")

        if capture.get("status") in ("DECLINED", "FAILED"):
            raise DeclinedError(
                f"PayPal capture ended in status {capture.get('status')}",
                gateway_response=result,
            )

        captured_cents, captured_currency = self._amount(capture, amount_cents, currency)
        return PaymentResult(
            success=True,
            reference=self._require(capture, "id"),
            amount_cents=captured_cents,
            currency=captured_currency,
            status=self._map_paypal_status(capture.get("status")),
            gateway_fee_cents=self.calculate_gateway_fee(captured_cents),
            gateway_response=result,
        )

    async def _refund(
        self,
        gateway_transaction_id: str,
        amount_cents: int,
        reason: str | None,
        currency: str,
    ) -> RefundResult:
        refund_data: dict[str, Any] = {
            "amount": {
                "value": to_major_units(amount_cents, currency),
                "currency_code": currency.upper(),
            }
        }
        if reason:
            refund_data["note_to_payer"] = reason[:255]

        result = await self._make_api_request(
            "POST",
            f"/v2/payments/captures/{gateway_transaction_id}/refund",
            refund_data,
        )

        status = result.get("status")
        if status in ("FAILED", "CANCELLED"):
            raise GatewayError(
                f"PayPal refund {result.get('id')} {status}",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response=result,
            )

        refunded_cents, refunded_currency = self._amount(result, amount_cents, currency)
        return RefundResult(
            success=True,
            reference=self._require(result, "id"),
            amount_cents=refunded_cents,
            currency=refunded_currency,
            status="completed" if status == "COMPLETED" else "pending",
            gateway_response=result,
        )

    async def _get_status(self, transaction_id: str) -> StatusResult:
        try:
            result = await self._make_api_request("GET", f"/v2/payments/refunds/{transaction_id}")
            status = {"COMPLETED": "completed", "FAILED": "failed", "CANCELLED": "failed"}.get(
                result.get("status"), "pending"
            )
        except GatewayError as e:
            if e.error_code is not GatewayErrorCode.NOT_FOUND:
                raise
            result = await self._make_api_request("GET", f"/v2/payments/captures/{transaction_id}")
            status = self._map_paypal_status(result.get("status"))

        amount_cents, currency = self._amount(result, 0, "USD")
        return StatusResult(
            success=True,
            reference=result.get("id", transaction_id),
            status=status,
            amount_cents=amount_cents,
            currency=currency,
            gateway_response=result,
        )

    def validate_webhook(self, raw_payload: bytes, signature_header: str | None) -> bool:
        """Check a hex HMAC-SHA256 of the raw body keyed with ``webhook_secret``."""
        webhook_secret = self.get_credential("webhook_secret")
        if not webhook_secret or not signature_header:
            return False
        expected = hmac.new(webhook_secret.encode(), raw_payload, hashlib.sha256).hexdigest()
        received = signature_header.strip().lower().encode("utf-8", "replace")
        return hmac.compare_digest(expected.encode(), received)

    async def verify_credentials(self) -> None:
        async with self._http_client() as client:
            await self._get_access_token(client)

    def _map_paypal_status(self, paypal_status: str | None) -> str:
        """Map PayPal capture/order status to our internal status."""
        status_map = {
            "CREATED": "pending",
            "PENDING": "pending",
            "APPROVED": "pending",
            "COMPLETED": "succeeded",
            "DECLINED": "failed",
            "FAILED": "failed",
            "VOIDED": "failed",
            "REFUNDED": "refunded",
            "PARTIALLY_REFUNDED": "refunded",
        }
        return status_map.get(paypal_status or "", "pending")
