"""Exception taxonomy for the payment subsystem.

Every error carries a stable machine-readable ``code`` (used in structured
results returned to callers) and a human-readable ``message``.
"""

from __future__ import annotations

from enum import Enum


class GatewayErrorCode(str, Enum):
    """Normalized error codes reported by gateway adapters."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    AUTHENTICATION_ERROR = "authentication_error"
    CARD_DECLINED = "card_declined"
    INVALID_REQUEST = "invalid_request"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    ALREADY_CAPTURED = "already_captured"
    NOT_FOUND = "not_found"
    PROVIDER_ERROR = "provider_error"


class PaymentsError(Exception):
    """Base class for payment subsystem errors."""

    code = "payments_error"
    default_message = "Payment operation failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PaymentsError):
    """Caller mistake; not retryable without changing inputs."""

    code = "validation_error"


class PaymentNotFound(ValidationError):
    code = "payment_not_found"
    default_message = "Payment record not found"


class PaymentNotPaid(ValidationError):
    code = "payment_not_paid"
    default_message = "Cannot refund unpaid order"


class AlreadyRefunded(ValidationError):
    code = "already_refunded"
    default_message = "This order has already been refunded"

    def __init__(self, message: str | None = None, refund_id: object | None = None) -> None:
        super().__init__(message)
        self.refund_id = refund_id


class RateLimitExceeded(PaymentsError):
    """Transient; the caller may retry once the window resets."""

    code = "rate_limit_exceeded"
    default_message = "Too many refund requests. Please try again later."


class GatewayError(PaymentsError):
    """Provider network, authentication or processing failure."""

    code = "gateway_error"
    default_message = "Payment gateway request failed"

    def __init__(
        self,
        message: str | None = None,
        error_code: GatewayErrorCode = GatewayErrorCode.PROVIDER_ERROR,
        gateway_response: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.gateway_response = gateway_response or {}


class DeclinedError(PaymentsError):
    """Provider business decision; not retryable."""

    code = "declined"
    default_message = "Payment was declined by the provider"

    def __init__(
        self,
        message: str | None = None,
        error_code: GatewayErrorCode = GatewayErrorCode.CARD_DECLINED,
        gateway_response: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.gateway_response = gateway_response or {}


class DecryptionError(PaymentsError):
    """Stored credential was tampered with or encrypted under another key."""

    code = "decryption_error"
    default_message = "Failed to decrypt credentials"


class UnsupportedGatewayError(PaymentsError):
    code = "unsupported_gateway"
    default_message = "Payment gateway is not supported"


class NoCredentialsError(PaymentsError):
    code = "gateway_not_configured"
    default_message = "No payment gateway credentials configured"


class InvalidRefundTransition(PaymentsError):
    code = "invalid_refund_transition"
    default_message = "Refund is in a terminal state"
