"""Payment provider implementations.

Importing this package registers every bundled provider in
``PROVIDER_REGISTRY``.
"""

from .base import (
    PROVIDER_REGISTRY,
    AuthorizationResult,
    BasePaymentProvider,
    GatewayResult,
    PaymentResult,
    RefundResult,
    StatusResult,
    get_provider_class,
    register_provider,
)
from .paypal import PayPalProvider
from .square import SquareProvider
from .stripe import StripeProvider

__all__ = [
    "PROVIDER_REGISTRY",
    "AuthorizationResult",
    "BasePaymentProvider",
    "GatewayResult",
    "PaymentResult",
    "PayPalProvider",
    "RefundResult",
    "SquareProvider",
    "StatusResult",
    "StripeProvider",
    "get_provider_class",
    "register_provider",
]
