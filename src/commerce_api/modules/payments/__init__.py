"""Payment transaction lifecycle for commerce tenants.

Supports multiple payment providers (Stripe, PayPal, Square) with encrypted
per-tenant credentials, tiered platform fees and at-most-once refunds.
"""

from .models import (
    FeeOverride,
    FeeTier,
    GatewayCredential,
    Payment,
    Refund,
    Tenant,
)
from .schemas import (
    GatewayType,
    PaymentStatus,
    RefundStatus,
)

__all__ = [
    "Tenant",
    "Payment",
    "Refund",
    "FeeTier",
    "FeeOverride",
    "GatewayCredential",
    "GatewayType",
    "PaymentStatus",
    "RefundStatus",
]
