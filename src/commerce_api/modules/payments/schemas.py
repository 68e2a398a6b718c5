"""Payment Pydantic schemas for service results."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Enums
class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    SQUARE = "square"


class PaymentStatus(str, Enum):
    """Payment statuses."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    FAILED = "failed"


class RefundStatus(str, Enum):
    """Refund statuses. ``completed`` and ``failed`` are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RefundStatus.COMPLETED, RefundStatus.FAILED)


class FeeSource(str, Enum):
    """Which rule produced the platform fee."""

    OVERRIDE = "override"
    WAIVER = "waiver"
    TIER = "tier"


# Result Schemas


class FeeBreakdown(BaseModel):
    """Itemized fees for one transaction, suitable for receipts."""

    amount_cents: int
    gateway_fee_cents: int
    platform_fee_cents: int
    platform_fee_percentage: Decimal
    platform_fee_fixed_cents: int
    total_fees_cents: int
    net_amount_cents: int
    fee_waived: bool = False
    reason: str | None = Field(default=None, description="Override or waiver reason, for audit")
    source: FeeSource
    tier_name: str | None = None


class RefundResponse(BaseModel):
    """Outcome of a refund request. Never carries raw provider text."""

    success: bool
    refund_id: UUID | None = None
    gateway_refund_id: str | None = None
    status: RefundStatus
    error: str | None = None
    message: str | None = None


class RefundRecord(BaseModel):
    """Persisted refund as returned to callers."""

    id: UUID
    payment_id: UUID
    order_id: UUID
    tenant_id: UUID
    amount_cents: int
    refund_status: RefundStatus
    refund_reason: str | None = None
    gateway_type: str
    gateway_refund_id: str | None = None
    initiated_by: str
    created_at: datetime | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PaymentRecord(BaseModel):
    """Persisted payment as returned to callers."""

    id: UUID
    tenant_id: UUID
    order_id: UUID
    gateway_type: str
    amount_cents: int
    currency: str
    payment_status: PaymentStatus
    gateway_transaction_id: str | None = None
    gateway_authorization_id: str | None = None
    platform_fee_cents: int = 0
    total_fees_cents: int = 0
    net_amount_cents: int = 0
    authorized_at: datetime | None = None
    authorization_expires_at: datetime | None = None
    captured_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PaymentOperationResponse(BaseModel):
    """Outcome of an authorize, capture or charge request."""

    success: bool
    payment_id: UUID | None = None
    status: PaymentStatus | None = None
    error: str | None = None
    message: str | None = None
    fees: FeeBreakdown | None = None


class CredentialValidation(BaseModel):
    """Result of a lightweight credential check against a provider."""

    valid: bool
    error: str | None = None


class TenantRefundUsage(BaseModel):
    tenant_id: str
    refund_count: int
    amount_refunded_cents: int


class RefundStats(BaseModel):
    """Process-local refund statistics. Reset on restart; not an audit trail."""

    total_refunds: int
    successful_refunds: int
    failed_refunds: int
    in_flight_refunds: int
    average_processing_time_ms: float
    success_rate: float
    error_rate: float
    total_amount_refunded_cents: int
    gateway_usage: dict[str, int] = Field(default_factory=dict)
    tenant_usage: list[TenantRefundUsage] = Field(default_factory=list)


class HealthStatus(BaseModel):
    status: str
    services: dict[str, Any]
    operation_count: int
    rate_limit_size: int
    last_check: datetime
