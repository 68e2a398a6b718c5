"""Payment database models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ...core.db_base import Base

# Valid gateway values
GATEWAY_VALUES = ("stripe", "paypal", "square")

# Valid status values for payments
PAYMENT_STATUS_VALUES = ("pending", "authorized", "paid", "failed")

# Valid status values for refunds
REFUND_STATUS_VALUES = ("pending", "processing", "completed", "failed")

# Statuses that block another refund on the same payment
ACTIVE_REFUND_STATUS_VALUES = ("pending", "processing", "completed")

_ACTIVE_REFUND_PREDICATE = f"refund_status IN {ACTIVE_REFUND_STATUS_VALUES}"


class Tenant(Base):
    """Merchant account owning payments, credentials and fee settings.

    Carries the subscription tier used for default platform fees and the
    blanket fee waiver.
    """

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_tier: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="starter",
        server_default=text("'starter'"),
    )
    platform_fee_waived: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    platform_fee_waived_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Waiver expiry; null means the waiver does not expire",
    )
    platform_fee_waived_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Payment(Base):
    """One attempted or completed charge against a gateway.

    Immutable once ``paid`` except for refund linkage through ``refunds``.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            f"payment_status IN {PAYMENT_STATUS_VALUES}",
            name="payment_status_valid",
        ),
        CheckConstraint("amount_cents >= 0", name="payment_amount_non_negative"),
        Index("idx_payments_tenant", "tenant_id"),
        Index("idx_payments_order", "order_id"),
        Index("idx_payments_gateway_txn", "gateway_transaction_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("tenants.id"), nullable=False)
    order_id: Mapped[UUID] = mapped_column(
        Uuid,
        nullable=False,
        comment="Reference to the order being paid",
    )
    gateway_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Amount information
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
        server_default=text("'USD'"),
    )
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # Provider references
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_authorization_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Fee breakdown captured at charge time
    gateway_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(precision=6, scale=3),
        nullable=False,
        default=Decimal("0"),
    )
    platform_fee_fixed_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_fees_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_waived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fee_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    gateway_response: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Provider error detail for operators; never returned to tenants",
    )

    # Timestamps
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    authorization_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Refund(Base):
    """One refund attempt against exactly one payment.

    The partial unique index allows at most one pending, processing or
    completed refund per payment. Concurrent writers racing past the
    application check are stopped here.
    """

    __tablename__ = "refunds"
    __table_args__ = (
        CheckConstraint(
            f"refund_status IN {REFUND_STATUS_VALUES}",
            name="refund_status_valid",
        ),
        Index(
            "uq_refunds_active_payment",
            "payment_id",
            unique=True,
            postgresql_where=text(_ACTIVE_REFUND_PREDICATE),
            sqlite_where=text(_ACTIVE_REFUND_PREDICATE),
        ),
        Index("idx_refunds_tenant", "tenant_id"),
        Index("idx_refunds_order", "order_id"),
        Index("idx_refunds_status", "refund_status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("payments.id"), nullable=False)
    order_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    tenant_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    refund_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_type: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_response: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="system",
        server_default=text("'system'"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class FeeTier(Base):
    """Default platform fee per subscription tier. Administrator-managed."""

    __tablename__ = "fee_tiers"

    tier_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    percentage: Mapped[Decimal] = mapped_column(Numeric(precision=6, scale=3), nullable=False)
    fixed_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class FeeOverride(Base):
    """Time-bounded tenant-specific fee exception.

    Active when ``is_active`` and ``starts_at <= now < expires_at`` (or no
    expiry). Takes priority over both the fee waiver and the tier default.
    """

    __tablename__ = "fee_overrides"
    __table_args__ = (
        CheckConstraint("percentage >= 0", name="fee_override_percentage_non_negative"),
        Index("idx_fee_overrides_tenant_active", "tenant_id", "is_active"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("tenants.id"), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(precision=6, scale=3), nullable=False)
    fixed_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False, comment="Audit reason for the exception")
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class GatewayCredential(Base):
    """Encrypted per-tenant, per-provider secret bundle.

    ``encrypted_credentials`` holds ``iv:authTag:ciphertext``; plaintext is
    never stored, logged or returned.
    """

    __tablename__ = "gateway_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "gateway_type", name="uq_gateway_credentials_tenant_gateway"),
        Index("idx_gateway_credentials_tenant", "tenant_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("tenants.id"), nullable=False)
    gateway_type: Mapped[str] = mapped_column(String(50), nullable=False)
    encrypted_credentials: Mapped[str] = mapped_column(Text, nullable=False)
    test_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    verification_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unverified",
        server_default=text("'unverified'"),
    )
    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
