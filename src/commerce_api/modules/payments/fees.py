"""Platform fee calculation.

The platform fee for a transaction comes from exactly one source, checked in
priority order:

1. an active tenant fee override (``is_active`` and
   ``starts_at <= now < expires_at``, open-ended without ``expires_at``),
2. an unexpired tenant fee waiver (fee is zero),
3. the tenant's subscription tier default.

All arithmetic is done on integer minor units with ``Decimal`` percentages and
half-up rounding, so ``1999`` at ``1.5%`` is ``30``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import FeeOverride, FeeTier, Tenant
from .schemas import FeeBreakdown, FeeSource
from .utils.money import percentage_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierFee:
    percentage: Decimal
    fixed_fee_cents: int = 0


# Used when the fee_tiers table has no row for the tenant's tier nor for the
# configured default tier.
DEFAULT_FEE_TIERS: dict[str, TierFee] = {
    "starter": TierFee(Decimal("3.0")),
    "professional": TierFee(Decimal("2.5")),
    "enterprise": TierFee(Decimal("2.0")),
}


def compute_platform_fee(amount_cents: int, percentage: Decimal, fixed_fee_cents: int = 0) -> int:
    """Return ``round_half_up(amount * percentage / 100) + fixed``."""
    return percentage_of(amount_cents, percentage) + fixed_fee_cents


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class FeeCalculator:
    """Computes fee breakdowns from tenant overrides, waivers and tiers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_tier: str = "starter",
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.default_tier = default_tier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def calculate_fees(
        self,
        tenant_id: UUID,
        amount_cents: int,
        gateway_fee_cents: int = 0,
    ) -> FeeBreakdown:
        """Itemize gateway and platform fees for one transaction.

        Args:
            tenant_id: Tenant receiving the funds
            amount_cents: Transaction amount in minor units
            gateway_fee_cents: Provider processing fee already computed

        Returns:
            FeeBreakdown with totals and the rule that produced the fee
        """
        now = self._clock()

        async with self.session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            override = await self._active_override(session, tenant_id, now)

            if override is not None:
                return self._breakdown(
                    amount_cents,
                    gateway_fee_cents,
                    Decimal(override.percentage),
                    override.fixed_fee_cents,
                    source=FeeSource.OVERRIDE,
                    reason=override.reason,
                )

            if tenant is not None and self._waiver_active(tenant, now):
                return self._breakdown(
                    amount_cents,
                    gateway_fee_cents,
                    Decimal("0"),
                    0,
                    source=FeeSource.WAIVER,
                    reason=tenant.platform_fee_waived_reason,
                    fee_waived=True,
                )

            tier_name = tenant.subscription_tier if tenant is not None else self.default_tier
            tier_name, tier = await self._resolve_tier(session, tier_name)

        return self._breakdown(
            amount_cents,
            gateway_fee_cents,
            tier.percentage,
            tier.fixed_fee_cents,
            source=FeeSource.TIER,
            tier_name=tier_name,
        )

    async def _active_override(
        self,
        session: AsyncSession,
        tenant_id: UUID,
        now: datetime,
    ) -> FeeOverride | None:
        stmt = (
            select(FeeOverride)
            .where(
                FeeOverride.tenant_id == tenant_id,
                FeeOverride.is_active.is_(True),
                FeeOverride.starts_at <= now,
                or_(FeeOverride.expires_at.is_(None), FeeOverride.expires_at > now),
            )
            .order_by(FeeOverride.starts_at.desc(), FeeOverride.created_at.desc())
            .limit(1)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _waiver_active(tenant: Tenant, now: datetime) -> bool:
        if not tenant.platform_fee_waived:
            return False
        until = as_utc(tenant.platform_fee_waived_until)
        return until is None or until > now

    async def _resolve_tier(self, session: AsyncSession, tier_name: str) -> tuple[str, TierFee]:
        row = await session.get(FeeTier, tier_name)
        if row is None and tier_name != self.default_tier:
            logger.warning("Unknown fee tier %r; using default tier %r", tier_name, self.default_tier)
            tier_name = self.default_tier
            row = await session.get(FeeTier, tier_name)

        if row is not None:
            return tier_name, TierFee(Decimal(row.percentage), row.fixed_fee_cents)

        fallback = DEFAULT_FEE_TIERS.get(tier_name) or DEFAULT_FEE_TIERS["starter"]
        return tier_name, fallback

    @staticmethod
    def _breakdown(
        amount_cents: int,
        gateway_fee_cents: int,
        percentage: Decimal,
        fixed_fee_cents: int,
        source: FeeSource,
        reason: str | None = None,
        tier_name: str | None = None,
        fee_waived: bool = False,
    ) -> FeeBreakdown:
        platform_fee_cents = 0 if fee_waived else compute_platform_fee(amount_cents, percentage, fixed_fee_cents)
        total_fees_cents = gateway_fee_cents + platform_fee_cents
        return FeeBreakdown(
            amount_cents=amount_cents,
            gateway_fee_cents=gateway_fee_cents,
            platform_fee_cents=platform_fee_cents,
            platform_fee_percentage=percentage,
            platform_fee_fixed_cents=fixed_fee_cents,
            total_fees_cents=total_fees_cents,
            net_amount_cents=amount_cents - total_fees_cents,
            fee_waived=fee_waived,
            reason=reason,
            source=source,
            tier_name=tier_name,
        )
