"""Payment service layer with business logic."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...common.context import log_context
from ...core.config import Settings, get_settings
from .errors import NoCredentialsError, PaymentNotFound, UnsupportedGatewayError
from .factory import PaymentGatewayFactory
from .fees import FeeCalculator, as_utc
from .models import Payment
from .providers import AuthorizationResult, BasePaymentProvider, PaymentResult
from .schemas import FeeBreakdown, PaymentOperationResponse, PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentService:
    """Authorize, capture and charge payments for tenant orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway_factory: PaymentGatewayFactory,
        fee_calculator: FeeCalculator,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize payment service.

        Args:
            session_factory: Async session factory
            gateway_factory: Resolves tenant providers
            fee_calculator: Computes platform fees
            settings: Process settings (authorization TTL)
            clock: Returns the current UTC time
        """
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.fee_calculator = fee_calculator
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # === Payment operations ===

    async def authorize_payment(
        self,
        tenant_id: UUID,
        order_id: UUID,
        amount_cents: int,
        currency: str,
        gateway_type: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> PaymentOperationResponse:
        """Hold funds for an order without capturing them.

        A declined or failed authorization is persisted as a ``failed``
        payment so that the attempt is auditable.
        """
        with log_context(tenant_id=tenant_id):
            provider_or_error = await self._resolve_provider(tenant_id, gateway_type)
            if isinstance(provider_or_error, PaymentOperationResponse):
                return provider_or_error
            provider = provider_or_error

            result = await provider.authorize(
                amount_cents,
                currency,
                payment_method,
                self._metadata(tenant_id, order_id, metadata),
            )

            if not result.success:
                payment = await self._record_failure(tenant_id, order_id, amount_cents, currency, gateway_type, result)
                return PaymentOperationResponse(
                    success=False,
                    payment_id=payment.id,
                    status=PaymentStatus.FAILED,
                    error=result.error_code or "authorization_failed",
                    message="Payment authorization failed",
                )

            fees = await self.fee_calculator.calculate_fees(
                tenant_id,
                amount_cents,
                provider.calculate_gateway_fee(amount_cents),
            )
            now = self._clock()
            expires_at = now + timedelta(days=self.settings.AUTHORIZATION_TTL_DAYS)
            if result.expires_at is not None:
                expires_at = min(expires_at, result.expires_at)

            payment = Payment(
                tenant_id=tenant_id,
                order_id=order_id,
                gateway_type=gateway_type,
                amount_cents=amount_cents,
                currency=currency.upper(),
                payment_status=PaymentStatus.AUTHORIZED.value,
                gateway_authorization_id=result.authorization_id,
                gateway_response=result.gateway_response,
                authorized_at=now,
                authorization_expires_at=expires_at,
            )
            self._apply_fees(payment, fees)
            await self._save(payment)

            logger.info("Authorized %s %s via %s", amount_cents, currency, gateway_type)
            return PaymentOperationResponse(
                success=True,
                payment_id=payment.id,
                status=PaymentStatus.AUTHORIZED,
                message="Payment authorized",
                fees=fees,
            )

    async def capture_payment(
        self,
        payment_id: UUID,
        tenant_id: UUID,
        amount_cents: int | None = None,
    ) -> PaymentOperationResponse:
        """Capture an authorized payment, fully or for a smaller amount."""
        with log_context(tenant_id=tenant_id):
            async with self.session_factory() as session:
                payment = await session.get(Payment, payment_id)

            if payment is None or payment.tenant_id != tenant_id:
                return self._rejected(PaymentNotFound())
            if payment.payment_status != PaymentStatus.AUTHORIZED.value:
                return PaymentOperationResponse(
                    success=False,
                    payment_id=payment.id,
                    status=PaymentStatus(payment.payment_status),
                    error="payment_not_authorized",
                    message="Payment is not awaiting capture",
                )

            expires_at = as_utc(payment.authorization_expires_at)
            if expires_at is not None and self._clock() > expires_at:
                return PaymentOperationResponse(
                    success=False,
                    payment_id=payment.id,
                    status=PaymentStatus.AUTHORIZED,
                    error="authorization_expired",
                    message="Payment authorization has expired",
                )

            capture_amount = amount_cents if amount_cents is not None else payment.amount_cents
            if capture_amount <= 0 or capture_amount > payment.amount_cents:
                return PaymentOperationResponse(
                    success=False,
                    payment_id=payment.id,
                    status=PaymentStatus.AUTHORIZED,
                    error="invalid_amount",
                    message="Capture amount must be positive and not exceed the authorized amount",
                )

            provider_or_error = await self._resolve_provider(tenant_id, payment.gateway_type)
            if isinstance(provider_or_error, PaymentOperationResponse):
                return provider_or_error

            result = await provider_or_error.capture(payment.gateway_authorization_id, capture_amount)
            if not result.success:
                await self._update(payment.id, error_message=result.error_message)
                logger.warning("Capture of payment %s failed: %s", payment.id, result.error_code)
                return PaymentOperationResponse(
                    success=False,
                    payment_id=payment.id,
                    status=PaymentStatus.AUTHORIZED,
                    error=result.error_code or "capture_failed",
                    message="Payment capture failed",
                )

            fees = await self.fee_calculator.calculate_fees(
                tenant_id,
                capture_amount,
                result.gateway_fee_cents or provider_or_error.calculate_gateway_fee(capture_amount),
            )
            fields = {
                "payment_status": PaymentStatus.PAID.value,
                "amount_cents": capture_amount,
                "gateway_transaction_id": result.transaction_id,
                "gateway_response": result.gateway_response,
                "captured_at": self._clock(),
                "error_message": None,
            }
            fields.update(self._fee_fields(fees))
            await self._update(payment.id, **fields)

            logger.info("Captured payment %s for %s", payment.id, capture_amount)
            return PaymentOperationResponse(
                success=True,
                payment_id=payment.id,
                status=PaymentStatus.PAID,
                message="Payment captured",
                fees=fees,
            )

    async def charge_payment(
        self,
        tenant_id: UUID,
        order_id: UUID,
        amount_cents: int,
        currency: str,
        gateway_type: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> PaymentOperationResponse:
        """Authorize and capture in one step."""
        with log_context(tenant_id=tenant_id):
            provider_or_error = await self._resolve_provider(tenant_id, gateway_type)
            if isinstance(provider_or_error, PaymentOperationResponse):
                return provider_or_error
            provider = provider_or_error

            result = await provider.charge(
                amount_cents,
                currency,
                payment_method,
                self._metadata(tenant_id, order_id, metadata),
            )

            if not result.success:
                payment = await self._record_failure(tenant_id, order_id, amount_cents, currency, gateway_type, result)
                return PaymentOperationResponse(
                    success=False,
                    payment_id=payment.id,
                    status=PaymentStatus.FAILED,
                    error=result.error_code or "charge_failed",
                    message="Payment charge failed",
                )

            fees = await self.fee_calculator.calculate_fees(
                tenant_id,
                amount_cents,
                result.gateway_fee_cents or provider.calculate_gateway_fee(amount_cents),
            )
            now = self._clock()
            payment = Payment(
                tenant_id=tenant_id,
                order_id=order_id,
                gateway_type=gateway_type,
                amount_cents=amount_cents,
                currency=currency.upper(),
                payment_status=PaymentStatus.PAID.value,
                gateway_transaction_id=result.transaction_id,
                gateway_response=result.gateway_response,
                authorized_at=now,
                captured_at=now,
            )
            self._apply_fees(payment, fees)
            await self._save(payment)

            logger.info("Charged %s %s via %s", amount_cents, currency, gateway_type)
            return PaymentOperationResponse(
                success=True,
                payment_id=payment.id,
                status=PaymentStatus.PAID,
                message="Payment charged",
                fees=fees,
            )

    # === Lookups ===

    async def get_payment(self, payment_id: UUID, tenant_id: UUID) -> PaymentRecord | None:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
        if payment is None or payment.tenant_id != tenant_id:
            return None
        return PaymentRecord.model_validate(payment)

    async def get_order_payments(self, order_id: UUID, tenant_id: UUID) -> list[PaymentRecord]:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id, Payment.tenant_id == tenant_id)
            .order_by(Payment.created_at.desc())
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [PaymentRecord.model_validate(row) for row in rows]

    # === Helper Methods ===

    async def _resolve_provider(
        self,
        tenant_id: UUID,
        gateway_type: str,
    ) -> BasePaymentProvider | PaymentOperationResponse:
        try:
            return await self.gateway_factory.create_from_tenant(tenant_id, gateway_type)
        except (NoCredentialsError, UnsupportedGatewayError) as e:
            logger.info("Cannot use gateway %s: %s", gateway_type, e.code)
            return self._rejected(e)

    @staticmethod
    def _rejected(error: NoCredentialsError | UnsupportedGatewayError | PaymentNotFound) -> PaymentOperationResponse:
        return PaymentOperationResponse(success=False, error=error.code, message=error.message)

    @staticmethod
    def _metadata(tenant_id: UUID, order_id: UUID, extra: dict[str, Any] | None) -> dict[str, Any]:
        metadata = {"order_id": str(order_id), "tenant_id": str(tenant_id)}
        metadata.update(extra or {})
        return metadata

    async def _record_failure(
        self,
        tenant_id: UUID,
        order_id: UUID,
        amount_cents: int,
        currency: str,
        gateway_type: str,
        result: AuthorizationResult | PaymentResult,
    ) -> Payment:
        payment = Payment(
            tenant_id=tenant_id,
            order_id=order_id,
            gateway_type=gateway_type,
            amount_cents=amount_cents,
            currency=currency.upper(),
            payment_status=PaymentStatus.FAILED.value,
            gateway_response=result.gateway_response,
            error_message=result.error_message,
        )
        await self._save(payment)
        logger.warning("Payment %s via %s failed: %s", payment.id, gateway_type, result.error_code)
        return payment

    @staticmethod
    def _fee_fields(fees: FeeBreakdown) -> dict[str, Any]:
        return {
            "gateway_fee_cents": fees.gateway_fee_cents,
            "platform_fee_cents": fees.platform_fee_cents,
            "platform_fee_percentage": fees.platform_fee_percentage,
            "platform_fee_fixed_cents": fees.platform_fee_fixed_cents,
            "total_fees_cents": fees.total_fees_cents,
            "net_amount_cents": fees.net_amount_cents,
            "fee_waived": fees.fee_waived,
            "fee_reason": fees.reason,
        }

    def _apply_fees(self, payment: Payment, fees: FeeBreakdown) -> None:
        for name, value in self._fee_fields(fees).items():
            setattr(payment, name, value)

    async def _save(self, payment: Payment) -> None:
        async with self.session_factory() as session:
            session.add(payment)
            await session.commit()

    async def _update(self, payment_id: UUID, **fields: Any) -> None:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            for name, value in fields.items():
                setattr(payment, name, value)
            await session.commit()
