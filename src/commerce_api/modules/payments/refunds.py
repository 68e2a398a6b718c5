"""Refund orchestration.

``process_refund`` refunds a paid payment in full, at most once:

1. the per-tenant rate limit is checked before any database access,
2. the payment is loaded and must belong to the tenant and be ``paid``,
3. an existing pending, processing or completed refund rejects the request
   (the partial unique index on ``refunds.payment_id`` closes the race
   between concurrent requests that both pass this check),
4. the tenant's provider is resolved,
5. a ``pending`` refund row is inserted, then moved to ``processing``,
6. the provider is asked to refund once; no automatic retry,
7. the outcome is persisted as ``completed`` or ``failed``; a provider that
   raises instead of answering counts as ``failed``. A refund the provider
   accepted but has not settled stays ``processing`` until
   :meth:`RefundOrchestrator.reconcile_refund` resolves it.

Each step uses its own short transaction; no transaction is held open across
the provider call.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...common.context import log_context
from ...core.config import Settings, get_settings
from .errors import (
    AlreadyRefunded,
    GatewayErrorCode,
    InvalidRefundTransition,
    NoCredentialsError,
    PaymentNotFound,
    PaymentNotPaid,
    PaymentsError,
    RateLimitExceeded,
    UnsupportedGatewayError,
    ValidationError,
)
from .factory import PaymentGatewayFactory
from .models import ACTIVE_REFUND_STATUS_VALUES, Payment, Refund
from .providers.base import RefundResult
from .schemas import HealthStatus, PaymentStatus, RefundRecord, RefundResponse, RefundStats, RefundStatus
from .tracking import RefundOperation, RefundOperationTracker, RefundRateLimiter

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[RefundStatus, set[RefundStatus]] = {
    RefundStatus.PENDING: {RefundStatus.PROCESSING, RefundStatus.FAILED},
    RefundStatus.PROCESSING: {RefundStatus.PROCESSING, RefundStatus.COMPLETED, RefundStatus.FAILED},
}

_GATEWAY_FAILURE_MESSAGE = "Refund could not be processed by the payment gateway"


class RefundOrchestrator:
    """Coordinates validation, idempotency, provider calls and persistence."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway_factory: PaymentGatewayFactory,
        rate_limiter: RefundRateLimiter | None = None,
        tracker: RefundOperationTracker | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.rate_limiter = rate_limiter or RefundRateLimiter(
            max_requests=self.settings.REFUND_RATE_LIMIT_MAX_REQUESTS,
            window_seconds=self.settings.REFUND_RATE_LIMIT_WINDOW_SECONDS,
            max_tenants=self.settings.REFUND_RATE_LIMIT_MAX_TENANTS,
        )
        self.tracker = tracker or RefundOperationTracker(max_history=self.settings.REFUND_HISTORY_SIZE)

    # === Refund processing ===

    async def process_refund(
        self,
        order_id: UUID,
        payment_id: UUID,
        tenant_id: UUID,
        reason: str | None = None,
        initiated_by: str | None = None,
    ) -> RefundResponse:
        """Refund a paid payment in full.

        Validation failures, rate limiting and provider failures (including
        unexpected provider exceptions) are reported in the returned response.
        ``DecryptionError`` propagates.
        """
        with log_context(tenant_id=tenant_id):
            if not self.rate_limiter.allow(str(tenant_id)):
                logger.warning("Refund rate limit exceeded")
                return self._rejected(RateLimitExceeded())

            try:
                payment = await self._load_refundable_payment(order_id, payment_id, tenant_id)
                existing = await self._find_active_refund(payment.id)
                if existing is not None:
                    raise AlreadyRefunded(refund_id=existing.id)
                provider = await self.gateway_factory.create_from_tenant(tenant_id, payment.gateway_type)
                refund = await self._insert_pending(payment, reason, initiated_by)
            except (ValidationError, NoCredentialsError, UnsupportedGatewayError) as e:
                logger.info("Refund for payment %s rejected: %s", payment_id, e.code)
                return self._rejected(e)

            operation = RefundOperation(
                id=refund.id,
                tenant_id=str(tenant_id),
                order_id=str(order_id),
                payment_id=str(payment_id),
                gateway_type=payment.gateway_type,
                amount_cents=payment.amount_cents,
            )
            self.tracker.track(operation)

            with log_context(operation_id=str(refund.id)):
                return await self._execute_refund(refund, payment, provider, operation, reason)

    async def _execute_refund(
        self,
        refund: Refund,
        payment: Payment,
        provider: Any,
        operation: RefundOperation,
        reason: str | None,
    ) -> RefundResponse:
        if not payment.gateway_transaction_id:
            error = "Payment has no gateway transaction id"
            await self._transition(refund.id, RefundStatus.FAILED, error_message=error)
            operation.finish(RefundStatus.FAILED, error=error)
            logger.error("Refund %s failed before reaching the gateway: %s", refund.id, error)
            return RefundResponse(
                success=False,
                refund_id=refund.id,
                status=RefundStatus.FAILED,
                error="refund_failed",
                message=_GATEWAY_FAILURE_MESSAGE,
            )

        await self._transition(refund.id, RefundStatus.PROCESSING, processed_at=_now())
        operation.status = RefundStatus.PROCESSING

        logger.info(
            "Refunding %s %s via %s",
            payment.amount_cents,
            payment.currency,
            payment.gateway_type,
        )
        try:
            result = await provider.refund(
                payment.gateway_transaction_id,
                payment.amount_cents,
                reason,
                payment.currency,
            )
        except Exception as e:
            logger.exception("Provider raised during refund %s", refund.id)
            result = RefundResult.failure(
                GatewayErrorCode.PROVIDER_ERROR,
                f"Unexpected {payment.gateway_type} refund error: {type(e).__name__}",
            )

        if not result.success:
            await self._transition(
                refund.id,
                RefundStatus.FAILED,
                error_message=result.error_message,
                gateway_response=result.gateway_response,
            )
            operation.finish(RefundStatus.FAILED, error=result.error_message)
            logger.warning("Refund %s failed at gateway: %s", refund.id, result.error_code)
            return RefundResponse(
                success=False,
                refund_id=refund.id,
                status=RefundStatus.FAILED,
                error=result.error_code or "refund_failed",
                message=_GATEWAY_FAILURE_MESSAGE,
            )

        if result.status == "completed":
            status, message = RefundStatus.COMPLETED, "Refund processed successfully"
            extra: dict[str, Any] = {"completed_at": _now()}
        else:
            status, message = RefundStatus.PROCESSING, "Refund accepted and awaiting settlement"
            extra = {}

        await self._transition(
            refund.id,
            status,
            gateway_refund_id=result.refund_id,
            gateway_response=result.gateway_response,
            **extra,
        )
        operation.finish(status, gateway_refund_id=result.refund_id)
        logger.info("Refund %s %s (gateway ref %s)", refund.id, status.value, result.refund_id)

        return RefundResponse(
            success=True,
            refund_id=refund.id,
            gateway_refund_id=result.refund_id,
            status=status,
            message=message,
        )

    async def _load_refundable_payment(self, order_id: UUID, payment_id: UUID, tenant_id: UUID) -> Payment:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)

        # Another tenant's payment is indistinguishable from a missing one
        if payment is None or payment.tenant_id != tenant_id or payment.order_id != order_id:
            raise PaymentNotFound()
        if payment.payment_status != PaymentStatus.PAID.value:
            raise PaymentNotPaid()
        return payment

    async def _find_active_refund(self, payment_id: UUID) -> Refund | None:
        async with self.session_factory() as session:
            stmt = (
                select(Refund)
                .where(
                    Refund.payment_id == payment_id,
                    Refund.refund_status.in_(ACTIVE_REFUND_STATUS_VALUES),
                )
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def _insert_pending(self, payment: Payment, reason: str | None, initiated_by: str | None) -> Refund:
        refund = Refund(
            payment_id=payment.id,
            order_id=payment.order_id,
            tenant_id=payment.tenant_id,
            amount_cents=payment.amount_cents,
            refund_status=RefundStatus.PENDING.value,
            refund_reason=reason,
            gateway_type=payment.gateway_type,
            gateway_response={},
            initiated_by=initiated_by or "system",
        )
        async with self.session_factory() as session:
            session.add(refund)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_active_refund(payment.id)
                logger.info("Concurrent refund for payment %s lost the insert race", payment.id)
                raise AlreadyRefunded(refund_id=existing.id if existing else None) from None
        return refund

    async def _transition(self, refund_id: UUID, new_status: RefundStatus, **fields: Any) -> Refund:
        """Move a refund to ``new_status`` and update the given columns.

        Raises:
            InvalidRefundTransition: If the refund is already terminal or the
                move is not part of the lifecycle
        """
        async with self.session_factory() as session:
            refund = await session.get(Refund, refund_id)
            if refund is None:
                raise PaymentsError(f"Refund {refund_id} disappeared")

            current = RefundStatus(refund.refund_status)
            if new_status not in _TRANSITIONS.get(current, set()):
                raise InvalidRefundTransition(
                    f"Refund {refund_id} cannot move from {current.value} to {new_status.value}"
                )

            refund.refund_status = new_status.value
            for name, value in fields.items():
                setattr(refund, name, value)
            await session.commit()
            return refund

    @staticmethod
    def _rejected(error: PaymentsError) -> RefundResponse:
        refund_id = error.refund_id if isinstance(error, AlreadyRefunded) else None
        return RefundResponse(
            success=False,
            refund_id=refund_id,
            status=RefundStatus.FAILED,
            error=error.code,
            message=error.message,
        )

    # === Lookups ===

    async def get_refund(self, refund_id: UUID, tenant_id: UUID | None = None) -> RefundRecord | None:
        async with self.session_factory() as session:
            refund = await session.get(Refund, refund_id)
        if refund is None or (tenant_id is not None and refund.tenant_id != tenant_id):
            return None
        return RefundRecord.model_validate(refund)

    async def get_tenant_refunds(
        self,
        tenant_id: UUID,
        status: RefundStatus | None = None,
        limit: int = 50,
    ) -> list[RefundRecord]:
        stmt = select(Refund).where(Refund.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Refund.refund_status == status.value)
        stmt = stmt.order_by(Refund.created_at.desc()).limit(limit)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [RefundRecord.model_validate(row) for row in rows]

    async def get_order_refunds(self, order_id: UUID, tenant_id: UUID) -> list[RefundRecord]:
        stmt = (
            select(Refund)
            .where(Refund.order_id == order_id, Refund.tenant_id == tenant_id)
            .order_by(Refund.created_at.desc())
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [RefundRecord.model_validate(row) for row in rows]

    async def reconcile_refund(self, refund_id: UUID) -> RefundRecord | None:
        """Resolve a ``processing`` refund by asking the provider for its status.

        Terminal refunds are returned unchanged. A refund with no provider
        reference (the provider call never returned) needs an operator.
        """
        async with self.session_factory() as session:
            refund = await session.get(Refund, refund_id)
        if refund is None:
            return None

        status = RefundStatus(refund.refund_status)
        if status is not RefundStatus.PROCESSING or not refund.gateway_refund_id:
            return RefundRecord.model_validate(refund)

        with log_context(tenant_id=refund.tenant_id, operation_id=str(refund.id)):
            provider = await self.gateway_factory.create_from_tenant(refund.tenant_id, refund.gateway_type)
            result = await provider.get_status(refund.gateway_refund_id)

            if not result.success:
                logger.warning("Could not reconcile refund %s: %s", refund.id, result.error_code)
                return RefundRecord.model_validate(refund)

            if result.status == "completed":
                refund = await self._transition(
                    refund.id,
                    RefundStatus.COMPLETED,
                    completed_at=_now(),
                    gateway_response=result.gateway_response,
                )
                self._finish_tracked(refund.id, RefundStatus.COMPLETED)
            elif result.status == "failed":
                refund = await self._transition(
                    refund.id,
                    RefundStatus.FAILED,
                    error_message="Refund failed at gateway after acceptance",
                    gateway_response=result.gateway_response,
                )
                self._finish_tracked(refund.id, RefundStatus.FAILED)
            logger.info("Reconciled refund %s: %s", refund.id, refund.refund_status)

        return RefundRecord.model_validate(refund)

    def _finish_tracked(self, refund_id: UUID, status: RefundStatus) -> None:
        operation = self.tracker.get(refund_id)
        if operation is not None:
            operation.finish(status)

    # === Observability ===

    def get_refund_stats(self, tenant_id: UUID | None = None) -> RefundStats:
        """Process-local statistics over recently tracked refunds."""
        return self.tracker.stats(str(tenant_id) if tenant_id is not None else None)

    async def get_health_status(self) -> HealthStatus:
        operation_count = len(self.tracker)
        rate_limit_size = len(self.rate_limiter)
        services: dict[str, Any] = {
            "database": "connected",
            "payment_gateways": self.gateway_factory.available_gateways(),
            "tracking": "active" if operation_count else "idle",
            "rate_limit": "active" if rate_limit_size else "idle",
        }
        status = "healthy"

        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Refund health check could not reach the database")
            services["database"] = "unavailable"
            status = "unhealthy"

        if status == "healthy" and operation_count > self.settings.REFUND_DEGRADED_THRESHOLD:
            status = "degraded"
            services["tracking"] = "busy"

        return HealthStatus(
            status=status,
            services=services,
            operation_count=operation_count,
            rate_limit_size=rate_limit_size,
            last_check=_now(),
        )

    def clear_cache(self) -> None:
        """Reset in-process tracking and rate-limit state."""
        self.tracker.clear()
        self.rate_limiter.clear()
        logger.info("Refund tracking and rate limit state cleared")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_refund_orchestrator(settings: Settings | None = None) -> RefundOrchestrator:
    """Wire an orchestrator from process settings and the shared engine."""
    from ...core.db import get_session_factory
    from .utils.encryption import get_vault

    settings = settings or get_settings()
    session_factory = get_session_factory()
    gateway_factory = PaymentGatewayFactory(
        session_factory,
        get_vault(settings),
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    return RefundOrchestrator(session_factory, gateway_factory, settings=settings)
