"""Tests for authorize, capture and charge flows."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from commerce_api.modules.payments.errors import GatewayErrorCode
from commerce_api.modules.payments.fees import FeeCalculator
from commerce_api.modules.payments.models import Payment
from commerce_api.modules.payments.providers.base import AuthorizationResult, PaymentResult
from commerce_api.modules.payments.schemas import FeeSource, PaymentStatus
from commerce_api.modules.payments.service import PaymentService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CARD = {"type": "card", "token": "tok_visa"}


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def service(session_factory, gateway_factory, settings, clock):
    fees = FeeCalculator(session_factory, default_tier="starter", clock=clock)
    return PaymentService(session_factory, gateway_factory, fees, settings=settings, clock=clock)


@pytest.fixture
def tenant(make_tenant, store_credentials):
    async def _make(**overrides):
        tenant = await make_tenant(**overrides)
        await store_credentials(tenant.id)
        return tenant

    return _make


async def _load(session_factory, payment_id):
    async with session_factory() as session:
        return await session.get(Payment, payment_id)


class TestAuthorizeAndCapture:
    @pytest.mark.asyncio
    async def test_authorize_holds_funds(self, service, tenant, session_factory, settings):
        shop = await tenant()
        order_id = uuid4()

        response = await service.authorize_payment(shop.id, order_id, 10000, "usd", "stripe", CARD)

        assert response.success is True
        assert response.status == PaymentStatus.AUTHORIZED
        assert response.fees.source == FeeSource.TIER
        payment = await _load(session_factory, response.payment_id)
        assert payment.payment_status == "authorized"
        assert payment.currency == "USD"
        assert payment.gateway_authorization_id == "auth_fake_1"
        assert payment.gateway_transaction_id is None
        expected_expiry = NOW + timedelta(days=settings.AUTHORIZATION_TTL_DAYS)
        assert payment.authorization_expires_at.replace(tzinfo=timezone.utc) == expected_expiry

    @pytest.mark.asyncio
    async def test_provider_expiry_wins_when_earlier(self, service, tenant, fake_gateway, session_factory):
        shop = await tenant()
        provider_expiry = NOW + timedelta(days=2)
        fake_gateway.authorize_outcome = AuthorizationResult(
            success=True,
            reference="auth_short",
            amount_cents=10000,
            expires_at=provider_expiry,
        )

        response = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)

        payment = await _load(session_factory, response.payment_id)
        assert payment.authorization_expires_at.replace(tzinfo=timezone.utc) == provider_expiry

    @pytest.mark.asyncio
    async def test_declined_authorization_is_recorded(self, service, tenant, fake_gateway, session_factory):
        shop = await tenant()
        fake_gateway.authorize_outcome = AuthorizationResult.failure(
            GatewayErrorCode.CARD_DECLINED, "Your card has insufficient funds."
        )

        response = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)

        assert response.success is False
        assert response.status == PaymentStatus.FAILED
        assert response.error == "card_declined"
        payment = await _load(session_factory, response.payment_id)
        assert payment.payment_status == "failed"
        assert payment.error_message == "Your card has insufficient funds."

    @pytest.mark.asyncio
    async def test_capture_marks_paid_with_fees(self, service, tenant, session_factory):
        shop = await tenant()
        authorized = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)

        response = await service.capture_payment(authorized.payment_id, shop.id)

        assert response.success is True
        assert response.status == PaymentStatus.PAID
        payment = await _load(session_factory, authorized.payment_id)
        assert payment.payment_status == "paid"
        assert payment.gateway_transaction_id == "txn_fake_1"
        assert payment.platform_fee_cents == response.fees.platform_fee_cents
        assert payment.net_amount_cents == 10000 - response.fees.total_fees_cents
        assert payment.captured_at is not None

    @pytest.mark.asyncio
    async def test_partial_capture(self, service, tenant, session_factory):
        shop = await tenant()
        authorized = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)

        response = await service.capture_payment(authorized.payment_id, shop.id, amount_cents=6000)

        assert response.success is True
        assert response.fees.amount_cents == 6000
        assert (await _load(session_factory, authorized.payment_id)).amount_cents == 6000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 10001])
    async def test_capture_rejects_bad_amount(self, service, tenant, amount):
        shop = await tenant()
        authorized = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)

        response = await service.capture_payment(authorized.payment_id, shop.id, amount_cents=amount)

        assert response.success is False
        assert response.error == "invalid_amount"

    @pytest.mark.asyncio
    async def test_expired_authorization_cannot_be_captured(self, service, tenant, clock, settings):
        shop = await tenant()
        authorized = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)
        clock.now = NOW + timedelta(days=settings.AUTHORIZATION_TTL_DAYS, seconds=1)

        response = await service.capture_payment(authorized.payment_id, shop.id)

        assert response.success is False
        assert response.error == "authorization_expired"

    @pytest.mark.asyncio
    async def test_capture_twice_rejected(self, service, tenant):
        shop = await tenant()
        authorized = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)
        await service.capture_payment(authorized.payment_id, shop.id)

        response = await service.capture_payment(authorized.payment_id, shop.id)

        assert response.success is False
        assert response.error == "payment_not_authorized"
        assert response.status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_capture_other_tenants_payment(self, service, tenant, make_tenant):
        shop = await tenant()
        other = await make_tenant(name="Other")
        authorized = await service.authorize_payment(shop.id, uuid4(), 10000, "USD", "stripe", CARD)

        response = await service.capture_payment(authorized.payment_id, other.id)

        assert response.error == "payment_not_found"


class TestCharge:
    @pytest.mark.asyncio
    async def test_charge_pays_in_one_step(self, service, tenant, session_factory):
        shop = await tenant(platform_fee_waived=True)

        response = await service.charge_payment(shop.id, uuid4(), 2500, "EUR", "stripe", CARD)

        assert response.success is True
        assert response.status == PaymentStatus.PAID
        assert response.fees.fee_waived is True
        payment = await _load(session_factory, response.payment_id)
        assert payment.payment_status == "paid"
        assert payment.gateway_transaction_id == "txn_fake_2"
        assert payment.platform_fee_cents == 0

    @pytest.mark.asyncio
    async def test_failed_charge_persisted(self, service, tenant, fake_gateway, session_factory):
        shop = await tenant()
        fake_gateway.charge_outcome = PaymentResult.failure(GatewayErrorCode.NETWORK_ERROR, "connection reset")

        response = await service.charge_payment(shop.id, uuid4(), 2500, "USD", "stripe", CARD)

        assert response.success is False
        assert response.error == "network_error"
        async with session_factory() as session:
            rows = (await session.execute(select(Payment).where(Payment.tenant_id == shop.id))).scalars().all()
        assert [row.payment_status for row in rows] == ["failed"]

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, service, make_tenant, session_factory):
        shop = await make_tenant()

        response = await service.charge_payment(shop.id, uuid4(), 2500, "USD", "stripe", CARD)

        assert response.success is False
        assert response.error == "gateway_not_configured"
        assert response.payment_id is None

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, service, tenant):
        shop = await tenant()

        response = await service.charge_payment(shop.id, uuid4(), 2500, "USD", "venmo", CARD)

        assert response.error == "unsupported_gateway"


class TestLookups:
    @pytest.mark.asyncio
    async def test_get_payment_is_tenant_scoped(self, service, tenant, make_tenant):
        shop = await tenant()
        other = await make_tenant(name="Other")
        charged = await service.charge_payment(shop.id, uuid4(), 2500, "USD", "stripe", CARD)

        record = await service.get_payment(charged.payment_id, shop.id)

        assert record.payment_status == PaymentStatus.PAID
        assert await service.get_payment(charged.payment_id, other.id) is None

    @pytest.mark.asyncio
    async def test_get_order_payments(self, service, tenant, fake_gateway):
        shop = await tenant()
        order_id = uuid4()
        fake_gateway.charge_outcome = PaymentResult.failure(GatewayErrorCode.CARD_DECLINED, "declined")
        await service.charge_payment(shop.id, order_id, 2500, "USD", "stripe", CARD)
        fake_gateway.charge_outcome = None
        await service.charge_payment(shop.id, order_id, 2500, "USD", "stripe", CARD)

        payments = await service.get_order_payments(order_id, shop.id)

        assert sorted(p.payment_status.value for p in payments) == ["failed", "paid"]
