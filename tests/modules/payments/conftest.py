"""Shared fixtures for payment tests."""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from commerce_api.core.config import Settings
from commerce_api.core.db_base import Base
from commerce_api.modules.payments.factory import PaymentGatewayFactory
from commerce_api.modules.payments.models import GatewayCredential, Payment, Tenant
from commerce_api.modules.payments.providers.base import (
    AuthorizationResult,
    BasePaymentProvider,
    PaymentResult,
    RefundResult,
    StatusResult,
)
from commerce_api.modules.payments.utils.encryption import CredentialVault

TEST_KEY = "0f" * 32


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so that every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/payments.sqlite")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def settings():
    return Settings(_env_file=None, PAYMENT_ENCRYPTION_KEY=TEST_KEY, GATEWAY_TIMEOUT_SECONDS=0.5)


@pytest.fixture
def vault():
    return CredentialVault(TEST_KEY)


@pytest.fixture
def fake_gateway():
    """A provider class whose behaviour each test can steer.

    A fresh class per test keeps call logs and outcomes isolated.
    """

    class FakeGateway(BasePaymentProvider):
        refund_calls: list = []
        refund_outcome = RefundResult(success=True, reference="re_fake_1", status="completed")
        refund_delay = 0.0
        authorize_outcome = None
        charge_outcome = None
        status_outcome = StatusResult(success=True, reference="re_fake_1", status="completed")
        credentials_error = None

        @property
        def provider_name(self):
            return "stripe"

        async def _authorize(self, amount_cents, currency, payment_method, metadata):
            if self.authorize_outcome is not None:
                return self.authorize_outcome
            return AuthorizationResult(success=True, reference="auth_fake_1", amount_cents=amount_cents)

        async def _capture(self, authorization_id, amount_cents):
            return PaymentResult(
                success=True,
                reference="txn_fake_1",
                amount_cents=amount_cents or 0,
                status="succeeded",
            )

        async def _charge(self, amount_cents, currency, payment_method, metadata):
            if self.charge_outcome is not None:
                return self.charge_outcome
            return PaymentResult(success=True, reference="txn_fake_2", amount_cents=amount_cents, status="succeeded")

        async def _refund(self, gateway_transaction_id, amount_cents, reason, currency):
            type(self).refund_calls.append((gateway_transaction_id, amount_cents, reason))
            if self.refund_delay:
                await asyncio.sleep(self.refund_delay)
            if isinstance(self.refund_outcome, Exception):
                raise self.refund_outcome
            return self.refund_outcome

        async def _get_status(self, transaction_id):
            return self.status_outcome

        def validate_webhook(self, raw_payload, signature_header):
            return False

        async def verify_credentials(self):
            if self.credentials_error is not None:
                raise self.credentials_error

    FakeGateway.refund_calls = []
    return FakeGateway


@pytest.fixture
def gateway_factory(session_factory, vault, fake_gateway):
    return PaymentGatewayFactory(
        session_factory,
        vault,
        registry={"stripe": fake_gateway},
        timeout=0.5,
    )


@pytest.fixture
def make_tenant(session_factory):
    async def _make(**overrides):
        values = {"name": "Main Street Books", "subscription_tier": "starter"}
        values.update(overrides)
        tenant = Tenant(**values)
        async with session_factory() as session:
            session.add(tenant)
            await session.commit()
        return tenant

    return _make


@pytest.fixture
def make_payment(session_factory):
    async def _make(tenant_id, **overrides):
        values = {
            "tenant_id": tenant_id,
            "order_id": uuid4(),
            "gateway_type": "stripe",
            "amount_cents": 10000,
            "currency": "USD",
            "payment_status": "paid",
            "gateway_transaction_id": "pi_test_paid",
            "gateway_response": {},
            "captured_at": datetime.now(timezone.utc),
        }
        values.update(overrides)
        payment = Payment(**values)
        async with session_factory() as session:
            session.add(payment)
            await session.commit()
        return payment

    return _make


@pytest.fixture
def store_credentials(session_factory, vault):
    async def _store(tenant_id, gateway_type="stripe", credentials=None, **overrides):
        values = {
            "tenant_id": tenant_id,
            "gateway_type": gateway_type,
            "encrypted_credentials": vault.encrypt_credentials(credentials or {"secret_key": "sk_test_123"}),
            "test_mode": True,
            "is_active": True,
        }
        values.update(overrides)
        row = GatewayCredential(**values)
        async with session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    return _store
