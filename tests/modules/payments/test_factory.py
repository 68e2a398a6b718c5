"""Tests for resolving tenant payment providers."""

import logging
from uuid import uuid4

import pytest
from sqlalchemy import select

from commerce_api.modules.payments.errors import (
    DecryptionError,
    GatewayError,
    GatewayErrorCode,
    NoCredentialsError,
    UnsupportedGatewayError,
)
from commerce_api.modules.payments.factory import PaymentGatewayFactory
from commerce_api.modules.payments.models import GatewayCredential
from commerce_api.modules.payments.providers import StripeProvider
from commerce_api.modules.payments.utils.encryption import CredentialVault


class TestCreateFromTenant:
    @pytest.mark.asyncio
    async def test_builds_provider_with_decrypted_credentials(
        self, gateway_factory, fake_gateway, make_tenant, store_credentials
    ):
        tenant = await make_tenant()
        await store_credentials(tenant.id, credentials={"secret_key": "sk_test_abc"})

        provider = await gateway_factory.create_from_tenant(tenant.id, "stripe")

        assert isinstance(provider, fake_gateway)
        assert provider.get_credential("secret_key") == "sk_test_abc"
        assert provider.is_test_mode() is True
        assert provider.timeout == 0.5

    @pytest.mark.asyncio
    async def test_new_instance_per_call(self, gateway_factory, make_tenant, store_credentials):
        tenant = await make_tenant()
        await store_credentials(tenant.id)

        first = await gateway_factory.create_from_tenant(tenant.id, "stripe")
        second = await gateway_factory.create_from_tenant(tenant.id, "stripe")

        assert first is not second

    @pytest.mark.asyncio
    async def test_no_credentials(self, gateway_factory, make_tenant):
        tenant = await make_tenant()

        with pytest.raises(NoCredentialsError):
            await gateway_factory.create_from_tenant(tenant.id, "stripe")

    @pytest.mark.asyncio
    async def test_inactive_credentials_ignored(self, gateway_factory, make_tenant, store_credentials):
        tenant = await make_tenant()
        await store_credentials(tenant.id, is_active=False)

        with pytest.raises(NoCredentialsError):
            await gateway_factory.create_from_tenant(tenant.id, "stripe")

    @pytest.mark.asyncio
    async def test_other_tenant_credentials_not_used(self, gateway_factory, make_tenant, store_credentials):
        owner = await make_tenant()
        other = await make_tenant(name="Other Shop")
        await store_credentials(owner.id)

        with pytest.raises(NoCredentialsError):
            await gateway_factory.create_from_tenant(other.id, "stripe")

    @pytest.mark.asyncio
    async def test_unsupported_gateway(self, gateway_factory):
        with pytest.raises(UnsupportedGatewayError):
            await gateway_factory.create_from_tenant(uuid4(), "venmo")

    @pytest.mark.asyncio
    async def test_undecryptable_credentials_propagate(
        self, session_factory, fake_gateway, make_tenant, store_credentials, caplog
    ):
        tenant = await make_tenant()
        await store_credentials(tenant.id)
        factory = PaymentGatewayFactory(
            session_factory,
            CredentialVault(CredentialVault.generate_key()),
            registry={"stripe": fake_gateway},
        )

        with caplog.at_level(logging.CRITICAL), pytest.raises(DecryptionError):
            await factory.create_from_tenant(tenant.id, "stripe")

        assert any(record.levelno == logging.CRITICAL for record in caplog.records)
        assert "sk_test_123" not in caplog.text


class TestCredentialManagement:
    def test_available_gateways(self, session_factory, vault):
        factory = PaymentGatewayFactory(session_factory, vault)
        assert {"stripe", "paypal", "square"} <= set(factory.available_gateways())

    def test_create_from_config(self, session_factory, vault):
        factory = PaymentGatewayFactory(session_factory, vault, timeout=3.0)

        provider = factory.create_from_config("stripe", {"secret_key": "sk_test_1"}, test_mode=False)

        assert isinstance(provider, StripeProvider)
        assert provider.is_test_mode() is False
        assert provider.timeout == 3.0

    @pytest.mark.asyncio
    async def test_validate_credentials_ok(self, gateway_factory):
        result = await gateway_factory.validate_credentials("stripe", {"secret_key": "sk_test_1"})

        assert result.valid is True
        assert result.error is None

    @pytest.mark.asyncio
    async def test_validate_credentials_rejected(self, gateway_factory, fake_gateway):
        fake_gateway.credentials_error = GatewayError(
            "No such API key: sk_test_bad",
            error_code=GatewayErrorCode.AUTHENTICATION_ERROR,
        )

        result = await gateway_factory.validate_credentials("stripe", {"secret_key": "sk_test_bad"})

        assert result.valid is False
        assert result.error == "Invalid credentials"

    @pytest.mark.asyncio
    async def test_save_credentials_encrypts_and_upserts(
        self, gateway_factory, session_factory, vault, make_tenant
    ):
        tenant = await make_tenant()

        await gateway_factory.save_credentials(tenant.id, "stripe", {"secret_key": "sk_test_1"})
        await gateway_factory.save_credentials(tenant.id, "stripe", {"secret_key": "sk_test_2"}, test_mode=False)

        async with session_factory() as session:
            rows = (
                (await session.execute(select(GatewayCredential).where(GatewayCredential.tenant_id == tenant.id)))
                .scalars()
                .all()
            )

        assert len(rows) == 1
        assert "sk_test_2" not in rows[0].encrypted_credentials
        assert vault.decrypt_credentials(rows[0].encrypted_credentials) == {"secret_key": "sk_test_2"}
        assert rows[0].test_mode is False
        assert rows[0].verification_status == "verified"

    @pytest.mark.asyncio
    async def test_save_rejected_credentials_stores_nothing(
        self, gateway_factory, fake_gateway, session_factory, make_tenant
    ):
        tenant = await make_tenant()
        fake_gateway.credentials_error = GatewayError("bad", error_code=GatewayErrorCode.AUTHENTICATION_ERROR)

        result = await gateway_factory.save_credentials(tenant.id, "stripe", {"secret_key": "sk_bad"})

        assert result.valid is False
        async with session_factory() as session:
            rows = (await session.execute(select(GatewayCredential))).scalars().all()
        assert rows == []
