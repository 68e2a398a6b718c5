"""Resolve a tenant's payment provider from its stored credentials."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import DecryptionError, GatewayError, GatewayErrorCode, NoCredentialsError
from .models import GatewayCredential
from .providers import PROVIDER_REGISTRY, BasePaymentProvider, get_provider_class
from .providers.base import ProviderClass
from .schemas import CredentialValidation
from .utils.encryption import CredentialVault

logger = logging.getLogger(__name__)

_VALIDATION_MESSAGES = {
    GatewayErrorCode.AUTHENTICATION_ERROR: "Invalid credentials",
    GatewayErrorCode.NETWORK_ERROR: "Could not reach the payment gateway",
    GatewayErrorCode.TIMEOUT: "Payment gateway did not respond in time",
}


class PaymentGatewayFactory:
    """Builds provider instances from tenant credentials.

    A fresh provider is constructed per call; instances hold decrypted
    credentials and are never cached or shared between tenants.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        registry: dict[str, ProviderClass] | None = None,
        timeout: float = 5.0,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.registry = PROVIDER_REGISTRY if registry is None else registry
        self.timeout = timeout

    def available_gateways(self) -> list[str]:
        return sorted(self.registry)

    async def create_from_tenant(self, tenant_id: UUID, provider_name: str) -> BasePaymentProvider:
        """Return a provider for the tenant's active credentials.

        Raises:
            UnsupportedGatewayError: If ``provider_name`` is not registered
            NoCredentialsError: If the tenant has no active credentials for it
            DecryptionError: If the stored credentials cannot be decrypted
        """
        provider_class = get_provider_class(provider_name, self.registry)

        async with self.session_factory() as session:
            stmt = select(GatewayCredential).where(
                GatewayCredential.tenant_id == tenant_id,
                GatewayCredential.gateway_type == provider_name.lower(),
                GatewayCredential.is_active.is_(True),
            )
            row = (await session.execute(stmt)).scalar_one_or_none()

        if row is None:
            raise NoCredentialsError(f"No {provider_name} gateway credentials configured")

        try:
            credentials = self.vault.decrypt_credentials(row.encrypted_credentials)
        except DecryptionError:
            logger.critical(
                "Stored %s credentials for tenant %s could not be decrypted; "
                "check the payment encryption key",
                provider_name,
                tenant_id,
            )
            raise

        return provider_class(credentials=credentials, test_mode=row.test_mode, timeout=self.timeout)

    def create_from_config(
        self,
        provider_name: str,
        raw_credentials: dict[str, Any],
        test_mode: bool = True,
        config: dict[str, Any] | None = None,
    ) -> BasePaymentProvider:
        """Build a provider from credentials that have not been stored yet."""
        provider_class = get_provider_class(provider_name, self.registry)
        return provider_class(
            credentials=raw_credentials,
            test_mode=test_mode,
            config=config,
            timeout=self.timeout,
        )

    async def validate_credentials(
        self,
        provider_name: str,
        raw_credentials: dict[str, Any],
        test_mode: bool = True,
    ) -> CredentialValidation:
        """Check credentials with a lightweight authenticated provider call."""
        provider = self.create_from_config(provider_name, raw_credentials, test_mode)
        try:
            await asyncio.wait_for(provider.verify_credentials(), timeout=self.timeout)
        except asyncio.TimeoutError:
            return CredentialValidation(valid=False, error=_VALIDATION_MESSAGES[GatewayErrorCode.TIMEOUT])
        except GatewayError as e:
            logger.info("%s credential check failed: %s", provider_name, e.error_code.value)
            return CredentialValidation(
                valid=False,
                error=_VALIDATION_MESSAGES.get(e.error_code, "Credential verification failed"),
            )
        return CredentialValidation(valid=True)

    async def save_credentials(
        self,
        tenant_id: UUID,
        provider_name: str,
        raw_credentials: dict[str, Any],
        test_mode: bool = True,
        validate: bool = True,
    ) -> CredentialValidation:
        """Encrypt and store credentials, replacing any existing set.

        With ``validate`` the credentials are checked first and nothing is
        stored when the provider rejects them.
        """
        provider_name = provider_name.lower()
        get_provider_class(provider_name, self.registry)

        validation = CredentialValidation(valid=True)
        if validate:
            validation = await self.validate_credentials(provider_name, raw_credentials, test_mode)
            if not validation.valid:
                return validation

        encrypted = self.vault.encrypt_credentials(raw_credentials)
        now = datetime.now(timezone.utc)

        async with self.session_factory() as session:
            stmt = select(GatewayCredential).where(
                GatewayCredential.tenant_id == tenant_id,
                GatewayCredential.gateway_type == provider_name,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = GatewayCredential(tenant_id=tenant_id, gateway_type=provider_name)
                session.add(row)

            row.encrypted_credentials = encrypted
            row.test_mode = test_mode
            row.is_active = True
            row.verification_status = "verified" if validate else "unverified"
            row.last_verified_at = now if validate else None
            await session.commit()

        logger.info("Stored %s credentials for tenant %s", provider_name, tenant_id)
        return validation
