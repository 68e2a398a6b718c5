"""Base payment provider abstract class.

All payment providers must inherit from BasePaymentProvider and implement
the ``_authorize``/``_capture``/``_charge``/``_refund``/``_get_status`` hooks.
The public methods wrap those hooks so that every call is bounded by the
provider timeout and every failure comes back as a structured result with a
normalized error code. Callers never see a provider exception.

Providers do not retry and do not deduplicate; at-most-once behaviour is the
refund orchestrator's job.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from ..errors import DeclinedError, GatewayError, GatewayErrorCode, UnsupportedGatewayError
from ..utils.money import percentage_of

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    """Fields shared by every provider result.

    Attributes:
        success: Whether the provider accepted the operation
        reference: Provider-assigned identifier for the operation
        gateway_fee_cents: Provider processing fee for this amount
        error_code: Normalized error code (see GatewayErrorCode)
        error_message: Provider error detail, for operators only
        gateway_response: Raw provider payload
    """

    success: bool
    reference: str | None = None
    gateway_fee_cents: int = 0
    error_code: str | None = None
    error_message: str | None = None
    gateway_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        error_code: GatewayErrorCode | str,
        error_message: str,
        gateway_response: dict[str, Any] | None = None,
    ):
        code = error_code.value if isinstance(error_code, GatewayErrorCode) else error_code
        return cls(
            success=False,
            error_code=code,
            error_message=error_message,
            gateway_response=gateway_response or {},
        )


@dataclass
class AuthorizationResult(GatewayResult):
    """Result from reserving funds. ``reference`` is the authorization id."""

    amount_cents: int = 0
    currency: str = "USD"
    expires_at: datetime | None = None

    @property
    def authorization_id(self) -> str | None:
        return self.reference


@dataclass
class PaymentResult(GatewayResult):
    """Result from a capture or charge. ``reference`` is the transaction id."""

    amount_cents: int = 0
    currency: str = "USD"
    status: str = "pending"

    @property
    def transaction_id(self) -> str | None:
        return self.reference


@dataclass
class RefundResult(GatewayResult):
    """Result from issuing a refund.

    ``status`` is ``completed`` when the provider settled the refund
    synchronously and ``pending`` when it accepted it for later settlement.
    """

    amount_cents: int = 0
    currency: str = "USD"
    status: str = "pending"

    @property
    def refund_id(self) -> str | None:
        return self.reference


@dataclass
class StatusResult(GatewayResult):
    """Read-only reconciliation view of a transaction or refund."""

    status: str = "unknown"
    amount_cents: int = 0
    currency: str | None = None


ResultT = TypeVar("ResultT", bound=GatewayResult)


class BasePaymentProvider(ABC):
    """Abstract base class for payment providers.

    All payment providers must implement this interface to ensure
    consistency across different payment processors.
    """

    #: Provider processing fee, applied to every successful money movement
    fee_percentage: Decimal = Decimal("0")
    fee_fixed_cents: int = 0

    def __init__(
        self,
        credentials: dict[str, Any],
        test_mode: bool = True,
        config: dict[str, Any] | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the payment provider.

        Args:
            credentials: Decrypted provider credentials (API keys, secrets, etc.)
            test_mode: True for sandbox, False for live
            config: Additional provider-specific configuration
            timeout: Upper bound in seconds for every provider call
            transport: Optional httpx transport (used to stub REST providers)
        """
        self.credentials = credentials
        self.test_mode = test_mode
        self.config = config or {}
        self.timeout = timeout
        self._transport = transport

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'stripe', 'paypal')."""

    # === Public contract ===

    async def authorize(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> AuthorizationResult:
        """Reserve funds without capturing them."""
        return await self._execute(
            "authorize",
            lambda: self._authorize(amount_cents, currency, payment_method, metadata or {}),
            AuthorizationResult,
        )

    async def capture(self, authorization_id: str, amount_cents: int | None = None) -> PaymentResult:
        """Capture a previously authorized amount (full amount when None)."""
        return await self._execute(
            "capture",
            lambda: self._capture(authorization_id, amount_cents),
            PaymentResult,
        )

    async def charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult:
        """Authorize and capture in one round trip."""
        return await self._execute(
            "charge",
            lambda: self._charge(amount_cents, currency, payment_method, metadata or {}),
            PaymentResult,
        )

    async def refund(
        self,
        gateway_transaction_id: str,
        amount_cents: int,
        reason: str | None = None,
        currency: str = "USD",
    ) -> RefundResult:
        """Issue a provider-side refund. Not idempotent; never retried here."""
        return await self._execute(
            "refund",
            lambda: self._refund(gateway_transaction_id, amount_cents, reason, currency),
            RefundResult,
        )

    async def get_status(self, transaction_id: str) -> StatusResult:
        """Read-only reconciliation query."""
        return await self._execute(
            "get_status",
            lambda: self._get_status(transaction_id),
            StatusResult,
        )

    @abstractmethod
    def validate_webhook(self, raw_payload: bytes, signature_header: str | None) -> bool:
        """Verify a provider-signed webhook body.

        Must compare signatures in constant time and return False (never
        raise) on a missing header, missing secret or mismatch.
        """

    @abstractmethod
    async def verify_credentials(self) -> None:
        """Make a lightweight authenticated call to prove the credentials work.

        Raises:
            GatewayError: If the provider rejects the credentials
        """

    # === Provider hooks ===

    @abstractmethod
    async def _authorize(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> AuthorizationResult:
        """Provider-specific authorization. May raise GatewayError/DeclinedError."""

    @abstractmethod
    async def _capture(self, authorization_id: str, amount_cents: int | None) -> PaymentResult:
        """Provider-specific capture."""

    @abstractmethod
    async def _charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: dict[str, Any],
        metadata: dict[str, Any],
    ) -> PaymentResult:
        """Provider-specific one-step charge."""

    @abstractmethod
    async def _refund(
        self,
        gateway_transaction_id: str,
        amount_cents: int,
        reason: str | None,
        currency: str,
    ) -> RefundResult:
        """Provider-specific refund."""

    @abstractmethod
    async def _get_status(self, transaction_id: str) -> StatusResult:
        """Provider-specific status lookup."""

    # === Helpers ===

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[ResultT]],
        result_cls: type[ResultT],
    ) -> ResultT:
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s %s timed out after %.1fs", self.provider_name, operation, self.timeout)
            return result_cls.failure(
                GatewayErrorCode.TIMEOUT,
                f"{self.provider_name} {operation} timed out after {self.timeout:.1f}s",
            )
        except DeclinedError as e:
            logger.info("%s %s declined: %s", self.provider_name, operation, e.error_code.value)
            return result_cls.failure(e.error_code, e.message, e.gateway_response)
        except GatewayError as e:
            logger.warning("%s %s failed: %s", self.provider_name, operation, e.error_code.value)
            return result_cls.failure(e.error_code, e.message, e.gateway_response)
        except Exception as e:
            # Outcome unknown to the caller; reconcile through get_status
            logger.exception("%s %s raised unexpectedly", self.provider_name, operation)
            return result_cls.failure(
                GatewayErrorCode.PROVIDER_ERROR,
                f"Unexpected {self.provider_name} {operation} error: {type(e).__name__}",
            )

    def calculate_gateway_fee(self, amount_cents: int) -> int:
        """Provider fee for an amount: percentage (half-up) plus fixed part."""
        if amount_cents <= 0:
            return 0
        return percentage_of(amount_cents, self.fee_percentage) + self.fee_fixed_cents

    def is_test_mode(self) -> bool:
        """Check if provider is in test mode.

        Returns:
            True if in test mode, False if in live mode
        """
        return self.test_mode

    def get_credential(self, key: str, default: Any = None) -> Any:
        """Safely get a credential value.

        Args:
            key: Credential key
            default: Default value if key not found

        Returns:
            Credential value or default
        """
        return self.credentials.get(key, default)

    def require_credential(self, key: str) -> str:
        value = self.credentials.get(key)
        if not value:
            raise GatewayError(
                f"{self.provider_name} {key} not configured in credentials",
                error_code=GatewayErrorCode.AUTHENTICATION_ERROR,
            )
        return value

    def get_config(self, key: str, default: Any = None) -> Any:
        """Safely get a configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.config.get(key, default)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one HTTP request, mapping transport failures to GatewayError."""
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayError(
                f"{self.provider_name} request timed out",
                error_code=GatewayErrorCode.TIMEOUT,
            ) from e
        except httpx.RequestError as e:
            raise GatewayError(
                f"Could not reach {self.provider_name}: {e}",
                error_code=GatewayErrorCode.NETWORK_ERROR,
            ) from e


    def _json(self, response: httpx.Response) -> dict[str, Any]:
        """Decode a successful response body, rejecting anything but a JSON object."""
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError(
                f"{self.provider_name} returned a non-JSON response",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response={"raw": response.text[:500]},
            ) from e
        if not isinstance(body, dict):
            raise GatewayError(
                f"{self.provider_name} returned an unexpected response",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response={"raw": body},
            )
        return body

    def _require(self, body: dict[str, Any], key: str) -> Any:
        value = body.get(key) if isinstance(body, dict) else None
        if not value:
            raise GatewayError(
                f"{self.provider_name} response is missing {key}",
                error_code=GatewayErrorCode.PROVIDER_ERROR,
                gateway_response=body if isinstance(body, dict) else {},
            )
        return value

ProviderClass = type[BasePaymentProvider]

PROVIDER_REGISTRY: dict[str, ProviderClass] = {}


def register_provider(name: str) -> Callable[[ProviderClass], ProviderClass]:
    """Class decorator adding a provider to the registry under ``name``."""

    def decorator(cls: ProviderClass) -> ProviderClass:
        PROVIDER_REGISTRY[name] = cls
        return cls

    return decorator


def get_provider_class(name: str, registry: dict[str, ProviderClass] | None = None) -> ProviderClass:
    registry = PROVIDER_REGISTRY if registry is None else registry
    provider_class = registry.get((name or "").lower())
    if provider_class is None:
        raise UnsupportedGatewayError(f"Provider {name} not supported")
    return provider_class
