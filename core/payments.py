# Payments Abstraction Layer (PAL)
# Provider-agnostic contract for escrow lifecycle operations. Concrete
# adapters (Paystack, sandbox) live next to this module and are injected into
# the services at construction time.

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from schemas.provider_events import ProviderEvent, ReleaseMetadata


# ============================================================================
# ERRORS
# ============================================================================

class PaymentsError(Exception):
    """Base class for everything raised by a payments provider adapter."""


class InvalidSignature(PaymentsError):
    """Webhook payload failed authenticity verification."""


class ProviderError(PaymentsError):
    """The provider refused or failed the operation. Safe to retry."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ProviderUnavailable(ProviderError):
    pass


class ProviderTimeout(ProviderError):
    """No answer within the bounded timeout; the outcome is unknown."""


class InvalidCurrency(ProviderError):
    pass


class InsufficientFunds(ProviderError):
    pass


class PayerNotOnboarded(ProviderError):
    pass


class PayeeNotOnboarded(ProviderError):
    pass


# ============================================================================
# TYPES
# ============================================================================

class EscrowStatus(str, Enum):
    UNFUNDED = "unfunded"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class PartyRef:
    """How a brand or creator is addressed at the provider."""
    user_id: str
    email: Optional[str] = None
    provider_code: Optional[str] = None  # card authorization (payer) or transfer recipient (payee)


@dataclass(frozen=True)
class FundingResult:
    payment_ref: str
    confirmed: bool  # False when the provider confirms asynchronously via webhook


# ============================================================================
# INTERFACE
# ============================================================================

class PaymentsProvider(ABC):
    """
    Uniform escrow contract. Every operation must be idempotent under retry:
    the same idempotency key produces the same external effect, never a
    second one.
    """

    name: str = "abstract"
    signature_header: str = "x-signature"

    @abstractmethod
    def create_escrow(self, deal_id: str, currency: str) -> str:
        """Allocate a holding construct for the deal and return its reference."""

    @abstractmethod
    def fund_escrow(
        self,
        escrow_ref: str,
        amount: int,
        payer: PartyRef,
        idempotency_key: Optional[str] = None
    ) -> FundingResult:
        """Move amount (minor units) from the payer into the hold."""

    @abstractmethod
    def release_to_creator(
        self,
        escrow_ref: str,
        amount: int,
        payee: PartyRef,
        metadata: ReleaseMetadata,
        idempotency_key: str
    ) -> str:
        """Transfer part of the held funds to the payee. Returns the payout reference."""

    @abstractmethod
    def refund_to_brand(
        self,
        escrow_ref: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        """Return held funds to the payer, fully (amount=None) or partially."""

    @abstractmethod
    def get_status(self, escrow_ref: str) -> EscrowStatus:
        """Provider-side view of the escrow, used when webhooks are suspect."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        """Check the signature over the raw request body."""

    @abstractmethod
    def parse_event(self, payload: bytes) -> ProviderEvent:
        """Translate a provider-native webhook body into an internal event variant."""


# ============================================================================
# FACTORY
# ============================================================================

def create_payment_provider(name: Optional[str] = None) -> PaymentsProvider:
    """Build the adapter named in configuration (PAYMENT_PROVIDER)."""
    from config.app_config import (
        PAYMENT_PROVIDER, PAYSTACK_SECRET_KEY, PAYSTACK_BASE_URL,
        PROVIDER_TIMEOUT_SECONDS, SANDBOX_WEBHOOK_SECRET
    )

    provider_name = (name or PAYMENT_PROVIDER).lower()

    if provider_name == "paystack":
        from core.paystack_service import PaystackProvider
        return PaystackProvider(
            secret_key=PAYSTACK_SECRET_KEY,
            base_url=PAYSTACK_BASE_URL,
            timeout=PROVIDER_TIMEOUT_SECONDS
        )
    if provider_name == "sandbox":
        from core.sandbox_provider import SandboxProvider
        return SandboxProvider(webhook_secret=SANDBOX_WEBHOOK_SECRET)

    raise ValueError(f"Unsupported payment provider: {provider_name}")
