# Tagged variants exchanged with payments providers
# Webhook events and release metadata are closed sets: adapters translate
# provider-native payloads into one of these shapes, and the reconciler
# dispatches on the tag.

from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Optional, Union, Literal


# ============================================================================
# WEBHOOK EVENTS
# ============================================================================

class _ProviderEventBase(BaseModel):
    event_id: str = Field(..., min_length=1, description="Provider-assigned event id")


class FundingConfirmed(_ProviderEventBase):
    type: Literal["funding.confirmed"] = "funding.confirmed"
    deal_id: Optional[str] = None
    escrow_ref: str
    payment_ref: str
    amount: int


class FundingFailed(_ProviderEventBase):
    type: Literal["funding.failed"] = "funding.failed"
    deal_id: Optional[str] = None
    payment_ref: str
    reason: Optional[str] = None


class TransferCreated(_ProviderEventBase):
    type: Literal["transfer.created"] = "transfer.created"
    milestone_id: str
    payout_ref: str
    amount: Optional[int] = None


class PayoutPaid(_ProviderEventBase):
    type: Literal["payout.paid"] = "payout.paid"
    milestone_id: str
    payout_ref: str
    amount: Optional[int] = None


class PayoutFailed(_ProviderEventBase):
    type: Literal["payout.failed"] = "payout.failed"
    milestone_id: str
    payout_ref: str
    reason: Optional[str] = None
    reversed: bool = False


class AccountUpdated(_ProviderEventBase):
    type: Literal["account.updated"] = "account.updated"
    account_ref: str
    payouts_enabled: bool


class UnhandledEvent(_ProviderEventBase):
    type: Literal["unhandled"] = "unhandled"
    provider_type: str


ProviderEvent = Annotated[
    Union[
        FundingConfirmed,
        FundingFailed,
        TransferCreated,
        PayoutPaid,
        PayoutFailed,
        AccountUpdated,
        UnhandledEvent,
    ],
    Field(discriminator="type"),
]

_provider_event_adapter = TypeAdapter(ProviderEvent)


def parse_provider_event(data: dict) -> ProviderEvent:
    """Validate a canonical event dict into its variant."""
    return _provider_event_adapter.validate_python(data)


# ============================================================================
# RELEASE METADATA
# ============================================================================

class _ReleaseMetadataBase(BaseModel):
    deal_id: str
    milestone_id: str
    currency: str


class MilestoneApprovalRelease(_ReleaseMetadataBase):
    """Release after the brand approved, or the auto-release timer fired."""
    kind: Literal["milestone_approval"] = "milestone_approval"
    approved_via: Literal["review", "auto_release"]


class ForcedRelease(_ReleaseMetadataBase):
    kind: Literal["force_release"] = "force_release"
    admin_id: str
    reason: str


class DisputeRelease(_ReleaseMetadataBase):
    kind: Literal["dispute_resolution"] = "dispute_resolution"
    admin_id: str
    note: Optional[str] = None


ReleaseMetadata = Annotated[
    Union[MilestoneApprovalRelease, ForcedRelease, DisputeRelease],
    Field(discriminator="kind"),
]
