# Pydantic Schemas for the Escrow API
# Request bodies and response models for deals, milestones and admin actions

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class DealState(str, Enum):
    DRAFT = "DRAFT"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


class PayoutStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


class MilestoneState(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"


class ApprovalSource(str, Enum):
    REVIEW = "review"
    AUTO_RELEASE = "auto_release"
    FORCE_RELEASE = "force_release"
    DISPUTE_RESOLUTION = "dispute_resolution"


class ReviewOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


class SubmissionType(str, Enum):
    FILE = "file"
    URL = "url"
    TEXT = "text"


class ReviewDecisionEnum(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"


# ============================================================================
# DEAL SCHEMAS
# ============================================================================

class MilestoneCreate(BaseModel):
    """One milestone inside a new deal."""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    amount: int = Field(..., gt=0, description="Amount in minor units")
    due_at: Optional[datetime] = None


class AutoReleaseSettings(BaseModel):
    enabled: bool = True
    days: int = Field(5, ge=1, le=90)


class DealCreate(BaseModel):
    """Schema for creating a deal (brand)."""
    title: Optional[str] = Field(None, max_length=255)
    currency: str = Field("KES", min_length=3, max_length=3)
    proposed_creator_id: Optional[str] = None
    milestones: List[MilestoneCreate] = Field(..., min_length=1)
    auto_release: Optional[AutoReleaseSettings] = None

    @field_validator("currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return v.upper()


class DisputeCreate(BaseModel):
    """Schema for opening a dispute on a funded deal."""
    reason: str = Field(..., min_length=3, max_length=2000)
    milestone_id: Optional[str] = None


class DeliverableResponse(BaseModel):
    id: str
    milestone_id: str
    revision: int
    content_url: Optional[str] = None
    content_hash: Optional[str] = None
    description: str
    submission_type: str
    submission_metadata: Optional[Dict[str, Any]] = None
    review_outcome: Optional[ReviewOutcome] = None
    feedback: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    submitted_at: datetime

    class Config:
        from_attributes = True


class MilestoneResponse(BaseModel):
    id: str
    deal_id: str
    position: int
    title: str
    description: Optional[str] = None
    amount: int
    due_at: Optional[datetime] = None
    state: MilestoneState
    approved_via: Optional[ApprovalSource] = None
    payout_ref: Optional[str] = None
    last_release_error: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MilestoneDetailResponse(MilestoneResponse):
    deliverables: List[DeliverableResponse] = []


class DealResponse(BaseModel):
    id: str
    title: Optional[str] = None
    brand_id: str
    creator_id: Optional[str] = None
    proposed_creator_id: Optional[str] = None
    total_amount: int
    currency: str
    state: DealState
    escrow_ref: Optional[str] = None
    funding_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    auto_release_enabled: bool
    auto_release_days: int
    released_amount: int = 0
    accepted_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    milestones: List[MilestoneResponse] = []

    class Config:
        from_attributes = True


class EventLogResponse(BaseModel):
    id: int
    type: str
    actor_id: Optional[str] = None
    deal_id: Optional[str] = None
    milestone_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayoutResponse(BaseModel):
    """Provider transfer for one released milestone, as settled by webhooks."""
    id: str
    deal_id: str
    milestone_id: str
    provider_ref: str
    amount: int
    currency: str
    status: PayoutStatus
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ============================================================================
# MILESTONE SCHEMAS
# ============================================================================

class FileMetadata(BaseModel):
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    file_type: Optional[str] = None


class DeliverableSubmit(BaseModel):
    """Schema for submitting a deliverable (creator)."""
    submission_type: SubmissionType = SubmissionType.URL
    description: str = Field(..., min_length=10, max_length=5000)
    content_url: Optional[str] = Field(None, max_length=500)
    content_hash: Optional[str] = Field(None, max_length=128)
    file_metadata: Optional[FileMetadata] = None


class SubmitResponse(BaseModel):
    milestone: MilestoneResponse
    deliverable: DeliverableResponse


class ReviewRequest(BaseModel):
    """Schema for the brand's review of the latest deliverable."""
    decision: ReviewDecisionEnum
    feedback: Optional[str] = Field(None, max_length=2000)


class ReleaseResponse(BaseModel):
    milestone: MilestoneResponse
    payout_ref: Optional[str] = None


# ============================================================================
# ADMIN SCHEMAS
# ============================================================================

class ForceReleaseRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=2000)


class DisputeResolve(BaseModel):
    """Schema for admin dispute resolution."""
    outcome: Literal["release", "refund"]
    note: Optional[str] = Field(None, max_length=2000)
    refund_amount: Optional[int] = Field(None, gt=0)


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=2000)
    amount: Optional[int] = Field(None, gt=0, description="Partial refund in minor units; omit for the full unreleased balance")


class AutoReleaseRunResponse(BaseModel):
    claimed: int
    released: int
    skipped: int
    retrying: int


class FundingSweepResponse(BaseModel):
    checked: int
    funded: int
    errors: int
