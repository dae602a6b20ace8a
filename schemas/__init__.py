# Schemas module for FlowPay Escrow
# Pydantic request/response models and provider event variants

from schemas.escrow import (
    # Enums
    DealState,
    PayoutStatus,
    MilestoneState,
    SubmissionType,
    ReviewDecisionEnum,

    # Deal schemas
    MilestoneCreate,
    AutoReleaseSettings,
    DealCreate,
    DisputeCreate,
    DealResponse,
    EventLogResponse,
    PayoutResponse,

    # Milestone schemas
    FileMetadata,
    DeliverableSubmit,
    DeliverableResponse,
    MilestoneResponse,
    MilestoneDetailResponse,
    SubmitResponse,
    ReviewRequest,
    ReleaseResponse,

    # Admin schemas
    ForceReleaseRequest,
    DisputeResolve,
    RefundRequest,
    AutoReleaseRunResponse,
    FundingSweepResponse,
)

__all__ = [
    # Enums
    "DealState",
    "PayoutStatus",
    "MilestoneState",
    "SubmissionType",
    "ReviewDecisionEnum",

    # Deal
    "MilestoneCreate",
    "AutoReleaseSettings",
    "DealCreate",
    "DisputeCreate",
    "DealResponse",
    "EventLogResponse",
    "PayoutResponse",

    # Milestone
    "FileMetadata",
    "DeliverableSubmit",
    "DeliverableResponse",
    "MilestoneResponse",
    "MilestoneDetailResponse",
    "SubmitResponse",
    "ReviewRequest",
    "ReleaseResponse",

    # Admin
    "ForceReleaseRequest",
    "DisputeResolve",
    "RefundRequest",
    "AutoReleaseRunResponse",
    "FundingSweepResponse",
]
