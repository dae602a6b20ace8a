# Milestones Router for FlowPay Escrow
# Handles deliverable submission, brand review and release retries

from fastapi import APIRouter, Depends, status
import logging

from database.models import User
from auth.roles import UserType, Permission
from auth.decorators import require_permission, get_user_type
from schemas.escrow import (
    DeliverableSubmit, SubmitResponse, ReviewRequest, ReleaseResponse, MilestoneDetailResponse,
    MilestoneResponse, DeliverableResponse
)
from services.escrow_service import EscrowService
from services.milestone_service import MilestoneService, MilestoneResult
from routers.common import get_escrow_service, get_milestone_service, http_error, DOMAIN_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/milestones", tags=["Milestones"])


def _release_response(result: MilestoneResult) -> ReleaseResponse:
    return ReleaseResponse(
        milestone=MilestoneResponse.model_validate(result.milestone),
        payout_ref=result.payout_ref
    )


@router.get("/{milestone_id}", response_model=MilestoneDetailResponse)
def get_milestone(
    milestone_id: str,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.VIEW_DEALS))
):
    """Milestone with its deliverables, newest first."""
    try:
        return service.get_milestone(milestone_id, current_user)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


# ============================================================================
# CREATOR ENDPOINTS
# ============================================================================

@router.post("/{milestone_id}/submit", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_deliverable(
    milestone_id: str,
    request: DeliverableSubmit,
    service: MilestoneService = Depends(get_milestone_service),
    current_user: User = Depends(require_permission(Permission.SUBMIT_DELIVERABLES))
):
    """
    Submit a deliverable for a PENDING milestone of a FUNDED deal.
    Starts the auto-release timer when the deal has it enabled.
    """
    try:
        result = service.submit(
            milestone_id,
            current_user.id,
            description=request.description,
            content_url=request.content_url,
            content_hash=request.content_hash,
            submission_type=request.submission_type.value,
            submission_metadata=request.file_metadata.model_dump() if request.file_metadata else None
        )
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return SubmitResponse(
        milestone=MilestoneResponse.model_validate(result.milestone),
        deliverable=DeliverableResponse.model_validate(result.deliverable)
    )


# ============================================================================
# BRAND ENDPOINTS
# ============================================================================

@router.post("/{milestone_id}/review", response_model=ReleaseResponse)
def review_milestone(
    milestone_id: str,
    request: ReviewRequest,
    service: MilestoneService = Depends(get_milestone_service),
    current_user: User = Depends(require_permission(Permission.REVIEW_DELIVERABLES))
):
    """
    Approve, reject or request a revision of the latest deliverable.

    Approval releases the milestone's funds. If the provider fails, the
    milestone stays APPROVED (502) and the release can be retried.
    """
    try:
        result = service.review(milestone_id, current_user.id, request.decision.value, request.feedback)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return _release_response(result)


@router.post("/{milestone_id}/retry-release", response_model=ReleaseResponse)
def retry_release(
    milestone_id: str,
    service: MilestoneService = Depends(get_milestone_service),
    current_user: User = Depends(require_permission(Permission.RETRY_RELEASES))
):
    """Re-run the provider release of an APPROVED milestone."""
    try:
        result = service.retry_release(
            milestone_id,
            current_user.id,
            is_admin=get_user_type(current_user) == UserType.ADMIN
        )
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return _release_response(result)
