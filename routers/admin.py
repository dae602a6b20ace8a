# Admin Router for FlowPay Escrow
# Force releases, dispute resolution, refunds and manual runs of the
# background reconcilers

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from core.payments import PaymentsProvider
from database.config import get_db
from database.models import User
from auth.roles import Permission
from auth.decorators import require_permission
from schemas.escrow import (
    ForceReleaseRequest, DisputeResolve, RefundRequest, DealResponse, ReleaseResponse, MilestoneResponse,
    AutoReleaseRunResponse, FundingSweepResponse
)
from services.auto_release import AutoReleaseWorker
from services.escrow_service import EscrowService
from services.milestone_service import MilestoneService
from services.webhook_reconciler import WebhookReconciler
from routers.common import (
    get_escrow_service, get_milestone_service, get_payments_provider, get_session_factory,
    http_error, DOMAIN_ERRORS
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/milestones/{milestone_id}/force-release", response_model=ReleaseResponse)
def force_release(
    milestone_id: str,
    request: ForceReleaseRequest,
    service: MilestoneService = Depends(get_milestone_service),
    admin: User = Depends(require_permission(Permission.FORCE_RELEASE))
):
    """Release a SUBMITTED or APPROVED milestone without the brand's approval."""
    logger.info(f"Admin {admin.id} forcing release of milestone {milestone_id}")
    try:
        result = service.force_release(milestone_id, admin.id, request.reason)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return ReleaseResponse(
        milestone=MilestoneResponse.model_validate(result.milestone),
        payout_ref=result.payout_ref
    )


@router.post("/deals/{deal_id}/resolve-dispute", response_model=DealResponse)
def resolve_dispute(
    deal_id: str,
    request: DisputeResolve,
    service: EscrowService = Depends(get_escrow_service),
    admin: User = Depends(require_permission(Permission.RESOLVE_DISPUTES))
):
    """
    Resolve a DISPUTED deal.
    - release: approve and pay out every unreleased milestone to the creator
    - refund: return the unreleased balance (or refund_amount) to the brand
    """
    try:
        return service.resolve_dispute(deal_id, admin.id, request.outcome, request.note, request.refund_amount)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.post("/deals/{deal_id}/refund", response_model=DealResponse)
def refund_deal(
    deal_id: str,
    request: RefundRequest,
    service: EscrowService = Depends(get_escrow_service),
    admin: User = Depends(require_permission(Permission.ISSUE_REFUNDS))
):
    try:
        return service.refund_deal(deal_id, admin.id, request.reason, request.amount)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


# ============================================================================
# RECONCILIATION
# ============================================================================

@router.post("/auto-release/run", response_model=AutoReleaseRunResponse)
def run_auto_release(
    provider: PaymentsProvider = Depends(get_payments_provider),
    session_factory=Depends(get_session_factory),
    admin: User = Depends(require_permission(Permission.RUN_AUTO_RELEASE))
):
    """Fire every auto-release job that is due now."""
    worker = AutoReleaseWorker(provider, session_factory=session_factory)
    return worker.run_due_jobs()


@router.post("/reconcile/fundings", response_model=FundingSweepResponse)
def reconcile_fundings(
    db: Session = Depends(get_db),
    provider: PaymentsProvider = Depends(get_payments_provider),
    admin: User = Depends(require_permission(Permission.RECONCILE_PAYMENTS))
):
    """Ask the provider about fundings still waiting for their webhook."""
    return WebhookReconciler(db, provider).sweep_pending_fundings()
