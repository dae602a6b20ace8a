# Deals Router for FlowPay Escrow
# Handles deal creation, acceptance, funding, auto-release settings and disputes

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from database.models import User
from auth.roles import Permission
from auth.decorators import require_permission
from schemas.escrow import (
    DealCreate, DealResponse, AutoReleaseSettings, DisputeCreate, EventLogResponse
)
from services.escrow_service import EscrowService
from routers.common import get_escrow_service, http_error, DOMAIN_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deals", tags=["Deals"])


# ============================================================================
# BRAND ENDPOINTS
# ============================================================================

@router.post("", response_model=DealResponse, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: DealCreate,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.CREATE_DEALS))
):
    """
    Create a DRAFT deal with its milestones.
    The deal total is the sum of the milestone amounts.
    """
    auto_release = request.auto_release
    try:
        deal = service.create_deal(
            brand_id=current_user.id,
            milestones=[m.model_dump() for m in request.milestones],
            currency=request.currency,
            title=request.title,
            proposed_creator_id=request.proposed_creator_id,
            auto_release_enabled=auto_release.enabled if auto_release else None,
            auto_release_days=auto_release.days if auto_release else None
        )
    except DOMAIN_ERRORS as e:
        raise http_error(e)
    return deal


@router.post("/{deal_id}/fund", response_model=DealResponse)
def fund_deal(
    deal_id: str,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.FUND_DEALS))
):
    """
    Charge the brand into escrow.
    Returns FUNDED when the provider confirms synchronously; otherwise the deal
    stays DRAFT with a funding reference until the provider's webhook arrives.
    """
    try:
        return service.fund_deal(deal_id, current_user.id)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.put("/{deal_id}/auto-release", response_model=DealResponse)
def update_auto_release(
    deal_id: str,
    request: AutoReleaseSettings,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.CONFIGURE_AUTO_RELEASE))
):
    """Change the auto-release timer for this deal. Pending timers are rescheduled."""
    try:
        return service.update_auto_release_settings(deal_id, current_user.id, request.enabled, request.days)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


# ============================================================================
# CREATOR ENDPOINTS
# ============================================================================

@router.post("/{deal_id}/accept", response_model=DealResponse)
def accept_deal(
    deal_id: str,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.ACCEPT_DEALS))
):
    """Accept a DRAFT deal offered to (or open to) this creator."""
    try:
        return service.accept_deal(deal_id, current_user.id)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


# ============================================================================
# SHARED ENDPOINTS
# ============================================================================

@router.post("/{deal_id}/disputes", response_model=DealResponse)
def open_dispute(
    deal_id: str,
    request: DisputeCreate,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.RAISE_DISPUTES))
):
    """Raise a dispute on a funded deal. Pending auto-releases are cancelled."""
    try:
        return service.open_dispute(deal_id, current_user.id, request.reason, request.milestone_id)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("", response_model=List[DealResponse])
def list_deals(
    state: Optional[str] = Query(None, description="Filter by deal state"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.VIEW_DEALS))
):
    """List deals where the user is the brand or the creator (all deals for admins)."""
    try:
        return service.list_deals(current_user, state=state, limit=limit, offset=offset)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("/{deal_id}", response_model=DealResponse)
def get_deal(
    deal_id: str,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.VIEW_DEALS))
):
    try:
        return service.get_deal(deal_id, current_user)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("/{deal_id}/events", response_model=List[EventLogResponse])
def list_deal_events(
    deal_id: str,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.VIEW_DEALS))
):
    """Audit trail of the deal, oldest first."""
    try:
        return service.list_events(deal_id, current_user)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
