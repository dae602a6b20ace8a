# Payouts Router for FlowPay Escrow
# Read-only view of the provider transfers behind released milestones

from fastapi import APIRouter, Depends, Query
from typing import List, Optional
import logging

from database.models import User
from auth.roles import Permission
from auth.decorators import require_permission
from schemas.escrow import PayoutResponse
from services.escrow_service import EscrowService
from routers.common import get_escrow_service, http_error, DOMAIN_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["Payouts"])


@router.get("", response_model=List[PayoutResponse])
def list_payouts(
    deal_id: Optional[str] = Query(None, description="Only payouts of this deal"),
    status: Optional[str] = Query(None, description="PROCESSING, PAID, FAILED or REVERSED"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.VIEW_DEALS))
):
    """Payouts on the user's deals, newest first (all payouts for admins)."""
    try:
        return service.list_payouts(current_user, deal_id=deal_id, status=status, limit=limit, offset=offset)
    except DOMAIN_ERRORS as e:
        raise http_error(e)


@router.get("/{payout_id}", response_model=PayoutResponse)
def get_payout(
    payout_id: str,
    service: EscrowService = Depends(get_escrow_service),
    current_user: User = Depends(require_permission(Permission.VIEW_DEALS))
):
    try:
        return service.get_payout(payout_id, current_user)
    except DOMAIN_ERRORS as e:
        raise http_error(e)
