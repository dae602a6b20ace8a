# Shared router dependencies
# Wires the injected payments provider and the per-request services, and maps
# domain errors onto HTTP responses.

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
import logging

from core.payments import (
    PaymentsProvider, PaymentsError, ProviderError, ProviderTimeout, InvalidSignature
)
from database.config import get_db
from services.errors import EscrowError, NotFound, Forbidden, InvalidState, ValidationFailed
from services.escrow_service import EscrowService
from services.milestone_service import MilestoneService

logger = logging.getLogger(__name__)


def get_payments_provider(request: Request) -> PaymentsProvider:
    """The adapter built once at startup and stored on the app."""
    return request.app.state.payments_provider


def get_session_factory(request: Request):
    return request.app.state.session_factory


def get_escrow_service(
    db: Session = Depends(get_db),
    provider: PaymentsProvider = Depends(get_payments_provider)
) -> EscrowService:
    return EscrowService(db, provider)


def get_milestone_service(
    db: Session = Depends(get_db),
    provider: PaymentsProvider = Depends(get_payments_provider)
) -> MilestoneService:
    return MilestoneService(db, provider)


_STATUS_BY_ERROR = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (InvalidState, status.HTTP_409_CONFLICT),
    (ValidationFailed, status.HTTP_400_BAD_REQUEST),
    (InvalidSignature, status.HTTP_400_BAD_REQUEST),
    (ProviderTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
]


def http_error(error: Exception) -> HTTPException:
    """Translate an EscrowError or PaymentsError into the matching HTTPException."""
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            if status_code >= 500:
                logger.error(f"Payments provider error: {error}")
                return HTTPException(
                    status_code=status_code,
                    detail=f"Payment provider error: {error}. The operation can be retried."
                )
            return HTTPException(status_code=status_code, detail=str(error))
    raise error


DOMAIN_ERRORS = (EscrowError, PaymentsError)
