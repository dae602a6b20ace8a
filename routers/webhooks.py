# Payments Webhook Router for FlowPay Escrow
# Single ingestion point for provider events. The provider retries anything
# that is not answered with 2xx, so only a recorded (or replayed) event is
# acknowledged.

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
import logging

from core.payments import PaymentsProvider, InvalidSignature
from database.config import get_db
from services.errors import ValidationFailed
from services.webhook_reconciler import WebhookReconciler
from routers.common import get_payments_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/payments")
async def payments_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: PaymentsProvider = Depends(get_payments_provider)
):
    """
    Handle payments provider webhooks.
    Verifies the signature over the raw body before anything is parsed.
    """
    payload = await request.body()
    signature = request.headers.get(provider.signature_header)

    try:
        # Database work stays off the event loop
        outcome = await run_in_threadpool(WebhookReconciler(db, provider).handle, payload, signature)
    except InvalidSignature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except ValidationFailed as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Webhook processing error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"status": "received", "outcome": outcome}
