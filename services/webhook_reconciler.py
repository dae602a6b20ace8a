# Webhook Reconciler
# Folds provider events back into deal and milestone state. Delivery is
# at-least-once and unordered, so every effect is guarded by the same
# compare-and-set preconditions as the synchronous paths, and the processed
# event id is recorded in the same transaction as the effect.

import logging
from datetime import datetime
from typing import Callable, Dict, Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.payments import PaymentsProvider, InvalidSignature, ProviderError, EscrowStatus
from database.models import User
from database.escrow_models import (
    Deal, Milestone, Payout, ExternalEvent, DealStateDB, MilestoneStateDB, PayoutStatusDB
)
from database.transitions import unit_of_work
from schemas.provider_events import (
    ProviderEvent, FundingConfirmed, FundingFailed, TransferCreated, PayoutPaid,
    PayoutFailed, AccountUpdated, UnhandledEvent
)
from services.errors import ValidationFailed
from services.escrow_service import EscrowService
from services.event_log import record_event, SYSTEM_ACTOR

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """Apply one provider webhook at a time, exactly once per provider event id."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"

    def __init__(
        self,
        db: Session,
        provider: PaymentsProvider,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.provider = provider
        self.clock = clock
        self.escrow = EscrowService(db, provider, clock=clock)
        self.milestones = self.escrow.milestones

    def handle(self, raw_body: bytes, signature: str) -> str:
        """
        Verify, deduplicate and apply a webhook body.

        Raises InvalidSignature without touching state when the signature does
        not match. Returns DUPLICATE for an event id that was already applied.
        """
        if not self.provider.verify_webhook(raw_body, signature):
            logger.warning(f"Rejected {self.provider.name} webhook with invalid signature")
            raise InvalidSignature("Webhook signature verification failed")

        try:
            event = self.provider.parse_event(raw_body)
        except (ValueError, ValidationError) as e:
            raise ValidationFailed(f"Malformed webhook payload: {e}")

        if self._already_processed(event.event_id):
            logger.info(f"Webhook {event.event_id} ({event.type}) already processed")
            return self.DUPLICATE

        try:
            with unit_of_work(self.db):
                self._apply(event)
                self.db.add(ExternalEvent(
                    provider=self.provider.name,
                    provider_event_id=event.event_id,
                    event_type=event.type,
                    processed_at=self.clock()
                ))
                self.db.flush()
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            if self._already_processed(event.event_id):
                logger.info(f"Webhook {event.event_id} processed concurrently, treating as replay")
                return self.DUPLICATE
            raise
        except Exception as e:
            logger.exception(f"Webhook {event.event_id} ({event.type}) could not be applied")
            with unit_of_work(self.db):
                record_event(self.db, "webhook.failed", SYSTEM_ACTOR, payload={
                    "event_id": event.event_id,
                    "type": event.type,
                    "error": str(e),
                })
            raise

        logger.info(f"Webhook {event.event_id} ({event.type}) processed")
        return self.PROCESSED

    def _already_processed(self, event_id: str) -> bool:
        return self.db.query(ExternalEvent.id).filter(
            ExternalEvent.provider == self.provider.name,
            ExternalEvent.provider_event_id == event_id
        ).first() is not None

    # ========================================================================
    # DISPATCH
    # ========================================================================

    def _apply(self, event: ProviderEvent):
        if isinstance(event, FundingConfirmed):
            self._on_funding_confirmed(event)
        elif isinstance(event, FundingFailed):
            self._on_funding_failed(event)
        elif isinstance(event, TransferCreated):
            self._on_transfer_created(event)
        elif isinstance(event, PayoutPaid):
            self._on_payout_paid(event)
        elif isinstance(event, PayoutFailed):
            self._on_payout_failed(event)
        elif isinstance(event, AccountUpdated):
            self._on_account_updated(event)
        elif isinstance(event, UnhandledEvent):
            logger.debug(f"Ignoring provider event type {event.provider_type}")
        else:
            raise TypeError(f"No handler for event variant {type(event).__name__}")

    def _find_deal(self, deal_id, *refs):
        if deal_id:
            deal = self.db.query(Deal).filter(Deal.id == deal_id).first()
            if deal:
                return deal
        for ref in refs:
            if not ref:
                continue
            deal = self.db.query(Deal).filter((Deal.escrow_ref == ref) | (Deal.funding_ref == ref)).first()
            if deal:
                return deal
        return None

    def _on_funding_confirmed(self, event: FundingConfirmed):
        deal = self._find_deal(event.deal_id, event.escrow_ref, event.payment_ref)
        if deal is None:
            self._log_orphan(event, {"deal_id": event.deal_id, "escrow_ref": event.escrow_ref})
            return
        if deal.state != DealStateDB.DRAFT:
            return
        self.escrow.apply_funding_confirmation(deal.id, event.escrow_ref, event.payment_ref, event.amount)

    def _on_funding_failed(self, event: FundingFailed):
        deal = self._find_deal(event.deal_id, event.payment_ref)
        if deal is None:
            self._log_orphan(event, {"deal_id": event.deal_id, "payment_ref": event.payment_ref})
            return
        if deal.state != DealStateDB.DRAFT:
            return
        self.escrow.apply_funding_failure(deal.id, event.payment_ref, event.reason)

    def _on_transfer_created(self, event: TransferCreated):
        milestone = self.db.query(Milestone).filter(Milestone.id == event.milestone_id).first()
        if milestone is None:
            self._log_orphan(event, {"milestone_id": event.milestone_id})
            return
        # Completes a release whose synchronous call timed out
        self.milestones.fold_release(milestone.id, event.payout_ref, SYSTEM_ACTOR)

    def _on_payout_paid(self, event: PayoutPaid):
        milestone = self.db.query(Milestone).filter(Milestone.id == event.milestone_id).first()
        if milestone is None:
            self._log_orphan(event, {"milestone_id": event.milestone_id})
            return
        self.milestones.fold_release(milestone.id, event.payout_ref, SYSTEM_ACTOR)

        payout = self.db.query(Payout).filter(Payout.milestone_id == milestone.id).first()
        if payout is None or payout.status in (PayoutStatusDB.PAID, PayoutStatusDB.REVERSED):
            return
        payout.status = PayoutStatusDB.PAID
        payout.paid_at = self.clock()
        payout.failure_reason = None
        record_event(self.db, "payout.paid", SYSTEM_ACTOR, milestone.deal_id, milestone.id, {
            "payout_ref": event.payout_ref,
        })

    def _on_payout_failed(self, event: PayoutFailed):
        milestone = self.db.query(Milestone).filter(Milestone.id == event.milestone_id).first()
        if milestone is None:
            self._log_orphan(event, {"milestone_id": event.milestone_id})
            return

        payout = self.db.query(Payout).filter(Payout.milestone_id == milestone.id).first()
        if payout is not None and payout.status != PayoutStatusDB.REVERSED:
            payout.status = PayoutStatusDB.REVERSED if event.reversed else PayoutStatusDB.FAILED
            payout.failure_reason = event.reason
        elif payout is None and milestone.state == MilestoneStateDB.APPROVED:
            milestone.last_release_error = f"payout failed: {event.reason}"

        # The milestone never moves back; operations follow up from the log
        logger.error(f"Payout {event.payout_ref} for milestone {milestone.id} failed: {event.reason}")
        record_event(self.db, "payout.failed", SYSTEM_ACTOR, milestone.deal_id, milestone.id, {
            "payout_ref": event.payout_ref,
            "reason": event.reason,
            "reversed": event.reversed,
        })

    def _on_account_updated(self, event: AccountUpdated):
        user = self.db.query(User).filter(User.payment_recipient_code == event.account_ref).first()
        if user is None:
            self._log_orphan(event, {"account_ref": event.account_ref})
            return
        user.payouts_enabled = event.payouts_enabled
        record_event(self.db, "account.updated", SYSTEM_ACTOR, payload={
            "user_id": user.id,
            "payouts_enabled": event.payouts_enabled,
        })

    def _log_orphan(self, event: ProviderEvent, context: Dict[str, Any]):
        logger.warning(f"Webhook {event.event_id} ({event.type}) references unknown entity: {context}")
        record_event(self.db, "webhook.unmatched", SYSTEM_ACTOR, payload={
            "event_id": event.event_id,
            "type": event.type,
            **context,
        })

    # ========================================================================
    # FUNDING SWEEP
    # ========================================================================

    def sweep_pending_fundings(self, limit: int = 100) -> Dict[str, int]:
        """
        Ask the provider about DRAFT deals still waiting on a funding webhook
        and apply confirmations that were missed.
        """
        summary = {"checked": 0, "funded": 0, "errors": 0}
        pending = (
            self.db.query(Deal)
            .filter(Deal.state == DealStateDB.DRAFT, Deal.funding_ref.isnot(None))
            .limit(limit)
            .all()
        )
        targets = [(d.id, d.currency, d.funding_ref, d.total_amount) for d in pending]
        self.db.rollback()

        for deal_id, currency, funding_ref, total in targets:
            summary["checked"] += 1
            try:
                escrow_ref = self.provider.create_escrow(deal_id, currency)
                status = self.provider.get_status(escrow_ref)
            except ProviderError as e:
                summary["errors"] += 1
                logger.error(f"Funding sweep could not check deal {deal_id}: {e}")
                continue

            if status != EscrowStatus.FUNDED:
                continue
            with unit_of_work(self.db):
                if self.escrow.apply_funding_confirmation(deal_id, escrow_ref, funding_ref, total):
                    summary["funded"] += 1

        if summary["checked"]:
            logger.info(f"Funding sweep: {summary}")
        return summary
