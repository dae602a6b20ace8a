# Escrow Service
# Deal aggregate: creation, acceptance, funding, disputes and refunds.
#
#   DRAFT --fund--> FUNDED --(last milestone released)--> RELEASED
#                     |  \
#                     |   +--dispute--> DISPUTED --resolve--> RELEASED | REFUNDED
#                     +--refund--> REFUNDED

import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Callable

from sqlalchemy import exists, or_
from sqlalchemy.orm import Session

from config.app_config import AUTO_RELEASE_ENABLED_DEFAULT, AUTO_RELEASE_DAYS_DEFAULT
from core.payments import PaymentsProvider, PartyRef, ProviderError, ProviderTimeout
from database.models import User, UserType
from database.escrow_models import (
    Deal, Milestone, Payout, EventLog, DealStateDB, MilestoneStateDB, PayoutStatusDB
)
from database.transitions import compare_and_set, lock_row, unit_of_work
from services.auto_release import ReleaseScheduler, DatabaseReleaseScheduler
from services.errors import NotFound, Forbidden, InvalidState, ValidationFailed
from services.event_log import record_event, list_events, SYSTEM_ACTOR
from services.milestone_service import MilestoneService

logger = logging.getLogger(__name__)

TERMINAL_DEAL_STATES = (DealStateDB.RELEASED, DealStateDB.REFUNDED)


def funding_idempotency_key(deal_id: str) -> str:
    return f"fund-{deal_id}"


def refund_idempotency_key(deal_id: str) -> str:
    return f"refund-{deal_id}"


def _is_admin(user: User) -> bool:
    value = user.user_type.value if hasattr(user.user_type, "value") else user.user_type
    return str(value).lower() == UserType.ADMIN.value


class EscrowService:
    """Deal-level operations for one session."""

    def __init__(
        self,
        db: Session,
        provider: PaymentsProvider,
        scheduler: Optional[ReleaseScheduler] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.provider = provider
        self.scheduler = scheduler or DatabaseReleaseScheduler(db)
        self.clock = clock
        self.milestones = MilestoneService(db, provider, self.scheduler, clock)

    # ========================================================================
    # READS
    # ========================================================================

    def get_deal(self, deal_id: str, user: Optional[User] = None) -> Deal:
        deal = self.db.query(Deal).filter(Deal.id == deal_id).first()
        if not deal:
            raise NotFound("Deal not found")
        if user is not None and not self._can_view(deal, user):
            raise Forbidden("You don't have access to this deal")
        return deal

    def list_deals(self, user: User, state: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Deal]:
        query = self.db.query(Deal)
        if not _is_admin(user):
            query = query.filter(or_(
                Deal.brand_id == user.id,
                Deal.creator_id == user.id,
                Deal.proposed_creator_id == user.id
            ))
        if state:
            try:
                query = query.filter(Deal.state == DealStateDB(state.upper()))
            except ValueError:
                raise ValidationFailed(f"Unknown deal state: {state}")
        return query.order_by(Deal.created_at.desc()).offset(offset).limit(limit).all()

    def get_milestone(self, milestone_id: str, user: Optional[User] = None) -> Milestone:
        milestone = self.milestones.get_milestone(milestone_id)
        if user is not None and not self._can_view(milestone.deal, user):
            raise Forbidden("You don't have access to this milestone")
        return milestone

    def list_events(self, deal_id: str, user: Optional[User] = None) -> List[EventLog]:
        self.get_deal(deal_id, user)
        return list_events(self.db, deal_id)

    def list_payouts(
        self,
        user: User,
        deal_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Payout]:
        """Payouts on deals the user is a party to (all payouts for admins), newest first."""
        query = self.db.query(Payout).join(Deal, Payout.deal_id == Deal.id)
        if not _is_admin(user):
            query = query.filter(or_(Deal.brand_id == user.id, Deal.creator_id == user.id))
        if deal_id:
            query = query.filter(Payout.deal_id == deal_id)
        if status:
            try:
                query = query.filter(Payout.status == PayoutStatusDB(status.upper()))
            except ValueError:
                raise ValidationFailed(f"Unknown payout status: {status}")
        return query.order_by(Payout.created_at.desc(), Payout.id).offset(offset).limit(limit).all()

    def get_payout(self, payout_id: str, user: Optional[User] = None) -> Payout:
        payout = self.db.query(Payout).filter(Payout.id == payout_id).first()
        if not payout:
            raise NotFound("Payout not found")
        if user is not None and not self._can_view(payout.deal, user):
            raise Forbidden("You don't have access to this payout")
        return payout

    def _can_view(self, deal: Deal, user: User) -> bool:
        return _is_admin(user) or user.id in (deal.brand_id, deal.creator_id, deal.proposed_creator_id)

    # ========================================================================
    # CREATE / ACCEPT
    # ========================================================================

    def create_deal(
        self,
        brand_id: str,
        milestones: List[Dict[str, Any]],
        currency: str = "KES",
        title: Optional[str] = None,
        proposed_creator_id: Optional[str] = None,
        auto_release_enabled: Optional[bool] = None,
        auto_release_days: Optional[int] = None
    ) -> Deal:
        """
        Create a DRAFT deal. The total is the sum of the milestone amounts, so
        the two can never disagree.
        """
        if not milestones:
            raise ValidationFailed("A deal needs at least one milestone")
        for item in milestones:
            amount = item.get("amount")
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValidationFailed("Milestone amounts must be positive integers in minor units")
            if not (item.get("title") or "").strip():
                raise ValidationFailed("Every milestone needs a title")
        if not currency or len(currency) != 3 or not currency.isalpha():
            raise ValidationFailed("currency must be a 3-letter ISO code")

        enabled = AUTO_RELEASE_ENABLED_DEFAULT if auto_release_enabled is None else auto_release_enabled
        days = AUTO_RELEASE_DAYS_DEFAULT if auto_release_days is None else auto_release_days
        if days < 1:
            raise ValidationFailed("auto_release_days must be at least 1")

        brand = self.db.query(User).filter(User.id == brand_id).first()
        if not brand:
            raise NotFound("Brand not found")
        if proposed_creator_id:
            creator = self.db.query(User).filter(User.id == proposed_creator_id).first()
            if not creator or creator.user_type != UserType.CREATOR:
                raise ValidationFailed("proposed_creator_id must reference a creator account")

        with unit_of_work(self.db):
            deal = Deal(
                brand_id=brand_id,
                proposed_creator_id=proposed_creator_id,
                title=title,
                currency=currency.upper(),
                total_amount=sum(item["amount"] for item in milestones),
                state=DealStateDB.DRAFT,
                auto_release_enabled=enabled,
                auto_release_days=days
            )
            self.db.add(deal)
            self.db.flush()

            for position, item in enumerate(milestones):
                self.db.add(Milestone(
                    deal_id=deal.id,
                    position=position,
                    title=item["title"],
                    description=item.get("description"),
                    amount=item["amount"],
                    due_at=item.get("due_at"),
                    state=MilestoneStateDB.PENDING
                ))

            record_event(self.db, "deal.created", brand_id, deal.id, None, {
                "total_amount": deal.total_amount,
                "currency": deal.currency,
                "milestones": len(milestones),
                "proposed_creator_id": proposed_creator_id,
            })

        self.db.refresh(deal)
        logger.info(f"Deal {deal.id} created by {brand_id} for {deal.total_amount} {deal.currency}")
        return deal

    def accept_deal(self, deal_id: str, creator_id: str) -> Deal:
        deal = self.get_deal(deal_id)
        if deal.creator_id == creator_id:
            return deal
        if deal.proposed_creator_id and deal.proposed_creator_id != creator_id:
            raise Forbidden("This deal was offered to another creator")
        if deal.state != DealStateDB.DRAFT:
            raise InvalidState(f"Deal is {deal.state.value}; only DRAFT deals can be accepted")

        with unit_of_work(self.db):
            accepted = compare_and_set(
                self.db, Deal, deal_id, [DealStateDB.DRAFT],
                Deal.creator_id.is_(None),
                creator_id=creator_id,
                accepted_at=self.clock()
            )
            if accepted:
                record_event(self.db, "deal.accepted", creator_id, deal_id)

        if not accepted:
            raise InvalidState("Deal has already been accepted")
        return self.get_deal(deal_id)

    # ========================================================================
    # FUNDING
    # ========================================================================

    def fund_deal(self, deal_id: str, brand_id: str) -> Deal:
        """
        Charge the brand into escrow. A synchronous confirmation moves the deal
        to FUNDED immediately; otherwise the payment reference is kept and the
        funding webhook (or the reconciliation sweep) completes it.
        """
        deal = self.get_deal(deal_id)
        if deal.brand_id != brand_id:
            raise Forbidden("Only the deal's brand can fund it")
        if deal.state == DealStateDB.FUNDED:
            return deal
        if deal.state != DealStateDB.DRAFT:
            raise InvalidState(f"Deal is {deal.state.value}; only DRAFT deals can be funded")
        if not deal.creator_id:
            raise InvalidState("Deal has no creator yet; it must be accepted before funding")

        milestone_total = sum(m.amount for m in deal.milestones)
        if milestone_total != deal.total_amount:
            raise InvalidState(f"Milestones add up to {milestone_total}, deal total is {deal.total_amount}")

        brand = self.db.query(User).filter(User.id == brand_id).first()
        payer = PartyRef(
            user_id=brand_id,
            email=brand.email if brand else None,
            provider_code=brand.payment_authorization_code if brand else None
        )
        currency, total = deal.currency, deal.total_amount
        self.db.rollback()

        try:
            escrow_ref = self.provider.create_escrow(deal_id, currency)
            result = self.provider.fund_escrow(
                escrow_ref, total, payer, idempotency_key=funding_idempotency_key(deal_id)
            )
        except ProviderError as e:
            logger.error(f"Funding deal {deal_id} failed: {e}")
            with unit_of_work(self.db):
                record_event(self.db, "deal.funding_failed", brand_id, deal_id, None, {
                    "error": str(e),
                    "error_type": type(e).__name__,
                })
            raise

        with unit_of_work(self.db):
            if result.confirmed:
                self.apply_funding_confirmation(deal_id, escrow_ref, result.payment_ref, total, brand_id)
            else:
                pending = compare_and_set(
                    self.db, Deal, deal_id, [DealStateDB.DRAFT],
                    funding_ref=result.payment_ref
                )
                if pending:
                    record_event(self.db, "deal.funding_pending", brand_id, deal_id, None, {
                        "payment_ref": result.payment_ref,
                    })

        deal = self.get_deal(deal_id)
        self.db.refresh(deal)
        return deal

    def apply_funding_confirmation(
        self,
        deal_id: str,
        escrow_ref: str,
        payment_ref: str,
        amount: int,
        actor_id: str = SYSTEM_ACTOR
    ) -> bool:
        """DRAFT -> FUNDED, writing the escrow reference once. Runs in the caller's transaction."""
        deal = self.get_deal(deal_id)
        if amount != deal.total_amount:
            logger.warning(f"Funding for deal {deal_id} was {amount}, expected {deal.total_amount}")
            record_event(self.db, "deal.funding_amount_mismatch", actor_id, deal_id, None, {
                "payment_ref": payment_ref,
                "amount": amount,
                "expected": deal.total_amount,
            })
            return False

        funded = compare_and_set(
            self.db, Deal, deal_id, [DealStateDB.DRAFT],
            Deal.escrow_ref.is_(None),
            state=DealStateDB.FUNDED,
            escrow_ref=escrow_ref,
            funding_ref=payment_ref,
            funded_at=self.clock()
        )
        if funded:
            record_event(self.db, "deal.funded", actor_id, deal_id, None, {
                "escrow_ref": escrow_ref,
                "payment_ref": payment_ref,
                "amount": amount,
            })
            logger.info(f"Deal {deal_id} funded ({escrow_ref})")
        return funded

    def apply_funding_failure(self, deal_id: str, payment_ref: str, reason: Optional[str]) -> bool:
        """Clear a pending funding so the brand can try again. The deal stays DRAFT."""
        cleared = compare_and_set(
            self.db, Deal, deal_id, [DealStateDB.DRAFT],
            Deal.funding_ref == payment_ref,
            funding_ref=None
        )
        record_event(self.db, "deal.funding_failed", SYSTEM_ACTOR, deal_id, None, {
            "payment_ref": payment_ref,
            "reason": reason,
        })
        return cleared

    # ========================================================================
    # AUTO-RELEASE SETTINGS
    # ========================================================================

    def update_auto_release_settings(self, deal_id: str, brand_id: str, enabled: bool, days: int) -> Deal:
        deal = self.get_deal(deal_id)
        if deal.brand_id != brand_id:
            raise Forbidden("Only the deal's brand can change auto-release settings")
        if deal.state in TERMINAL_DEAL_STATES:
            raise InvalidState(f"Deal is {deal.state.value}")
        if days is None or days < 1:
            raise ValidationFailed("days must be at least 1")

        with unit_of_work(self.db):
            deal.auto_release_enabled = enabled
            deal.auto_release_days = days

            # Pending timers follow the new settings
            submitted = [m for m in deal.milestones if m.state == MilestoneStateDB.SUBMITTED]
            for milestone in submitted:
                if enabled and deal.state == DealStateDB.FUNDED:
                    fire_at = (milestone.submitted_at or self.clock()) + timedelta(days=days)
                    self.scheduler.schedule(milestone.id, fire_at, {"deal_id": deal.id})
                else:
                    self.scheduler.cancel(milestone.id)

            record_event(self.db, "deal.auto_release_updated", brand_id, deal_id, None, {
                "enabled": enabled,
                "days": days,
                "rescheduled": len(submitted),
            })

        self.db.refresh(deal)
        return deal

    # ========================================================================
    # DISPUTES & REFUNDS
    # ========================================================================

    def open_dispute(self, deal_id: str, actor_id: str, reason: str, milestone_id: Optional[str] = None) -> Deal:
        """Freeze the deal: no submissions, approvals or automatic releases until resolved."""
        deal = self.get_deal(deal_id)
        if actor_id not in (deal.brand_id, deal.creator_id):
            raise Forbidden("Only the deal's brand or creator can open a dispute")
        if not reason or not reason.strip():
            raise ValidationFailed("A reason is required to open a dispute")
        if milestone_id and milestone_id not in {m.id for m in deal.milestones}:
            raise NotFound("Milestone not found on this deal")
        if deal.state != DealStateDB.FUNDED:
            raise InvalidState(f"Deal is {deal.state.value}; only FUNDED deals can be disputed")

        with unit_of_work(self.db):
            opened = compare_and_set(
                self.db, Deal, deal_id, [DealStateDB.FUNDED],
                state=DealStateDB.DISPUTED
            )
            if opened:
                for milestone in self.db.query(Milestone).filter(Milestone.deal_id == deal_id).all():
                    self.scheduler.cancel(milestone.id)
                milestone_disputed = False
                if milestone_id:
                    milestone_disputed = compare_and_set(
                        self.db, Milestone, milestone_id, [MilestoneStateDB.SUBMITTED],
                        state=MilestoneStateDB.DISPUTED
                    )
                record_event(self.db, "deal.disputed", actor_id, deal_id, milestone_id, {
                    "reason": reason,
                    "milestone_disputed": milestone_disputed,
                })

        if not opened:
            raise InvalidState("Deal is no longer FUNDED")
        logger.info(f"Dispute opened on deal {deal_id} by {actor_id}")
        return self.get_deal(deal_id)

    def resolve_dispute(
        self,
        deal_id: str,
        admin_id: str,
        outcome: str,
        note: Optional[str] = None,
        refund_amount: Optional[int] = None
    ) -> Deal:
        """Admin decision: release everything to the creator, or refund the brand."""
        if outcome not in ("release", "refund"):
            raise ValidationFailed("outcome must be 'release' or 'refund'")

        deal = self.get_deal(deal_id)
        if outcome == "release" and deal.state == DealStateDB.RELEASED:
            return deal
        if outcome == "refund" and deal.state == DealStateDB.REFUNDED:
            return deal
        if deal.state != DealStateDB.DISPUTED:
            raise InvalidState(f"Deal is {deal.state.value}; only DISPUTED deals can be resolved")

        if outcome == "refund":
            with unit_of_work(self.db):
                record_event(self.db, "deal.dispute_resolved", admin_id, deal_id, None, {
                    "outcome": outcome, "note": note, "refund_amount": refund_amount,
                })
            return self.refund_deal(deal_id, admin_id, note or "Dispute resolved in favour of the brand", refund_amount)

        now = self.clock()
        with unit_of_work(self.db):
            to_release = []
            for milestone in self.db.query(Milestone).filter(Milestone.deal_id == deal_id).all():
                if milestone.state == MilestoneStateDB.RELEASED:
                    continue
                if self.milestones.approve_for_dispute(milestone.id, now):
                    to_release.append(milestone.id)
            record_event(self.db, "deal.dispute_resolved", admin_id, deal_id, None, {
                "outcome": outcome, "note": note, "milestones": to_release,
            })

        failures = []
        for milestone_id in to_release:
            try:
                self.milestones.release_with_lease(milestone_id, admin_id, reason=note)
            except ProviderError as e:
                failures.append(e)

        if failures:
            # Successful releases stand; failed ones stay APPROVED for retry
            raise failures[0]
        return self.get_deal(deal_id)

    def refund_deal(self, deal_id: str, admin_id: str, reason: str, amount: Optional[int] = None) -> Deal:
        """
        Return the unreleased balance (or part of it) to the brand.

        The deal is marked as refunding before the provider is called, in the
        same statement that checks no release is in flight. Releases refuse to
        start while the mark is set, so escrow is never paid out twice.
        """
        deal = self.get_deal(deal_id)
        if deal.state == DealStateDB.REFUNDED:
            return deal
        if deal.state not in (DealStateDB.FUNDED, DealStateDB.DISPUTED):
            raise InvalidState(f"Deal is {deal.state.value}; only FUNDED or DISPUTED deals can be refunded")
        if amount is not None and amount <= 0:
            raise ValidationFailed("Refund amount must be positive")

        now = self.clock()
        release_in_flight = exists().where(
            Milestone.deal_id == deal_id,
            Milestone.state == MilestoneStateDB.APPROVED,
            Milestone.release_lease_until > now
        )
        with unit_of_work(self.db):
            lock_row(self.db, Deal, deal_id)
            started = compare_and_set(
                self.db, Deal, deal_id, [DealStateDB.FUNDED, DealStateDB.DISPUTED],
                ~release_in_flight,
                refund_started_at=now
            )
        if not started:
            deal = self.get_deal(deal_id)
            self.db.refresh(deal)
            if deal.state == DealStateDB.REFUNDED:
                return deal
            if deal.state in (DealStateDB.FUNDED, DealStateDB.DISPUTED):
                raise InvalidState("A milestone release is in progress; retry the refund once it settles")
            raise InvalidState(f"Deal is {deal.state.value}; only FUNDED or DISPUTED deals can be refunded")

        # No release can start from here on, so the released total is final
        milestones = self.db.query(Milestone).filter(Milestone.deal_id == deal_id).all()
        deal = self.get_deal(deal_id)
        released = sum(m.amount for m in milestones if m.state == MilestoneStateDB.RELEASED)
        unreleased = deal.total_amount - released
        if unreleased <= 0 or (amount is not None and amount > unreleased):
            self._drop_refund_mark(deal_id)
            if unreleased <= 0:
                raise InvalidState("Nothing left in escrow to refund")
            raise ValidationFailed(f"Refund amount must be between 1 and {unreleased}")

        escrow_ref = deal.escrow_ref
        refund_amount = amount if amount is not None else unreleased
        self.db.rollback()

        try:
            refund_ref = self.provider.refund_to_brand(
                escrow_ref,
                refund_amount,
                idempotency_key=refund_idempotency_key(deal_id)
            )
        except ProviderError as e:
            logger.error(f"Refund of deal {deal_id} failed: {e}")
            # A timed-out refund may still have gone through; keep releases blocked
            # until the refund is retried under the same idempotency key
            outcome_unknown = isinstance(e, ProviderTimeout)
            with unit_of_work(self.db):
                if not outcome_unknown:
                    compare_and_set(
                        self.db, Deal, deal_id, [DealStateDB.FUNDED, DealStateDB.DISPUTED],
                        refund_started_at=None
                    )
                record_event(self.db, "deal.refund_failed", admin_id, deal_id, None, {
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "releases_blocked": outcome_unknown,
                })
            raise

        with unit_of_work(self.db):
            refunded = compare_and_set(
                self.db, Deal, deal_id, [DealStateDB.FUNDED, DealStateDB.DISPUTED],
                state=DealStateDB.REFUNDED,
                refund_ref=refund_ref,
                refunded_at=self.clock()
            )
            if refunded:
                for milestone in milestones:
                    self.scheduler.cancel(milestone.id)
                record_event(self.db, "deal.refunded", admin_id, deal_id, None, {
                    "refund_ref": refund_ref,
                    "amount": refund_amount,
                    "reason": reason,
                })

        logger.info(f"Deal {deal_id} refunded ({refund_ref})")
        return self.get_deal(deal_id)

    def _drop_refund_mark(self, deal_id: str):
        with unit_of_work(self.db):
            compare_and_set(
                self.db, Deal, deal_id, [DealStateDB.FUNDED, DealStateDB.DISPUTED],
                refund_started_at=None
            )
