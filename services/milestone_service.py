# Milestone Service
# Milestone state machine: submission, review, forced and automatic release.
#
#   PENDING --submit--> SUBMITTED --approve--> APPROVED --provider ok--> RELEASED
#      ^                    |
#      +--reject/revise-----+
#
# Every transition is a compare-and-set on the current state. The provider is
# only called by the holder of the milestone's release lease, and always
# outside a database transaction.

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config.app_config import RELEASE_LEASE_SECONDS
from core.payments import PaymentsProvider, PartyRef
from database.models import User
from database.escrow_models import (
    Deal, Milestone, Deliverable, Payout, DealStateDB, MilestoneStateDB,
    ApprovalSourceDB, ReviewOutcomeDB, PayoutStatusDB
)
from database.transitions import compare_and_set, lock_row, unit_of_work
from schemas.provider_events import (
    ReleaseMetadata, MilestoneApprovalRelease, ForcedRelease, DisputeRelease
)
from services.auto_release import ReleaseScheduler, DatabaseReleaseScheduler
from services.errors import NotFound, Forbidden, InvalidState, ValidationFailed
from services.event_log import record_event, SYSTEM_ACTOR

logger = logging.getLogger(__name__)

SUBMISSION_TYPES = ("file", "url", "text")


def release_idempotency_key(milestone_id: str) -> str:
    """One key per milestone: every retry of its release is the same transfer."""
    return f"rel-{milestone_id}"


class ReviewDecision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"


_DECISION_OUTCOMES = {
    ReviewDecision.APPROVE: ReviewOutcomeDB.APPROVED,
    ReviewDecision.REJECT: ReviewOutcomeDB.REJECTED,
    ReviewDecision.REQUEST_REVISION: ReviewOutcomeDB.REVISION_REQUESTED,
}


class AutoReleaseOutcome(str, enum.Enum):
    RELEASED = "released"
    NOOP = "noop"
    BUSY = "busy"


@dataclass
class MilestoneResult:
    milestone: Milestone
    payout_ref: Optional[str] = None
    deliverable: Optional[Deliverable] = None


class MilestoneService:
    """State machine for one session. Construct per request or per job."""

    def __init__(
        self,
        db: Session,
        provider: PaymentsProvider,
        scheduler: Optional[ReleaseScheduler] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        lease_seconds: int = RELEASE_LEASE_SECONDS
    ):
        self.db = db
        self.provider = provider
        self.scheduler = scheduler or DatabaseReleaseScheduler(db)
        self.clock = clock
        self.lease_seconds = lease_seconds

    # ========================================================================
    # READS
    # ========================================================================

    def get_milestone(self, milestone_id: str) -> Milestone:
        milestone = self.db.query(Milestone).filter(Milestone.id == milestone_id).first()
        if not milestone:
            raise NotFound("Milestone not found")
        return milestone

    def _reload(self, milestone_id: str) -> Milestone:
        milestone = self.get_milestone(milestone_id)
        self.db.refresh(milestone)
        return milestone

    # ========================================================================
    # SUBMIT
    # ========================================================================

    def submit(
        self,
        milestone_id: str,
        creator_id: str,
        description: str,
        content_url: Optional[str] = None,
        content_hash: Optional[str] = None,
        submission_type: str = "url",
        submission_metadata: Optional[Dict[str, Any]] = None
    ) -> MilestoneResult:
        """Record a deliverable and start the auto-release timer."""
        milestone = self.get_milestone(milestone_id)
        deal = milestone.deal

        if deal.creator_id != creator_id:
            raise Forbidden("Only the deal's creator can submit deliverables")
        if submission_type not in SUBMISSION_TYPES:
            raise ValidationFailed(f"submission_type must be one of: {', '.join(SUBMISSION_TYPES)}")
        if submission_type in ("file", "url") and not content_url:
            raise ValidationFailed("content_url is required for file and url submissions")
        if not description or not description.strip():
            raise ValidationFailed("A description of the deliverable is required")
        if deal.state != DealStateDB.FUNDED:
            raise InvalidState(f"Deal is {deal.state.value}; deliverables can only be submitted on FUNDED deals")

        now = self.clock()
        with unit_of_work(self.db):
            moved = compare_and_set(
                self.db, Milestone, milestone_id, [MilestoneStateDB.PENDING],
                self._deal_in_states(DealStateDB.FUNDED),
                state=MilestoneStateDB.SUBMITTED,
                submitted_at=now
            )
            if not moved:
                current = self._reload(milestone_id)
                raise InvalidState(f"Milestone is {current.state.value}; only PENDING milestones accept submissions")

            revision = self.db.query(Deliverable).filter(Deliverable.milestone_id == milestone_id).count() + 1
            deliverable = Deliverable(
                milestone_id=milestone_id,
                submitted_by=creator_id,
                revision=revision,
                content_url=content_url,
                content_hash=content_hash,
                description=description,
                submission_type=submission_type,
                submission_metadata=submission_metadata or {},
                submitted_at=now
            )
            self.db.add(deliverable)

            fire_at = None
            if deal.auto_release_enabled:
                fire_at = now + timedelta(days=deal.auto_release_days)
                self.scheduler.schedule(milestone_id, fire_at, {"deal_id": deal.id})

            record_event(
                self.db, "milestone.submitted", creator_id, deal.id, milestone_id,
                {
                    "revision": revision,
                    "submission_type": submission_type,
                    "auto_release_at": fire_at.isoformat() if fire_at else None,
                }
            )

        self.db.refresh(deliverable)
        return MilestoneResult(milestone=self._reload(milestone_id), deliverable=deliverable)

    # ========================================================================
    # REVIEW
    # ========================================================================

    def review(
        self,
        milestone_id: str,
        reviewer_id: str,
        decision: ReviewDecision,
        feedback: Optional[str] = None
    ) -> MilestoneResult:
        """
        Brand decision on the latest deliverable.

        Approve releases the milestone's funds. Reject and request_revision send
        the milestone back to PENDING so the creator can resubmit. Repeating a
        decision that already took effect reports the current state.
        """
        decision = ReviewDecision(decision)
        milestone = self.get_milestone(milestone_id)
        deal = milestone.deal

        if deal.brand_id != reviewer_id:
            raise Forbidden("Only the deal's brand can review deliverables")

        deliverable = milestone.latest_deliverable
        if deliverable is None:
            raise InvalidState("Milestone has no deliverable to review")

        if decision == ReviewDecision.APPROVE:
            return self._approve(milestone, deliverable, reviewer_id, feedback)
        return self._send_back(milestone, deliverable, reviewer_id, decision, feedback)

    def _approve(self, milestone: Milestone, deliverable: Deliverable, reviewer_id: str, feedback: Optional[str]) -> MilestoneResult:
        if milestone.state == MilestoneStateDB.SUBMITTED:
            now = self.clock()
            with unit_of_work(self.db):
                won = self._approve_submitted(milestone.id, ApprovalSourceDB.REVIEW, now)
                if won:
                    self._record_review(deliverable, ReviewOutcomeDB.APPROVED, reviewer_id, feedback, now)
                    record_event(self.db, "milestone.approved", reviewer_id, milestone.deal_id, milestone.id,
                                 {"deliverable_id": deliverable.id, "feedback": feedback})
            if won:
                return self.release_with_lease(milestone.id, reviewer_id)
            milestone = self._reload(milestone.id)

        if milestone.state == MilestoneStateDB.APPROVED:
            # Approval already happened (possibly by the timer); finish the release only
            return self._retry_if_idle(milestone.id, reviewer_id)
        if milestone.state == MilestoneStateDB.RELEASED:
            return MilestoneResult(milestone=milestone, payout_ref=milestone.payout_ref)
        raise InvalidState(f"Milestone is {milestone.state.value}; only SUBMITTED milestones can be approved")

    def _send_back(
        self,
        milestone: Milestone,
        deliverable: Deliverable,
        reviewer_id: str,
        decision: ReviewDecision,
        feedback: Optional[str]
    ) -> MilestoneResult:
        outcome = _DECISION_OUTCOMES[decision]
        now = self.clock()

        if milestone.state == MilestoneStateDB.SUBMITTED:
            with unit_of_work(self.db):
                moved = compare_and_set(
                    self.db, Milestone, milestone.id, [MilestoneStateDB.SUBMITTED],
                    state=MilestoneStateDB.PENDING,
                    submitted_at=None
                )
                if moved:
                    self.scheduler.cancel(milestone.id)
                    self._record_review(deliverable, outcome, reviewer_id, feedback, now)
                    event_type = "milestone.rejected" if decision == ReviewDecision.REJECT else "milestone.revision_requested"
                    record_event(self.db, event_type, reviewer_id, milestone.deal_id, milestone.id,
                                 {"deliverable_id": deliverable.id, "feedback": feedback})
            if moved:
                return MilestoneResult(milestone=self._reload(milestone.id), deliverable=deliverable)
            milestone = self._reload(milestone.id)
            self.db.refresh(deliverable)

        if milestone.state == MilestoneStateDB.PENDING and deliverable.review_outcome == outcome:
            return MilestoneResult(milestone=milestone, deliverable=deliverable)
        raise InvalidState(f"Milestone is {milestone.state.value}; only SUBMITTED milestones can be reviewed")

    def _record_review(self, deliverable: Deliverable, outcome: ReviewOutcomeDB, reviewer_id: Optional[str], feedback: Optional[str], now: datetime):
        deliverable.review_outcome = outcome
        deliverable.feedback = feedback
        deliverable.reviewed_by = reviewer_id
        deliverable.reviewed_at = now

    # ========================================================================
    # FORCE RELEASE / RETRY / AUTO RELEASE
    # ========================================================================

    def force_release(self, milestone_id: str, admin_id: str, reason: str) -> MilestoneResult:
        """Admin override: approve (if needed) and release regardless of the brand."""
        if not reason or not reason.strip():
            raise ValidationFailed("A reason is required to force a release")

        milestone = self.get_milestone(milestone_id)
        self._ensure_releasable(milestone.deal)

        now = self.clock()
        if milestone.state == MilestoneStateDB.SUBMITTED:
            with unit_of_work(self.db):
                won = self._approve_submitted(
                    milestone_id, ApprovalSourceDB.FORCE_RELEASE, now,
                    deal_states=(DealStateDB.FUNDED, DealStateDB.DISPUTED)
                )
                if won:
                    record_event(self.db, "milestone.force_released", admin_id, milestone.deal_id, milestone_id,
                                 {"reason": reason, "from_state": MilestoneStateDB.SUBMITTED.value})
            if won:
                return self.release_with_lease(milestone_id, admin_id, reason=reason)
            milestone = self._reload(milestone_id)

        if milestone.state == MilestoneStateDB.APPROVED:
            with unit_of_work(self.db):
                claimed = self._claim_lease(milestone_id, now)
                if claimed:
                    self.scheduler.cancel(milestone_id)
                    record_event(self.db, "milestone.force_released", admin_id, milestone.deal_id, milestone_id,
                                 {"reason": reason, "from_state": MilestoneStateDB.APPROVED.value})
            if claimed:
                return self.release_with_lease(milestone_id, admin_id, reason=reason)
            return MilestoneResult(milestone=self._reload(milestone_id))

        if milestone.state == MilestoneStateDB.RELEASED:
            return MilestoneResult(milestone=milestone, payout_ref=milestone.payout_ref)
        raise InvalidState(f"Milestone is {milestone.state.value}; only SUBMITTED or APPROVED milestones can be force-released")

    def retry_release(self, milestone_id: str, actor_id: str, is_admin: bool = False) -> MilestoneResult:
        """Re-run only the provider release of an APPROVED milestone."""
        milestone = self.get_milestone(milestone_id)
        if not is_admin and milestone.deal.brand_id != actor_id:
            raise Forbidden("Only the deal's brand or an admin can retry a release")

        if milestone.state == MilestoneStateDB.RELEASED:
            return MilestoneResult(milestone=milestone, payout_ref=milestone.payout_ref)
        if milestone.state != MilestoneStateDB.APPROVED:
            raise InvalidState(f"Milestone is {milestone.state.value}; only APPROVED milestones can be retried")
        return self._retry_if_idle(milestone_id, actor_id)

    def auto_release(self, milestone_id: str) -> AutoReleaseOutcome:
        """
        Fired by the scheduler. Behaves like an approval by the system: a
        milestone that is no longer SUBMITTED is left alone, except one whose
        earlier automatic approval still awaits its release.
        """
        milestone = self.db.query(Milestone).filter(Milestone.id == milestone_id).first()
        if milestone is None:
            return AutoReleaseOutcome.NOOP
        if milestone.deal.refund_started_at is not None and milestone.deal.state in (DealStateDB.FUNDED, DealStateDB.DISPUTED):
            # Wait for the refund to settle; the job is dropped if it goes through
            return AutoReleaseOutcome.BUSY

        now = self.clock()
        if milestone.state == MilestoneStateDB.SUBMITTED:
            with unit_of_work(self.db):
                won = self._approve_submitted(milestone_id, ApprovalSourceDB.AUTO_RELEASE, now, cancel_job=False)
                if won:
                    deliverable = milestone.latest_deliverable
                    if deliverable is not None:
                        self._record_review(deliverable, ReviewOutcomeDB.APPROVED, None, None, now)
                    record_event(self.db, "milestone.auto_released", SYSTEM_ACTOR, milestone.deal_id, milestone_id,
                                 {"delay_days": milestone.deal.auto_release_days})
            if not won:
                return AutoReleaseOutcome.NOOP
            self.release_with_lease(milestone_id, SYSTEM_ACTOR)
            return AutoReleaseOutcome.RELEASED

        if milestone.state == MilestoneStateDB.APPROVED and milestone.approved_via == ApprovalSourceDB.AUTO_RELEASE:
            with unit_of_work(self.db):
                claimed = self._claim_lease(milestone_id, now)
            if not claimed:
                return AutoReleaseOutcome.BUSY
            self.release_with_lease(milestone_id, SYSTEM_ACTOR)
            return AutoReleaseOutcome.RELEASED

        return AutoReleaseOutcome.NOOP

    def _retry_if_idle(self, milestone_id: str, actor_id: str) -> MilestoneResult:
        self._ensure_releasable(self.get_milestone(milestone_id).deal)
        with unit_of_work(self.db):
            claimed = self._claim_lease(milestone_id, self.clock())
        if not claimed:
            # Someone else is mid-release, or it just finished
            milestone = self._reload(milestone_id)
            if milestone.state == MilestoneStateDB.APPROVED:
                self._ensure_releasable(milestone.deal)
            return MilestoneResult(milestone=milestone, payout_ref=milestone.payout_ref)
        return self.release_with_lease(milestone_id, actor_id)

    # ========================================================================
    # TRANSITION PRIMITIVES
    # ========================================================================

    def _deal_in_states(self, *states):
        return Milestone.deal_id.in_(select(Deal.id).where(Deal.state.in_(list(states))))

    def _deal_releasable(self, *states):
        """Deal holds funds in one of states and no refund is with the provider."""
        return Milestone.deal_id.in_(
            select(Deal.id).where(Deal.state.in_(list(states)), Deal.refund_started_at.is_(None))
        )

    def _lock_deal_of(self, milestone_id: str):
        # Serializes lease claims against refund_deal, which locks the same row
        deal_id = self.db.query(Milestone.deal_id).filter(Milestone.id == milestone_id).scalar()
        if deal_id is not None:
            lock_row(self.db, Deal, deal_id)

    def _ensure_releasable(self, deal: Deal):
        self.db.refresh(deal)
        if deal.state not in (DealStateDB.FUNDED, DealStateDB.DISPUTED):
            raise InvalidState(f"Deal is {deal.state.value}; funds are not held in escrow")
        if deal.refund_started_at is not None:
            raise InvalidState("A refund of this deal is in progress")

    def _approve_submitted(
        self,
        milestone_id: str,
        source: ApprovalSourceDB,
        now: datetime,
        deal_states=(DealStateDB.FUNDED,),
        cancel_job: bool = True
    ) -> bool:
        """SUBMITTED -> APPROVED, taking the release lease in the same statement."""
        self._lock_deal_of(milestone_id)
        won = compare_and_set(
            self.db, Milestone, milestone_id, [MilestoneStateDB.SUBMITTED],
            self._deal_releasable(*deal_states),
            state=MilestoneStateDB.APPROVED,
            approved_via=source,
            approved_at=now,
            release_lease_until=now + timedelta(seconds=self.lease_seconds),
            last_release_error=None
        )
        if won and cancel_job:
            self.scheduler.cancel(milestone_id)
        return won

    def approve_for_dispute(self, milestone_id: str, now: datetime) -> bool:
        """Any unreleased state -> APPROVED with the lease held. Used by dispute resolution."""
        self._lock_deal_of(milestone_id)
        won = compare_and_set(
            self.db, Milestone, milestone_id,
            [MilestoneStateDB.PENDING, MilestoneStateDB.SUBMITTED, MilestoneStateDB.DISPUTED],
            self._deal_releasable(DealStateDB.DISPUTED),
            state=MilestoneStateDB.APPROVED,
            approved_via=ApprovalSourceDB.DISPUTE_RESOLUTION,
            approved_at=now,
            release_lease_until=now + timedelta(seconds=self.lease_seconds),
            last_release_error=None
        )
        if not won:
            won = self._claim_lease(milestone_id, now)
        self.scheduler.cancel(milestone_id)
        return won

    def _claim_lease(self, milestone_id: str, now: datetime) -> bool:
        self._lock_deal_of(milestone_id)
        return compare_and_set(
            self.db, Milestone, milestone_id, [MilestoneStateDB.APPROVED],
            or_(Milestone.release_lease_until.is_(None), Milestone.release_lease_until < now),
            self._deal_releasable(DealStateDB.FUNDED, DealStateDB.DISPUTED),
            release_lease_until=now + timedelta(seconds=self.lease_seconds)
        )

    # ========================================================================
    # RELEASE
    # ========================================================================

    def release_with_lease(self, milestone_id: str, actor_id: str, reason: Optional[str] = None) -> MilestoneResult:
        """
        Call the provider for an APPROVED milestone whose lease this caller holds.
        On failure the lease is dropped and the milestone stays APPROVED.
        """
        milestone = self._reload(milestone_id)
        deal = milestone.deal
        creator = self.db.query(User).filter(User.id == deal.creator_id).first()
        payee = PartyRef(
            user_id=deal.creator_id,
            email=creator.email if creator else None,
            provider_code=creator.payment_recipient_code if creator else None
        )
        metadata = self._release_metadata(milestone, actor_id, reason)
        idempotency_key = release_idempotency_key(milestone_id)
        deal_id, escrow_ref, amount = deal.id, deal.escrow_ref, milestone.amount

        # No transaction stays open across the provider call
        self.db.rollback()

        try:
            payout_ref = self.provider.release_to_creator(
                escrow_ref, amount, payee, metadata, idempotency_key
            )
        except Exception as e:
            logger.error(f"Release of milestone {milestone_id} failed: {e}")
            with unit_of_work(self.db):
                compare_and_set(
                    self.db, Milestone, milestone_id, [MilestoneStateDB.APPROVED],
                    release_lease_until=None,
                    last_release_error=f"{type(e).__name__}: {e}"
                )
                record_event(self.db, "milestone.release_failed", actor_id, deal_id, milestone_id, {
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "code": getattr(e, "code", None),
                    "idempotency_key": idempotency_key,
                })
            raise

        with unit_of_work(self.db):
            self.fold_release(milestone_id, payout_ref, actor_id)

        milestone = self._reload(milestone_id)
        return MilestoneResult(milestone=milestone, payout_ref=milestone.payout_ref or payout_ref)

    def _release_metadata(self, milestone: Milestone, actor_id: str, reason: Optional[str]) -> ReleaseMetadata:
        base = {"deal_id": milestone.deal_id, "milestone_id": milestone.id, "currency": milestone.deal.currency}
        if milestone.approved_via == ApprovalSourceDB.FORCE_RELEASE:
            return ForcedRelease(admin_id=actor_id, reason=reason or "retry of forced release", **base)
        if milestone.approved_via == ApprovalSourceDB.DISPUTE_RESOLUTION:
            return DisputeRelease(admin_id=actor_id, note=reason, **base)
        approved_via = "auto_release" if milestone.approved_via == ApprovalSourceDB.AUTO_RELEASE else "review"
        return MilestoneApprovalRelease(approved_via=approved_via, **base)

    def fold_release(self, milestone_id: str, payout_ref: str, actor_id: str = SYSTEM_ACTOR) -> bool:
        """
        APPROVED -> RELEASED once the provider has accepted the transfer.
        Shared by the synchronous path and the transfer webhook; whichever
        lands first records the payout. Runs inside the caller's transaction.
        """
        now = self.clock()
        self._lock_deal_of(milestone_id)
        moved = compare_and_set(
            self.db, Milestone, milestone_id, [MilestoneStateDB.APPROVED],
            state=MilestoneStateDB.RELEASED,
            payout_ref=payout_ref,
            released_at=now,
            release_lease_until=None,
            last_release_error=None
        )
        if not moved:
            return False

        milestone = self.get_milestone(milestone_id)
        self.scheduler.cancel(milestone_id)
        self.db.add(Payout(
            deal_id=milestone.deal_id,
            milestone_id=milestone_id,
            provider_ref=payout_ref,
            amount=milestone.amount,
            currency=milestone.deal.currency,
            status=PayoutStatusDB.PROCESSING
        ))
        record_event(self.db, "milestone.released", actor_id, milestone.deal_id, milestone_id, {
            "payout_ref": payout_ref,
            "amount": milestone.amount,
            "approved_via": milestone.approved_via.value if milestone.approved_via else None,
        })
        self.db.flush()
        self._complete_deal_if_done(milestone.deal_id, actor_id)
        return True

    def _complete_deal_if_done(self, deal_id: str, actor_id: str):
        """The deal is RELEASED once its last milestone is."""
        deal = lock_row(self.db, Deal, deal_id)
        if deal is None:
            return
        remaining = (
            self.db.query(Milestone)
            .filter(Milestone.deal_id == deal_id, Milestone.state != MilestoneStateDB.RELEASED)
            .count()
        )
        if remaining:
            return
        completed = compare_and_set(
            self.db, Deal, deal_id, [DealStateDB.FUNDED, DealStateDB.DISPUTED],
            state=DealStateDB.RELEASED,
            completed_at=self.clock()
        )
        if completed:
            record_event(self.db, "deal.released", actor_id, deal_id, None, {"total_amount": deal.total_amount})
            logger.info(f"Deal {deal_id} fully released")
