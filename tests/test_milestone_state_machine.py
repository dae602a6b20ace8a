"""
Milestone state machine: submit, review, force release and retries.
"""

from datetime import datetime, timedelta

import pytest

from core.payments import ProviderError, ProviderTimeout
from database.escrow_models import (
    EventLog, Payout, MilestoneStateDB, ApprovalSourceDB, ReviewOutcomeDB, PayoutStatusDB, DealStateDB
)
from services.auto_release import DatabaseReleaseScheduler
from services.errors import Forbidden, InvalidState, ValidationFailed
from services.milestone_service import release_idempotency_key


def _event_types(db, deal_id, milestone_id=None):
    query = db.query(EventLog).filter(EventLog.deal_id == deal_id)
    if milestone_id:
        query = query.filter(EventLog.milestone_id == milestone_id)
    return [e.type for e in query.order_by(EventLog.id.asc()).all()]


class TestSubmit:
    """Creator submissions on a funded deal."""

    def test_submit_moves_to_submitted_and_schedules_release(self, db, make_deal, submit):
        deal = make_deal()
        milestone = deal.milestones[0]

        result = submit(milestone.id)

        assert result.milestone.state == MilestoneStateDB.SUBMITTED
        assert result.deliverable.revision == 1
        job = DatabaseReleaseScheduler(db).get(milestone.id)
        assert job is not None
        assert job.fire_at == result.milestone.submitted_at + timedelta(days=5)
        assert job.attempts == 0
        assert "milestone.submitted" in _event_types(db, deal.id, milestone.id)

    def test_submit_without_auto_release_schedules_nothing(self, db, make_deal, submit):
        deal = make_deal(auto_release_enabled=False)
        milestone = deal.milestones[0]

        submit(milestone.id)

        assert DatabaseReleaseScheduler(db).get(milestone.id) is None

    def test_submit_on_unfunded_deal_is_rejected(self, make_deal, submit):
        deal = make_deal(fund=False)

        with pytest.raises(InvalidState):
            submit(deal.milestones[0].id)

    def test_submit_by_another_creator_is_forbidden(self, make_deal, milestone_service, other_creator):
        deal = make_deal()

        with pytest.raises(Forbidden):
            milestone_service.submit(
                deal.milestones[0].id, other_creator.id,
                description="Not my deal", content_url="https://example.com/x"
            )

    def test_url_submission_requires_content_url(self, make_deal, milestone_service, creator):
        deal = make_deal()

        with pytest.raises(ValidationFailed):
            milestone_service.submit(deal.milestones[0].id, creator.id, description="Missing link", submission_type="url")

    def test_text_submission_needs_no_url(self, make_deal, milestone_service, creator):
        deal = make_deal()

        result = milestone_service.submit(
            deal.milestones[0].id, creator.id,
            description="Caption copy for the launch post", submission_type="text"
        )

        assert result.deliverable.submission_type == "text"
        assert result.milestone.state == MilestoneStateDB.SUBMITTED

    def test_double_submit_is_rejected(self, make_deal, submit):
        deal = make_deal()
        submit(deal.milestones[0].id)

        with pytest.raises(InvalidState):
            submit(deal.milestones[0].id)


class TestReview:
    """Brand review of the latest deliverable."""

    def test_approve_releases_milestone(self, db, make_deal, submit, milestone_service, brand, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)

        result = milestone_service.review(milestone.id, brand.id, "approve", "Great work")

        assert result.milestone.state == MilestoneStateDB.RELEASED
        assert result.milestone.approved_via == ApprovalSourceDB.REVIEW
        assert result.payout_ref.startswith("sbx_tr_")
        assert result.milestone.payout_ref == result.payout_ref
        assert result.milestone.release_lease_until is None

        assert len(provider.release_calls) == 1
        call = provider.release_calls[0]
        assert call["amount"] == 3000
        assert call["idempotency_key"] == release_idempotency_key(milestone.id)
        assert call["metadata"] == {
            "kind": "milestone_approval",
            "approved_via": "review",
            "deal_id": deal.id,
            "milestone_id": milestone.id,
            "currency": "KES",
        }

        assert DatabaseReleaseScheduler(db).get(milestone.id) is None
        payout = db.query(Payout).filter(Payout.milestone_id == milestone.id).one()
        assert payout.status == PayoutStatusDB.PROCESSING
        assert payout.provider_ref == result.payout_ref

        types = _event_types(db, deal.id, milestone.id)
        assert types.index("milestone.approved") < types.index("milestone.released")

    def test_deal_is_released_with_its_last_milestone(self, db, escrow, make_deal, submit, milestone_service, brand):
        deal = make_deal()
        first, second = deal.milestones

        submit(first.id)
        milestone_service.review(first.id, brand.id, "approve")
        assert escrow.get_deal(deal.id).state == DealStateDB.FUNDED

        submit(second.id)
        milestone_service.review(second.id, brand.id, "approve")

        db.expire_all()
        deal = escrow.get_deal(deal.id)
        assert deal.state == DealStateDB.RELEASED
        assert deal.completed_at is not None
        assert deal.released_amount == 5000
        assert "deal.released" in _event_types(db, deal.id)

    def test_review_by_non_brand_is_forbidden(self, make_deal, submit, milestone_service, creator):
        deal = make_deal()
        submit(deal.milestones[0].id)

        with pytest.raises(Forbidden):
            milestone_service.review(deal.milestones[0].id, creator.id, "approve")

    def test_review_without_deliverable_is_rejected(self, make_deal, milestone_service, brand):
        deal = make_deal()

        with pytest.raises(InvalidState):
            milestone_service.review(deal.milestones[0].id, brand.id, "approve")

    def test_unknown_decision_is_rejected(self, make_deal, submit, milestone_service, brand):
        deal = make_deal()
        submit(deal.milestones[0].id)

        with pytest.raises(ValueError):
            milestone_service.review(deal.milestones[0].id, brand.id, "maybe")

    def test_reject_returns_to_pending_and_allows_resubmission(self, db, make_deal, submit, milestone_service, brand):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)

        result = milestone_service.review(milestone.id, brand.id, "reject", "needs revision")

        assert result.milestone.state == MilestoneStateDB.PENDING
        assert result.milestone.submitted_at is None
        assert result.deliverable.review_outcome == ReviewOutcomeDB.REJECTED
        assert result.deliverable.feedback == "needs revision"
        assert DatabaseReleaseScheduler(db).get(milestone.id) is None
        assert "milestone.rejected" in _event_types(db, deal.id, milestone.id)

        resubmitted = submit(milestone.id, description="Second cut with the new logo")
        assert resubmitted.milestone.state == MilestoneStateDB.SUBMITTED
        assert resubmitted.deliverable.revision == 2
        assert resubmitted.milestone.latest_deliverable.revision == 2
        assert DatabaseReleaseScheduler(db).get(milestone.id) is not None

    def test_request_revision_is_logged_separately(self, db, make_deal, submit, milestone_service, brand):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)

        result = milestone_service.review(milestone.id, brand.id, "request_revision", "Shorter intro please")

        assert result.milestone.state == MilestoneStateDB.PENDING
        assert result.deliverable.review_outcome == ReviewOutcomeDB.REVISION_REQUESTED
        assert "milestone.revision_requested" in _event_types(db, deal.id, milestone.id)

    def test_repeated_reject_reports_current_state(self, db, make_deal, submit, milestone_service, brand):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        milestone_service.review(milestone.id, brand.id, "reject", "needs revision")

        again = milestone_service.review(milestone.id, brand.id, "reject", "needs revision")

        assert again.milestone.state == MilestoneStateDB.PENDING
        assert _event_types(db, deal.id, milestone.id).count("milestone.rejected") == 1

    def test_approve_after_reject_is_rejected(self, make_deal, submit, milestone_service, brand):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        milestone_service.review(milestone.id, brand.id, "reject", "needs revision")

        with pytest.raises(InvalidState):
            milestone_service.review(milestone.id, brand.id, "approve")

    def test_released_milestone_never_goes_back(self, make_deal, submit, milestone_service, brand, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        released = milestone_service.review(milestone.id, brand.id, "approve")

        with pytest.raises(InvalidState):
            milestone_service.review(milestone.id, brand.id, "reject", "changed my mind")

        again = milestone_service.review(milestone.id, brand.id, "approve")
        assert again.milestone.state == MilestoneStateDB.RELEASED
        assert again.payout_ref == released.payout_ref
        assert len(provider.release_calls) == 1


class TestReleaseFailures:
    """Provider failures leave the milestone APPROVED and retryable."""

    def test_provider_error_keeps_milestone_approved(self, db, make_deal, submit, milestone_service, brand, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        provider.fail_next("release_to_creator")

        with pytest.raises(ProviderError):
            milestone_service.review(milestone.id, brand.id, "approve")

        current = milestone_service.get_milestone(milestone.id)
        db.refresh(current)
        assert current.state == MilestoneStateDB.APPROVED
        assert current.release_lease_until is None
        assert current.payout_ref is None
        assert "Injected release_to_creator failure" in current.last_release_error
        assert "milestone.release_failed" in _event_types(db, deal.id, milestone.id)
        assert provider.release_calls == []

    def test_retry_releases_exactly_once(self, db, make_deal, submit, milestone_service, brand, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        provider.fail_next("release_to_creator")
        with pytest.raises(ProviderError):
            milestone_service.review(milestone.id, brand.id, "approve")
        approved_at = milestone_service.get_milestone(milestone.id).approved_at

        result = milestone_service.retry_release(milestone.id, brand.id)

        assert result.milestone.state == MilestoneStateDB.RELEASED
        assert result.milestone.approved_at == approved_at
        assert result.milestone.last_release_error is None
        assert len(provider.release_calls) == 1
        assert _event_types(db, deal.id, milestone.id).count("milestone.approved") == 1

        # A second retry is a no-op
        again = milestone_service.retry_release(milestone.id, brand.id)
        assert again.payout_ref == result.payout_ref
        assert len(provider.release_calls) == 1

    def test_repeat_approve_retries_the_release(self, make_deal, submit, milestone_service, brand, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        provider.fail_next("release_to_creator", ProviderTimeout("Provider timed out"))
        with pytest.raises(ProviderTimeout):
            milestone_service.review(milestone.id, brand.id, "approve")

        result = milestone_service.review(milestone.id, brand.id, "approve")

        assert result.milestone.state == MilestoneStateDB.RELEASED
        assert [c["idempotency_key"] for c in provider.release_calls] == [release_idempotency_key(milestone.id)]

    def test_retry_by_stranger_is_forbidden(self, make_deal, submit, milestone_service, brand, creator, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        provider.fail_next("release_to_creator")
        with pytest.raises(ProviderError):
            milestone_service.review(milestone.id, brand.id, "approve")

        with pytest.raises(Forbidden):
            milestone_service.retry_release(milestone.id, creator.id)

    def test_retry_of_pending_milestone_is_rejected(self, make_deal, milestone_service, brand):
        deal = make_deal()

        with pytest.raises(InvalidState):
            milestone_service.retry_release(deal.milestones[0].id, brand.id)

    def test_retry_while_lease_is_held_does_not_call_provider(self, db, make_deal, submit, milestone_service, brand, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        provider.fail_next("release_to_creator")
        with pytest.raises(ProviderError):
            milestone_service.review(milestone.id, brand.id, "approve")

        current = milestone_service.get_milestone(milestone.id)
        current.release_lease_until = datetime.utcnow() + timedelta(minutes=5)
        db.commit()

        result = milestone_service.retry_release(milestone.id, brand.id)

        assert result.milestone.state == MilestoneStateDB.APPROVED
        assert result.payout_ref is None
        assert provider.release_calls == []


class TestForceRelease:
    """Admin override."""

    def test_force_release_from_submitted(self, db, make_deal, submit, milestone_service, admin, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)

        result = milestone_service.force_release(milestone.id, admin.id, "Brand unresponsive for two weeks")

        assert result.milestone.state == MilestoneStateDB.RELEASED
        assert result.milestone.approved_via == ApprovalSourceDB.FORCE_RELEASE
        assert provider.release_calls[0]["metadata"]["kind"] == "force_release"
        assert provider.release_calls[0]["metadata"]["reason"] == "Brand unresponsive for two weeks"
        assert DatabaseReleaseScheduler(db).get(milestone.id) is None

        event = (
            db.query(EventLog)
            .filter(EventLog.milestone_id == milestone.id, EventLog.type == "milestone.force_released")
            .one()
        )
        assert event.actor_id == admin.id
        assert event.payload["reason"] == "Brand unresponsive for two weeks"

    def test_force_release_of_stuck_approval(self, make_deal, submit, milestone_service, brand, admin, provider):
        deal = make_deal()
        milestone = deal.milestones[0]
        submit(milestone.id)
        provider.fail_next("release_to_creator")
        with pytest.raises(ProviderError):
            milestone_service.review(milestone.id, brand.id, "approve")

        result = milestone_service.force_release(milestone.id, admin.id, "Provider outage resolved")

        assert result.milestone.state == MilestoneStateDB.RELEASED
        assert len(provider.release_calls) == 1

    def test_force_release_requires_reason(self, make_deal, submit, milestone_service, admin):
        deal = make_deal()
        submit(deal.milestones[0].id)

        with pytest.raises(ValidationFailed):
            milestone_service.force_release(deal.milestones[0].id, admin.id, "  ")

    def test_force_release_of_pending_milestone_is_rejected(self, make_deal, milestone_service, admin):
        deal = make_deal()

        with pytest.raises(InvalidState):
            milestone_service.force_release(deal.milestones[0].id, admin.id, "No deliverable yet")

    def test_force_release_on_unfunded_deal_is_rejected(self, make_deal, milestone_service, admin):
        deal = make_deal(fund=False)

        with pytest.raises(InvalidState):
            milestone_service.force_release(deal.milestones[0].id, admin.id, "Nothing in escrow")
