"""
HTTP surface: routing, role checks and error mapping.
"""

import asyncio
from datetime import datetime, timedelta

from auth.roles import Permission, UserType, has_permission
from core.payments import ProviderTimeout
from database.escrow_models import Milestone
from services.webhook_reconciler import WebhookReconciler

API = "/api/v2"


def _create_deal(client, headers, amounts=(3000, 2000), **extra):
    body = {
        "title": "Launch campaign",
        "currency": "KES",
        "milestones": [{"title": f"Milestone {i + 1}", "amount": amount} for i, amount in enumerate(amounts)],
    }
    body.update(extra)
    return client.post(f"{API}/deals", json=body, headers=headers)


def _funded_deal(client, auth_headers, brand, creator):
    deal = _create_deal(client, auth_headers(brand)).json()
    client.post(f"{API}/deals/{deal['id']}/accept", headers=auth_headers(creator))
    return client.post(f"{API}/deals/{deal['id']}/fund", headers=auth_headers(brand)).json()


def _submit(client, headers, milestone_id):
    return client.post(
        f"{API}/milestones/{milestone_id}/submit",
        json={
            "submission_type": "url",
            "description": "Posted the launch reel on all channels",
            "content_url": "https://cdn.example.com/reel.mp4",
        },
        headers=headers,
    )


class TestHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health_reports_provider(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "provider": "sandbox"}


class TestDealFlow:
    def test_full_happy_path(self, client, auth_headers, brand, creator, provider):
        created = _create_deal(client, auth_headers(brand), auto_release={"enabled": True, "days": 3})
        assert created.status_code == 201
        deal = created.json()
        assert deal["state"] == "DRAFT"
        assert deal["total_amount"] == 5000
        assert deal["auto_release_days"] == 3
        assert len(deal["milestones"]) == 2

        accepted = client.post(f"{API}/deals/{deal['id']}/accept", headers=auth_headers(creator))
        assert accepted.status_code == 200
        assert accepted.json()["creator_id"] == creator.id

        funded = client.post(f"{API}/deals/{deal['id']}/fund", headers=auth_headers(brand))
        assert funded.status_code == 200
        assert funded.json()["state"] == "FUNDED"
        assert funded.json()["escrow_ref"] == f"sbx_esc_{deal['id']}"

        milestone_id = deal["milestones"][0]["id"]
        submitted = _submit(client, auth_headers(creator), milestone_id)
        assert submitted.status_code == 201
        assert submitted.json()["milestone"]["state"] == "SUBMITTED"
        assert submitted.json()["deliverable"]["revision"] == 1

        reviewed = client.post(
            f"{API}/milestones/{milestone_id}/review",
            json={"decision": "approve", "feedback": "Great"},
            headers=auth_headers(brand),
        )
        assert reviewed.status_code == 200
        assert reviewed.json()["milestone"]["state"] == "RELEASED"
        assert reviewed.json()["payout_ref"] == provider.release_calls[0]["payout_ref"]

        detail = client.get(f"{API}/deals/{deal['id']}", headers=auth_headers(creator)).json()
        assert detail["released_amount"] == 3000

        events = client.get(f"{API}/deals/{deal['id']}/events", headers=auth_headers(brand)).json()
        assert [e["type"] for e in events] == [
            "deal.created", "deal.accepted", "deal.funded",
            "milestone.submitted", "milestone.approved", "milestone.released",
        ]

        milestone = client.get(f"{API}/milestones/{milestone_id}", headers=auth_headers(brand)).json()
        assert milestone["deliverables"][0]["review_outcome"] == "approved"

    def test_list_deals(self, client, auth_headers, brand, creator, other_creator):
        _funded_deal(client, auth_headers, brand, creator)

        assert len(client.get(f"{API}/deals", headers=auth_headers(brand)).json()) == 1
        assert client.get(f"{API}/deals", headers=auth_headers(other_creator)).json() == []
        assert client.get(f"{API}/deals?state=draft", headers=auth_headers(brand)).json() == []

    def test_update_auto_release_settings(self, client, auth_headers, brand, creator):
        deal = _funded_deal(client, auth_headers, brand, creator)

        response = client.put(
            f"{API}/deals/{deal['id']}/auto-release",
            json={"enabled": False, "days": 7},
            headers=auth_headers(brand),
        )

        assert response.status_code == 200
        assert response.json()["auto_release_enabled"] is False
        assert response.json()["auto_release_days"] == 7

    def test_dispute(self, client, auth_headers, brand, creator):
        deal = _funded_deal(client, auth_headers, brand, creator)

        response = client.post(
            f"{API}/deals/{deal['id']}/disputes",
            json={"reason": "Deliverables are late"},
            headers=auth_headers(creator),
        )

        assert response.status_code == 200
        assert response.json()["state"] == "DISPUTED"


class TestAccessControl:
    def test_missing_token(self, client):
        response = client.get(f"{API}/deals")

        assert response.status_code in (401, 403)

    def test_bad_token(self, client):
        response = client.get(f"{API}/deals", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    def test_creator_cannot_create_deals(self, client, auth_headers, creator):
        response = _create_deal(client, auth_headers(creator))

        assert response.status_code == 403

    def test_creator_cannot_review(self, client, auth_headers, brand, creator):
        deal = _funded_deal(client, auth_headers, brand, creator)
        milestone_id = deal["milestones"][0]["id"]
        _submit(client, auth_headers(creator), milestone_id)

        response = client.post(
            f"{API}/milestones/{milestone_id}/review",
            json={"decision": "approve"},
            headers=auth_headers(creator),
        )

        assert response.status_code == 403

    def test_outsider_cannot_read_deal(self, client, auth_headers, brand, creator, other_creator):
        deal = _funded_deal(client, auth_headers, brand, creator)

        response = client.get(f"{API}/deals/{deal['id']}", headers=auth_headers(other_creator))

        assert response.status_code == 403

    def test_brand_cannot_use_admin_endpoints(self, client, auth_headers, brand, creator):
        deal = _funded_deal(client, auth_headers, brand, creator)

        response = client.post(
            f"{API}/admin/deals/{deal['id']}/refund",
            json={"reason": "I want my money back"},
            headers=auth_headers(brand),
        )

        assert response.status_code == 403

    def test_brand_cannot_accept_deals(self, client, auth_headers, brand):
        deal = _create_deal(client, auth_headers(brand)).json()

        response = client.post(f"{API}/deals/{deal['id']}/accept", headers=auth_headers(brand))

        assert response.status_code == 403
        assert response.json()["detail"] == "Your account cannot accept deals"

    def test_creator_cannot_fund_deals(self, client, auth_headers, brand, creator):
        deal = _create_deal(client, auth_headers(brand)).json()
        client.post(f"{API}/deals/{deal['id']}/accept", headers=auth_headers(creator))

        response = client.post(f"{API}/deals/{deal['id']}/fund", headers=auth_headers(creator))

        assert response.status_code == 403

    def test_admin_can_read_any_deal(self, client, auth_headers, brand, creator, admin):
        deal = _funded_deal(client, auth_headers, brand, creator)

        response = client.get(f"{API}/deals/{deal['id']}", headers=auth_headers(admin))

        assert response.status_code == 200

    def test_role_permission_map(self):
        assert has_permission(UserType.BRAND, Permission.FUND_DEALS)
        assert not has_permission(UserType.BRAND, Permission.SUBMIT_DELIVERABLES)
        assert has_permission(UserType.CREATOR, Permission.SUBMIT_DELIVERABLES)
        assert not has_permission(UserType.CREATOR, Permission.REVIEW_DELIVERABLES)
        assert not has_permission(UserType.CREATOR, Permission.ISSUE_REFUNDS)
        assert all(has_permission(UserType.ADMIN, p) for p in Permission)


class TestPayouts:
    def _approved(self, client, auth_headers, brand, creator):
        deal = _funded_deal(client, auth_headers, brand, creator)
        milestone_id = deal["milestones"][0]["id"]
        _submit(client, auth_headers(creator), milestone_id)
        client.post(
            f"{API}/milestones/{milestone_id}/review",
            json={"decision": "approve"},
            headers=auth_headers(brand),
        )
        return deal, milestone_id

    def test_creator_lists_payouts(self, client, auth_headers, brand, creator):
        deal, milestone_id = self._approved(client, auth_headers, brand, creator)

        response = client.get(f"{API}/payouts", headers=auth_headers(creator))

        assert response.status_code == 200
        payouts = response.json()
        assert len(payouts) == 1
        assert payouts[0]["deal_id"] == deal["id"]
        assert payouts[0]["milestone_id"] == milestone_id
        assert payouts[0]["status"] == "PROCESSING"
        assert payouts[0]["amount"] == 3000

    def test_payout_detail_access(self, client, auth_headers, brand, creator, other_creator):
        self._approved(client, auth_headers, brand, creator)
        payout_id = client.get(f"{API}/payouts", headers=auth_headers(brand)).json()[0]["id"]

        assert client.get(f"{API}/payouts/{payout_id}", headers=auth_headers(brand)).status_code == 200
        assert client.get(f"{API}/payouts/{payout_id}", headers=auth_headers(other_creator)).status_code == 403
        assert client.get(f"{API}/payouts", headers=auth_headers(other_creator)).json() == []
        assert client.get(f"{API}/payouts/missing", headers=auth_headers(brand)).status_code == 404

    def test_unknown_status_filter_is_400(self, client, auth_headers, brand):
        response = client.get(f"{API}/payouts", params={"status": "lost"}, headers=auth_headers(brand))

        assert response.status_code == 400


class TestErrorMapping:
    def test_unknown_deal_is_404(self, client, auth_headers, brand):
        response = client.get(f"{API}/deals/does-not-exist", headers=auth_headers(brand))

        assert response.status_code == 404

    def test_submit_on_unfunded_deal_is_409(self, client, auth_headers, brand, creator):
        deal = _create_deal(client, auth_headers(brand)).json()
        client.post(f"{API}/deals/{deal['id']}/accept", headers=auth_headers(creator))

        response = _submit(client, auth_headers(creator), deal["milestones"][0]["id"])

        assert response.status_code == 409

    def test_request_validation_is_422(self, client, auth_headers, brand):
        response = _create_deal(client, auth_headers(brand), amounts=(0,))

        assert response.status_code == 422

    def test_short_description_is_422(self, client, auth_headers, brand, creator):
        deal = _funded_deal(client, auth_headers, brand, creator)

        response = client.post(
            f"{API}/milestones/{deal['milestones'][0]['id']}/submit",
            json={"submission_type": "text", "description": "short"},
            headers=auth_headers(creator),
        )

        assert response.status_code == 422

    def test_provider_failure_is_502_and_retryable(self, client, auth_headers, brand, creator, provider):
        deal = _funded_deal(client, auth_headers, brand, creator)
        milestone_id = deal["milestones"][0]["id"]
        _submit(client, auth_headers(creator), milestone_id)
        provider.fail_next("release_to_creator")

        failed = client.post(
            f"{API}/milestones/{milestone_id}/review",
            json={"decision": "approve"},
            headers=auth_headers(brand),
        )
        assert failed.status_code == 502

        milestone = client.get(f"{API}/milestones/{milestone_id}", headers=auth_headers(brand)).json()
        assert milestone["state"] == "APPROVED"
        assert milestone["last_release_error"]

        retried = client.post(f"{API}/milestones/{milestone_id}/retry-release", headers=auth_headers(brand))
        assert retried.status_code == 200
        assert retried.json()["milestone"]["state"] == "RELEASED"
        assert len(provider.release_calls) == 1

    def test_provider_timeout_is_504(self, client, auth_headers, brand, creator, provider):
        deal = _funded_deal(client, auth_headers, brand, creator)
        milestone_id = deal["milestones"][0]["id"]
        _submit(client, auth_headers(creator), milestone_id)
        provider.fail_next("release_to_creator", ProviderTimeout("Provider timed out"))

        response = client.post(
            f"{API}/milestones/{milestone_id}/review",
            json={"decision": "approve"},
            headers=auth_headers(brand),
        )

        assert response.status_code == 504


class TestAdmin:
    def test_force_release(self, client, auth_headers, brand, creator, admin):
        deal = _funded_deal(client, auth_headers, brand, creator)
        milestone_id = deal["milestones"][0]["id"]
        _submit(client, auth_headers(creator), milestone_id)

        response = client.post(
            f"{API}/admin/milestones/{milestone_id}/force-release",
            json={"reason": "Brand unresponsive"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        assert response.json()["milestone"]["approved_via"] == "force_release"

    def test_resolve_dispute_with_refund(self, client, auth_headers, brand, creator, admin, provider):
        deal = _funded_deal(client, auth_headers, brand, creator)
        client.post(f"{API}/deals/{deal['id']}/disputes", json={"reason": "No show"}, headers=auth_headers(brand))

        response = client.post(
            f"{API}/admin/deals/{deal['id']}/resolve-dispute",
            json={"outcome": "refund", "note": "Creator never delivered"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        assert response.json()["state"] == "REFUNDED"
        assert provider.refund_calls[0]["amount"] == 5000

    def test_run_auto_release(self, client, auth_headers, brand, creator, admin, db):
        deal = _funded_deal(client, auth_headers, brand, creator)
        milestone_id = deal["milestones"][0]["id"]
        _submit(client, auth_headers(creator), milestone_id)

        # Backdate the submission so the job is due now
        from database.escrow_models import ScheduledRelease
        job = db.get(ScheduledRelease, milestone_id)
        job.next_attempt_at = datetime.utcnow() - timedelta(minutes=1)
        db.commit()

        response = client.post(f"{API}/admin/auto-release/run", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json() == {"claimed": 1, "released": 1, "skipped": 0, "retrying": 0}
        db.expire_all()
        assert db.get(Milestone, milestone_id).state.value == "RELEASED"

    def test_reconcile_fundings(self, client, auth_headers, admin):
        response = client.post(f"{API}/admin/reconcile/fundings", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json() == {"checked": 0, "funded": 0, "errors": 0}


class TestWebhookEndpoint:
    def _event(self):
        return {"type": "unhandled", "event_id": "evt_ping", "provider_type": "ping"}

    def test_bad_signature_is_400(self, client, provider):
        body, _ = provider.build_webhook(self._event())

        response = client.post(
            f"{API}/webhooks/payments",
            content=body,
            headers={"x-sandbox-signature": "forged", "Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_reconciler_runs_off_the_event_loop(self, client, provider, monkeypatch):
        threads = []
        original = WebhookReconciler.handle

        def handle(self, body, signature):
            try:
                asyncio.get_running_loop()
                threads.append("event loop")
            except RuntimeError:
                threads.append("worker")
            return original(self, body, signature)

        monkeypatch.setattr(WebhookReconciler, "handle", handle)
        body, signature = provider.build_webhook(self._event())

        response = client.post(
            f"{API}/webhooks/payments",
            content=body,
            headers={"x-sandbox-signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert threads == ["worker"]

    def test_signed_event_is_acknowledged_and_replay_is_safe(self, client, provider):
        body, signature = provider.build_webhook(self._event())
        headers = {"x-sandbox-signature": signature, "Content-Type": "application/json"}

        first = client.post(f"{API}/webhooks/payments", content=body, headers=headers)
        second = client.post(f"{API}/webhooks/payments", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json() == {"status": "received", "outcome": "processed"}
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"

    def test_funding_webhook_funds_deal(self, client, auth_headers, brand, creator, provider):
        provider.confirm_funding_sync = False
        deal = _funded_deal(client, auth_headers, brand, creator)
        assert deal["state"] == "DRAFT"
        provider.settle_funding(f"sbx_esc_{deal['id']}")

        body, signature = provider.build_webhook({
            "type": "funding.confirmed",
            "event_id": "evt_fund",
            "deal_id": deal["id"],
            "escrow_ref": f"sbx_esc_{deal['id']}",
            "payment_ref": deal["funding_ref"],
            "amount": 5000,
        })
        response = client.post(
            f"{API}/webhooks/payments",
            content=body,
            headers={"x-sandbox-signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        current = client.get(f"{API}/deals/{deal['id']}", headers=auth_headers(brand)).json()
        assert current["state"] == "FUNDED"
