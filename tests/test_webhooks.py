"""Tests for the webhooks blueprint and Stripe event reconciliation.

Covers:
- Webhook signature verification (missing, invalid)
- Idempotent event processing (duplicate event ids skipped)
- checkout.session.completed: purchase, purchase log, assignment, counters
- Replayed payment under a new event id changes nothing
- payment_intent.succeeded matched through copied lead metadata
- A payment for an already-assigned request keeps the assignee
- A confirmed payment outranks another provider's hold
- payment_intent.payment_failed and checkout.session.expired
- Duplicate and post-decline payments are refunded, not counted
- Unknown event types (acknowledged and recorded)
- Handler failure -> 500, event not recorded so Stripe retries
"""

import json
from unittest.mock import MagicMock, patch

import stripe

from leadmarket.extensions import db
from leadmarket.models.lead import LeadPurchase
from leadmarket.models.notification import Notification
from leadmarket.models.provider import Provider
from leadmarket.models.service_request import (
    RequestCandidate,
    RequestPurchase,
    ServiceRequest,
)
from leadmarket.models.stripe_event import StripeEvent
from leadmarket.services.hold_service import open_hold
from leadmarket.services.checkout_service import create_lead_checkout_session
from leadmarket.services.request_service import accept_request, decline_request

CONSTRUCT_EVENT = "leadmarket.services.stripe_service.stripe.Webhook.construct_event"
CHECKOUT_CREATE = "leadmarket.services.checkout_service.stripe.checkout.Session.create"
REFUND_CREATE = "leadmarket.services.stripe_service.stripe.Refund.create"


def _post(client):
    return client.post(
        "/stripe/webhooks",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _lead_metadata(seed_data, provider_key):
    return {
        "type": "LEAD_PURCHASE",
        "requestId": seed_data["request_id"],
        "serviceRequestId": seed_data["request_pk"],
        "providerId": seed_data[provider_key],
    }


def _checkout_completed(seed_data, provider_key, event_id="evt_checkout_001",
                        session_id="cs_test_p1", payment_intent="pi_test_p1",
                        payment_status="paid"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "payment_status": payment_status,
                "payment_intent": payment_intent,
                "metadata": _lead_metadata(seed_data, provider_key),
            }
        },
    }


def _intent_event(seed_data, provider_key, event_type, event_id, intent_id, **extra):
    intent = {"id": intent_id, "metadata": _lead_metadata(seed_data, provider_key)}
    intent.update(extra)
    return {"id": event_id, "type": event_type, "data": {"object": intent}}


def _pending_purchase(seed_data, provider_key, session_id):
    purchase = LeadPurchase(
        provider_id=seed_data[provider_key],
        service_request_id=seed_data["request_pk"],
        amount=12900,
        currency="USD",
        stripe_checkout_session_id=session_id,
        status=LeadPurchase.PENDING,
    )
    db.session.add(purchase)
    db.session.commit()
    return purchase.id


def _request(seed_data):
    return db.session.get(ServiceRequest, seed_data["request_pk"])


def _candidate(seed_data, provider_key):
    return RequestCandidate.query.filter_by(
        service_request_id=seed_data["request_pk"], provider_id=seed_data[provider_key]
    ).first()


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        """POST /stripe/webhooks without signature -> 400."""
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data):
        """POST /stripe/webhooks with bad signature -> 400."""
        mock_construct.side_effect = Exception("Invalid signature")

        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data
        assert StripeEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_raw_body_is_verified(self, mock_construct, client, seed_data):
        mock_construct.return_value = {"id": "evt_raw", "type": "ping", "data": {"object": {}}}
        body = '{"id": "evt_raw",  "type": "ping"}'

        client.post(
            "/stripe/webhooks",
            data=body,
            content_type="application/json",
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )

        payload, sig_header, secret = mock_construct.call_args.args
        assert payload == body
        assert sig_header == "t=1,v1=abc"
        assert secret == "whsec_test_fake"


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    @patch(CONSTRUCT_EVENT)
    def test_duplicate_event_returns_200(self, mock_construct, client, seed_data):
        """Duplicate event_id -> 200 with 'already_processed'."""
        db.session.add(StripeEvent(
            stripe_event_id="evt_duplicate_123",
            event_type="checkout.session.completed",
        ))
        db.session.commit()

        mock_construct.return_value = {
            "id": "evt_duplicate_123",
            "type": "checkout.session.completed",
            "data": {"object": {}},
        }

        resp = _post(client)
        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["status"] == "already_processed"

    @patch(CONSTRUCT_EVENT)
    def test_redelivered_event_applied_once(self, mock_construct, client, seed_data):
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")

        assert json.loads(_post(client).data)["status"] == "processed"
        assert json.loads(_post(client).data)["status"] == "already_processed"

        provider = db.session.get(Provider, seed_data["p1_id"])
        assert provider.total_leads_purchased == 1
        assert RequestPurchase.query.count() == 1


class TestCheckoutCompleted:
    """Tests for checkout.session.completed webhook."""

    @patch(CHECKOUT_CREATE)
    @patch(CONSTRUCT_EVENT)
    def test_payment_assigns_holding_provider(self, mock_construct, mock_create,
                                              client, seed_data):
        """Accept -> checkout -> webhook: the payer becomes the assignee."""
        mock_create.return_value = MagicMock(
            id="cs_test_p1", url="https://checkout.stripe.com/c/pay/cs_test_p1"
        )
        accept_request(seed_data["p1_user_id"], seed_data["request_id"])
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")

        resp = _post(client)

        assert resp.status_code == 200
        purchase = LeadPurchase.query.filter_by(stripe_checkout_session_id="cs_test_p1").first()
        assert purchase.status == LeadPurchase.COMPLETED
        assert purchase.stripe_payment_intent_id == "pi_test_p1"
        assert purchase.purchased_at is not None

        service_request = _request(seed_data)
        assert service_request.status == ServiceRequest.IN_PROGRESS
        assert service_request.assigned_provider_id == seed_data["p1_id"]
        assert service_request.payment_hold_by is None
        assert service_request.payment_hold_until is None

        candidate = _candidate(seed_data, "p1_id")
        assert candidate.status == RequestCandidate.ACCEPTED
        assert candidate.paid_at is not None

        log = RequestPurchase.query.filter_by(service_request_id=seed_data["request_pk"]).one()
        assert log.provider_id == seed_data["p1_id"]
        assert log.lead_purchase_id == purchase.id

        provider = db.session.get(Provider, seed_data["p1_id"])
        assert provider.total_leads_purchased == 1
        assert provider.total_spent_on_leads == 12900

        event = StripeEvent.query.filter_by(stripe_event_id="evt_checkout_001").one()
        assert event.object_id == "cs_test_p1"
        assert event.outcome == StripeEvent.OUTCOME_HANDLED

    @patch(CONSTRUCT_EVENT)
    def test_notifies_provider_and_customer(self, mock_construct, client, seed_data):
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")

        _post(client)

        provider_note = Notification.query.filter_by(
            recipient_user_id=seed_data["p1_user_id"]
        ).one()
        assert provider_note.meta["type"] == "LEAD_PURCHASED"
        customer_note = Notification.query.filter_by(
            recipient_user_id=seed_data["customer_id"]
        ).one()
        assert customer_note.meta["type"] == "REQUEST_ASSIGNED"

    @patch(CONSTRUCT_EVENT)
    def test_unpaid_completion_waits_for_payment(self, mock_construct, client, seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _checkout_completed(
            seed_data, "p1_id", payment_status="unpaid"
        )

        resp = _post(client)

        assert resp.status_code == 200
        assert db.session.get(LeadPurchase, purchase_id).status == LeadPurchase.PENDING
        assert _request(seed_data).assigned_provider_id is None

    @patch(CONSTRUCT_EVENT)
    def test_non_lead_session_ignored(self, mock_construct, client, seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        event = _checkout_completed(seed_data, "p1_id")
        event["data"]["object"]["metadata"] = {"type": "SUBSCRIPTION"}
        mock_construct.return_value = event

        resp = _post(client)

        assert resp.status_code == 200
        assert db.session.get(LeadPurchase, purchase_id).status == LeadPurchase.PENDING

    @patch(CONSTRUCT_EVENT)
    def test_unknown_session_acknowledged(self, mock_construct, client, seed_data):
        mock_construct.return_value = _checkout_completed(
            seed_data, "p1_id", session_id="cs_test_unknown"
        )

        resp = _post(client)

        assert resp.status_code == 200
        assert StripeEvent.query.count() == 1


class TestPaymentReplay:
    """The same payment reported twice under different event ids."""

    @patch(CONSTRUCT_EVENT)
    def test_intent_succeeded_after_checkout_completed(self, mock_construct, client,
                                                       seed_data):
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        _post(client)
        version_after_first = _request(seed_data).version

        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.succeeded", "evt_intent_002", "pi_test_p1",
            latest_charge="ch_test_1",
        )
        resp = _post(client)

        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "processed"
        provider = db.session.get(Provider, seed_data["p1_id"])
        assert provider.total_leads_purchased == 1
        assert provider.total_spent_on_leads == 12900
        assert RequestPurchase.query.count() == 1
        assert _request(seed_data).version == version_after_first
        assert StripeEvent.query.count() == 2


class TestPaymentIntentSucceeded:

    @patch(CONSTRUCT_EVENT)
    def test_matched_through_metadata(self, mock_construct, client, seed_data):
        purchase_id = _pending_purchase(seed_data, "p2_id", "cs_test_p2")
        mock_construct.return_value = _intent_event(
            seed_data, "p2_id", "payment_intent.succeeded", "evt_intent_001", "pi_test_p2",
            latest_charge={"id": "ch_test_2"},
        )

        resp = _post(client)

        assert resp.status_code == 200
        purchase = db.session.get(LeadPurchase, purchase_id)
        assert purchase.status == LeadPurchase.COMPLETED
        assert purchase.stripe_payment_intent_id == "pi_test_p2"
        assert purchase.stripe_charge_id == "ch_test_2"
        assert _request(seed_data).assigned_provider_id == seed_data["p2_id"]

    @patch(CONSTRUCT_EVENT)
    def test_intent_without_lead_metadata_ignored(self, mock_construct, client, seed_data):
        mock_construct.return_value = {
            "id": "evt_intent_other",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_unrelated", "metadata": {}}},
        }

        resp = _post(client)

        assert resp.status_code == 200
        assert _request(seed_data).assigned_provider_id is None


class TestPaymentWithoutAssignment:

    @patch(CONSTRUCT_EVENT)
    def test_second_payer_keeps_existing_assignee(self, mock_construct, client, seed_data):
        """p1 pays and is assigned; p2's later payment is recorded but does not reassign."""
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        _pending_purchase(seed_data, "p2_id", "cs_test_p2")

        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        _post(client)
        mock_construct.return_value = _checkout_completed(
            seed_data, "p2_id", event_id="evt_checkout_002",
            session_id="cs_test_p2", payment_intent="pi_test_p2",
        )
        resp = _post(client)

        assert resp.status_code == 200
        service_request = _request(seed_data)
        assert service_request.assigned_provider_id == seed_data["p1_id"]
        assert service_request.status == ServiceRequest.IN_PROGRESS

        assert _candidate(seed_data, "p1_id").status == RequestCandidate.ACCEPTED
        paid = _candidate(seed_data, "p2_id")
        assert paid.status == RequestCandidate.PAID
        assert paid.paid_at is not None

        assert RequestPurchase.query.count() == 2
        assert db.session.get(Provider, seed_data["p2_id"]).total_leads_purchased == 1
        # Only the first payment assigned the request
        assert Notification.query.filter_by(
            recipient_user_id=seed_data["customer_id"]
        ).count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_payment_outranks_other_providers_hold(self, mock_construct, client, seed_data):
        _pending_purchase(seed_data, "p2_id", "cs_test_p2")
        open_hold(_request(seed_data), seed_data["p1_id"])
        db.session.commit()

        mock_construct.return_value = _checkout_completed(
            seed_data, "p2_id", session_id="cs_test_p2", payment_intent="pi_test_p2",
        )
        _post(client)

        service_request = _request(seed_data)
        assert service_request.assigned_provider_id == seed_data["p2_id"]
        assert service_request.payment_hold_by is None
        assert _candidate(seed_data, "p1_id").status == RequestCandidate.PENDING
        assert _candidate(seed_data, "p2_id").status == RequestCandidate.ACCEPTED

    @patch(CONSTRUCT_EVENT)
    def test_payment_for_expired_request_recorded_unassigned(self, mock_construct, client,
                                                             seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        service_request = _request(seed_data)
        service_request.status = ServiceRequest.EXPIRED
        db.session.commit()

        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        resp = _post(client)

        assert resp.status_code == 200
        assert db.session.get(LeadPurchase, purchase_id).status == LeadPurchase.COMPLETED
        service_request = _request(seed_data)
        assert service_request.status == ServiceRequest.EXPIRED
        assert service_request.assigned_provider_id is None
        assert _candidate(seed_data, "p1_id").status == RequestCandidate.PAID

    @patch(CONSTRUCT_EVENT)
    def test_unmatched_payer_gets_candidate_row(self, mock_construct, client, seed_data):
        """p3 was never offered the lead but bought it directly."""
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        _pending_purchase(seed_data, "p3_id", "cs_test_p3")
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        _post(client)

        mock_construct.return_value = _checkout_completed(
            seed_data, "p3_id", event_id="evt_checkout_003",
            session_id="cs_test_p3", payment_intent="pi_test_p3",
        )
        _post(client)

        candidate = _candidate(seed_data, "p3_id")
        assert candidate.status == RequestCandidate.PAID
        assert candidate.position == 2


class TestPaymentFailed:

    @patch(CONSTRUCT_EVENT)
    def test_failure_recorded(self, mock_construct, client, seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.payment_failed", "evt_failed_001",
            "pi_test_p1", last_payment_error={"message": "Your card was declined."},
        )

        resp = _post(client)

        assert resp.status_code == 200
        purchase = db.session.get(LeadPurchase, purchase_id)
        assert purchase.status == LeadPurchase.FAILED
        assert purchase.failure_reason == "Your card was declined."
        assert purchase.stripe_payment_intent_id == "pi_test_p1"
        assert _request(seed_data).status == ServiceRequest.PENDING

    @patch(CONSTRUCT_EVENT)
    def test_retry_after_failure_completes(self, mock_construct, client, seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.payment_failed", "evt_failed_001",
            "pi_test_p1", last_payment_error={"message": "Insufficient funds."},
        )
        _post(client)

        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.succeeded", "evt_intent_003", "pi_test_p1",
        )
        _post(client)

        purchase = db.session.get(LeadPurchase, purchase_id)
        assert purchase.status == LeadPurchase.COMPLETED
        assert purchase.failure_reason is None
        assert _request(seed_data).assigned_provider_id == seed_data["p1_id"]

    @patch(CONSTRUCT_EVENT)
    def test_checkout_expired_marks_failed(self, mock_construct, client, seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = {
            "id": "evt_expired_001",
            "type": "checkout.session.expired",
            "data": {"object": {"id": "cs_test_p1"}},
        }

        _post(client)

        purchase = db.session.get(LeadPurchase, purchase_id)
        assert purchase.status == LeadPurchase.FAILED
        assert purchase.failure_reason == "Checkout session expired"


class TestUnusablePayments:
    """A payment that buys nothing is refunded, never counted."""

    @patch(REFUND_CREATE)
    @patch(CHECKOUT_CREATE)
    @patch(CONSTRUCT_EVENT)
    def test_old_session_paid_after_retry_is_refunded(self, mock_construct, mock_create,
                                                       mock_refund, client, seed_data):
        """Card declined on cs_a, retry opens cs_b, then both end up paid."""
        first_id = _pending_purchase(seed_data, "p1_id", "cs_test_a")
        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.payment_failed", "evt_failed_001",
            "pi_test_a", last_payment_error={"message": "Your card was declined."},
        )
        _post(client)

        mock_create.return_value = MagicMock(
            id="cs_test_b", url="https://checkout.stripe.com/c/pay/cs_test_b"
        )
        create_lead_checkout_session(seed_data["p1_user_id"], seed_data["request_id"])

        mock_construct.return_value = _checkout_completed(
            seed_data, "p1_id", session_id="cs_test_b", payment_intent="pi_test_b",
        )
        _post(client)
        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.succeeded", "evt_intent_001", "pi_test_a",
        )
        resp = _post(client)

        assert resp.status_code == 200
        completed = LeadPurchase.query.filter_by(status=LeadPurchase.COMPLETED).all()
        assert [p.stripe_checkout_session_id for p in completed] == ["cs_test_b"]
        assert RequestPurchase.query.count() == 1
        provider = db.session.get(Provider, seed_data["p1_id"])
        assert provider.total_leads_purchased == 1
        assert provider.total_spent_on_leads == 12900

        first = db.session.get(LeadPurchase, first_id)
        assert first.status == LeadPurchase.REFUNDED
        assert first.refund_amount == 12900
        assert first.refunded_at is not None
        mock_refund.assert_called_once_with(
            payment_intent="pi_test_a",
            reason="duplicate",
            idempotency_key=f"lead-purchase-refund-{first_id}",
        )
        assert Notification.query.filter_by(
            recipient_user_id=seed_data["p1_user_id"]
        ).filter(Notification.title == "Payment refunded").count() == 1

    @patch(REFUND_CREATE)
    @patch(CONSTRUCT_EVENT)
    def test_payment_after_decline_is_refunded(self, mock_construct, mock_refund, client,
                                               seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        decline_request(seed_data["p1_user_id"], seed_data["request_id"])

        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        resp = _post(client)

        assert resp.status_code == 200
        service_request = _request(seed_data)
        assert service_request.assigned_provider_id is None
        assert service_request.status == ServiceRequest.PENDING
        assert _candidate(seed_data, "p1_id").status == RequestCandidate.DECLINED
        assert db.session.get(LeadPurchase, purchase_id).status == LeadPurchase.REFUNDED
        assert RequestPurchase.query.count() == 0
        assert db.session.get(Provider, seed_data["p1_id"]).total_leads_purchased == 0
        mock_refund.assert_called_once()

    @patch(REFUND_CREATE)
    @patch(CONSTRUCT_EVENT)
    def test_refund_failure_asks_for_redelivery(self, mock_construct, mock_refund, client,
                                                seed_data):
        purchase_id = _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        decline_request(seed_data["p1_user_id"], seed_data["request_id"])
        mock_refund.side_effect = stripe.error.APIConnectionError("Network down")

        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        resp = _post(client)

        assert resp.status_code == 500
        assert db.session.get(LeadPurchase, purchase_id).status == LeadPurchase.PENDING
        assert StripeEvent.query.count() == 0

    @patch(REFUND_CREATE)
    @patch(CONSTRUCT_EVENT)
    def test_refunded_purchase_is_not_confirmed_again(self, mock_construct, mock_refund,
                                                      client, seed_data):
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        decline_request(seed_data["p1_user_id"], seed_data["request_id"])
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        _post(client)

        mock_construct.return_value = _intent_event(
            seed_data, "p1_id", "payment_intent.succeeded", "evt_intent_009", "pi_test_p1",
        )
        _post(client)

        mock_refund.assert_called_once()
        assert LeadPurchase.query.filter_by(status=LeadPurchase.COMPLETED).count() == 0


class TestUnhandledAndFailingEvents:

    @patch(CONSTRUCT_EVENT)
    def test_unknown_event_type_recorded(self, mock_construct, client, seed_data):
        mock_construct.return_value = {
            "id": "evt_unknown_001",
            "type": "customer.created",
            "data": {"object": {}},
        }

        resp = _post(client)

        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "processed"
        event = StripeEvent.query.filter_by(stripe_event_id="evt_unknown_001").one()
        assert event.event_type == "customer.created"
        assert event.outcome == StripeEvent.OUTCOME_IGNORED

    @patch("leadmarket.services.stripe_service.confirm_lead_purchase")
    @patch(CONSTRUCT_EVENT)
    def test_handler_error_returns_500(self, mock_construct, mock_confirm, client,
                                       seed_data):
        """A crash rolls back and leaves the event unrecorded for redelivery."""
        _pending_purchase(seed_data, "p1_id", "cs_test_p1")
        mock_construct.return_value = _checkout_completed(seed_data, "p1_id")
        mock_confirm.side_effect = RuntimeError("database went away")

        resp = _post(client)

        assert resp.status_code == 500
        assert json.loads(resp.data) == {"ok": False, "error": "database went away"}
        assert StripeEvent.query.count() == 0
        assert _request(seed_data).assigned_provider_id is None

    def test_webhook_is_csrf_exempt(self, app, seed_data):
        """Signature checks replace CSRF: with CSRF on, the endpoint still answers 400."""
        app.config["WTF_CSRF_ENABLED"] = True
        try:
            resp = app.test_client().post(
                "/stripe/webhooks", data="{}", content_type="application/json"
            )
        finally:
            app.config["WTF_CSRF_ENABLED"] = False
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data
