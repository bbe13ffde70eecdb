"""
Tests for billing HTTP routes
"""
import pytest
from datetime import datetime, timedelta

from creator_billing.billing_routes import get_paystack_gateway
from creator_billing.config import config
from creator_billing.db.models import Payment, Subscription, SubscriptionInterval, SubscriptionStatus, WebhookEvent
from creator_billing.main import app
from creator_billing.services.billing_gateway import sign_paystack_payload

from conftest import PAYSTACK_SECRET_KEY, sign_stripe_payload


def paystack_charge(creator_id, reference="PSK_route_1"):
    return {
        "event": "charge.success",
        "data": {
            "id": 1,
            "reference": reference,
            "amount": 5000,
            "currency": "USD",
            "paid_at": "2026-03-15T12:00:00Z",
            "customer": {"email": "fan@example.com", "customer_code": "CUS_route"},
            "authorization": {"authorization_code": "AUTH_route", "reusable": True},
            "metadata": {"creatorId": creator_id},
        },
    }


class TestWebhookRoutes:
    """Test webhook endpoints"""

    def test_stripe_signed_event(self, client):
        body, header = sign_stripe_payload({
            "id": "evt_route_1", "object": "event", "type": "customer.created", "data": {"object": {}},
        })

        response = client.post(
            "/v1/billing/webhooks/stripe",
            content=body,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "ignored"}

    def test_stripe_missing_signature(self, client):
        response = client.post("/v1/billing/webhooks/stripe", content=b'{"id": "evt_x"}')

        assert response.status_code == 400
        assert response.json() == {"received": False, "status": "rejected"}

    def test_signed_list_body_is_rejected(self, client, db_session):
        body, header = sign_stripe_payload([{"id": "evt_route_list", "type": "invoice.paid"}])

        response = client.post(
            "/v1/billing/webhooks/stripe",
            content=body,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"received": False, "status": "rejected"}
        assert db_session.query(WebhookEvent).count() == 0

    def test_paystack_signed_scalar_body_is_rejected(self, client):
        body, signature = sign_paystack_payload("charge.success", PAYSTACK_SECRET_KEY)

        response = client.post(
            "/v1/billing/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": signature, "content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"received": False, "status": "rejected"}

    def test_paystack_charge_is_recorded(self, client, db_session, creator, subscriber):
        body, signature = sign_paystack_payload(paystack_charge(creator.id), PAYSTACK_SECRET_KEY)

        response = client.post(
            "/v1/billing/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": signature, "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "processed"}
        payment = db_session.query(Payment).one()
        assert payment.gross_cents == 5000
        assert payment.fee_cents == 430
        assert payment.net_cents == 4570

    def test_paystack_replay(self, client, db_session, creator, subscriber):
        body, signature = sign_paystack_payload(paystack_charge(creator.id), PAYSTACK_SECRET_KEY)
        headers = {"x-paystack-signature": signature, "content-type": "application/json"}

        client.post("/v1/billing/webhooks/paystack", content=body, headers=headers)
        response = client.post("/v1/billing/webhooks/paystack", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "already_processed"
        assert db_session.query(Payment).count() == 1

    def test_paystack_failure_returns_500(self, client, db_session):
        body, signature = sign_paystack_payload(paystack_charge(987654), PAYSTACK_SECRET_KEY)

        response = client.post(
            "/v1/billing/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": signature, "content-type": "application/json"},
        )

        assert response.status_code == 500
        assert response.json() == {"received": False, "status": "failed"}

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/v1/billing/webhooks/stripe",
            content=b"{}",
            headers={"X-Request-ID": "req-abc"},
        )

        assert response.headers["X-Request-ID"] == "req-abc"


class TestJobRoutes:
    """Test manual scheduler triggers"""

    def test_recurring_billing_trigger(self, client, db_session, creator, subscriber, mock_gateway):
        app.dependency_overrides[get_paystack_gateway] = lambda: mock_gateway
        db_session.add(Subscription(
            creator_id=creator.id,
            subscriber_id=subscriber.id,
            amount=1000,
            currency="USD",
            interval=SubscriptionInterval.MONTH.value,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_end=datetime.utcnow() - timedelta(hours=1),
            paystack_authorization_code="AUTH_route",
        ))
        db_session.commit()

        response = client.post("/v1/billing/jobs/recurring-billing")

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0, "skipped": 0, "errors": []}
        mock_gateway.charge.assert_called_once()

    def test_retries_trigger_with_nothing_to_do(self, client):
        response = client.post("/v1/billing/jobs/retries")

        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_secret_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(config, "BILLING_JOBS_SECRET", "s3cret")

        assert client.post("/v1/billing/jobs/retries").status_code == 403
        assert client.post("/v1/billing/jobs/retries", headers={"X-Jobs-Secret": "wrong"}).status_code == 403
        assert client.post("/v1/billing/jobs/retries", headers={"X-Jobs-Secret": "s3cret"}).status_code == 200

    def test_triggers_disabled_in_prod_without_secret(self, client, monkeypatch):
        monkeypatch.setattr(config, "ENV", "prod")
        monkeypatch.setattr(config, "BILLING_JOBS_SECRET", None)

        response = client.post("/v1/billing/jobs/recurring-billing")

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"


class TestHealth:
    """Test GET /health"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
