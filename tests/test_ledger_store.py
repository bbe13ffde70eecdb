"""
Tests for the ledger store persistence layer
"""
import pytest
from sqlalchemy.exc import IntegrityError

from creator_billing.db.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from creator_billing.services.ledger_store import LedgerStore


@pytest.fixture
def store(db_session):
    return LedgerStore(db_session)


@pytest.fixture
def subscription(store, creator, subscriber):
    with store.unit_of_work():
        sub = store.add(Subscription(
            creator_id=creator.id,
            subscriber_id=subscriber.id,
            amount=1000,
            currency="USD",
            status=SubscriptionStatus.ACTIVE.value,
        ))
    return sub


class TestLedgerStore:
    """Test create/read/update/count/filter and transactions"""

    def test_add_assigns_primary_key(self, store, subscription):
        assert subscription.id is not None
        assert store.get(Subscription, subscription.id).amount == 1000

    def test_update_writes_only_named_columns(self, store, subscription):
        with store.unit_of_work():
            updated = store.update(Subscription, subscription.id, status=SubscriptionStatus.PAST_DUE.value)

        assert updated == 1
        reloaded = store.get(Subscription, subscription.id)
        assert reloaded.status == SubscriptionStatus.PAST_DUE.value
        assert reloaded.amount == 1000

    def test_update_missing_row(self, store):
        assert store.update(Subscription, 9999, amount=5) == 0

    def test_increment_is_relative(self, store, subscription):
        with store.unit_of_work():
            store.increment(Subscription, subscription.id, "ltv_cents", 500)
            store.increment(Subscription, subscription.id, "ltv_cents", 250)

        assert store.get(Subscription, subscription.id).ltv_cents == 750

    def test_filter_count_and_first(self, store, subscription, creator):
        with store.unit_of_work():
            for reference, status in [("a", PaymentStatus.FAILED), ("b", PaymentStatus.FAILED), ("c", PaymentStatus.SUCCEEDED)]:
                store.add(Payment(
                    subscription_id=subscription.id,
                    creator_id=creator.id,
                    amount_cents=1000,
                    status=status.value,
                    external_reference=reference,
                ))

        assert store.count(Payment, Payment.status == PaymentStatus.FAILED.value) == 2
        failed = store.filter(Payment, Payment.status == PaymentStatus.FAILED.value, order_by=Payment.external_reference)
        assert [p.external_reference for p in failed] == ["a", "b"]
        assert store.filter(Payment, order_by=Payment.id, limit=1)[0].external_reference == "a"
        assert store.first(Payment, Payment.external_reference == "c").status == PaymentStatus.SUCCEEDED.value
        assert store.first(Payment, Payment.external_reference == "missing") is None

    def test_unit_of_work_rolls_back_on_error(self, store, subscription):
        with pytest.raises(RuntimeError):
            with store.unit_of_work():
                store.update(Subscription, subscription.id, amount=1)
                raise RuntimeError("boom")

        assert store.get(Subscription, subscription.id).amount == 1000

    def test_processed_event_marker(self, store):
        assert store.has_processed_event("evt_1") is False

        with store.unit_of_work():
            marker = store.record_processed_event("evt_1", provider="stripe", event_type="invoice.paid",
                                                  status=WebhookEventStatus.IGNORED.value)

        assert store.has_processed_event("evt_1") is True
        assert marker.status == WebhookEventStatus.IGNORED.value
        assert store.get(WebhookEvent, "evt_1").provider == "stripe"

    def test_duplicate_marker_raises_integrity_error(self, store, db_session):
        with store.unit_of_work():
            store.record_processed_event("evt_dup", provider="stripe", event_type="invoice.paid")

        db_session.expunge_all()
        with pytest.raises(IntegrityError):
            with store.unit_of_work():
                store.record_processed_event("evt_dup", provider="stripe", event_type="invoice.paid")
