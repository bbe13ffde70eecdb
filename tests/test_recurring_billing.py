"""
Tests for the recurring billing scheduler
"""
import pytest
import itertools
from datetime import datetime, timedelta

from creator_billing.db.models import (
    Activity,
    ActivityType,
    Payment,
    PaymentStatus,
    PaymentType,
    Profile,
    Subscription,
    SubscriptionInterval,
    SubscriptionStatus,
)
from creator_billing.exceptions import ChargeDeclinedError, ProcessorTimeoutError
from creator_billing.services.billing_gateway import ChargeResult
from creator_billing.services.metrics import get_metrics_collector
from creator_billing.services.recurring_billing import (
    JOB_BILLING_RETRIES,
    JOB_RECURRING_BILLING,
    BillingResult,
    RecurringBillingService,
    charge_reference,
)

from conftest import NOW

_references = itertools.count(1)


@pytest.fixture
def billing_service(db_session, mock_gateway):
    return RecurringBillingService(
        db_session,
        mock_gateway,
        now=NOW,
        max_retry_attempts=3,
        grace_period_days=3,
        retry_delays_seconds=[0, 3600, 86400],
        retry_lookback_days=7,
        charge_timeout=30.0,
    )


@pytest.fixture
def make_subscription(db_session, creator, subscriber):
    def _make(period_end=NOW - timedelta(hours=1), status=SubscriptionStatus.ACTIVE.value,
              authorization="AUTH_old", amount=1000):
        subscription = Subscription(
            creator_id=creator.id,
            subscriber_id=subscriber.id,
            amount=amount,
            currency="USD",
            interval=SubscriptionInterval.MONTH.value,
            status=status,
            current_period_end=period_end,
            ltv_cents=0,
            paystack_authorization_code=authorization,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


@pytest.fixture
def add_failed_charge(db_session):
    def _add(subscription, created_at, provider="paystack"):
        db_session.add(Payment(
            subscription_id=subscription.id,
            creator_id=subscription.creator_id,
            subscriber_id=subscription.subscriber_id,
            amount_cents=subscription.amount,
            gross_cents=0,
            net_cents=0,
            fee_cents=0,
            currency="USD",
            type=PaymentType.RECURRING.value,
            status=PaymentStatus.FAILED.value,
            provider=provider,
            external_reference=f"REC_failed_{next(_references)}",
            failure_reason="CHARGE_DECLINED: Insufficient funds",
            occurred_at=created_at,
            created_at=created_at,
        ))
        db_session.commit()
    return _add


class TestRecurringBilling:
    """Test the daily renewal run"""

    def test_successful_renewal(self, db_session, billing_service, mock_gateway, make_subscription):
        subscription = make_subscription()
        mock_gateway.charge.return_value = ChargeResult(
            id="4099260516", status="success", reference="REC_test_reference", rotated_authorization="AUTH_new",
        )

        result = billing_service.process_recurring_billing()

        assert result.to_dict() == {"processed": 1, "succeeded": 1, "failed": 0, "skipped": 0, "errors": []}

        kwargs = mock_gateway.charge.call_args.kwargs
        assert kwargs["authorization_handle"] == "AUTH_old"
        assert kwargs["payer_email"] == "fan@example.com"
        assert kwargs["amount_cents"] == 1000
        assert kwargs["destination_handle"] == "ACCT_creator01"
        assert kwargs["idempotency_reference"] == f"REC_{subscription.id}_20260315_1"
        assert kwargs["timeout"] == 30.0
        assert kwargs["metadata"]["chargeType"] == "recurring"
        assert kwargs["metadata"]["isRetry"] is False
        assert kwargs["metadata"]["retryAttempt"] == 1

        renewed = db_session.get(Subscription, subscription.id)
        assert renewed.current_period_end == datetime(2026, 4, 15, 11, 0, 0)
        assert renewed.ltv_cents == 890
        assert renewed.paystack_authorization_code == "AUTH_new"
        assert renewed.status == SubscriptionStatus.ACTIVE.value

        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert payment.type == PaymentType.RECURRING.value
        assert payment.fee_cents == 110
        assert payment.net_cents == 890
        assert payment.external_reference == "REC_test_reference"

        assert db_session.query(Activity).filter(
            Activity.type == ActivityType.PAYMENT_RECEIVED.value
        ).count() == 1
        assert get_metrics_collector().get_counter(
            "billing_charges_total", {"job": JOB_RECURRING_BILLING, "outcome": "succeeded"}
        ) == 1.0

    def test_subscription_not_yet_due_is_left_alone(self, billing_service, mock_gateway, make_subscription):
        make_subscription(period_end=NOW + timedelta(days=2))

        result = billing_service.process_recurring_billing()

        assert result.processed == 0
        mock_gateway.charge.assert_not_called()

    def test_missing_payout_destination_is_skipped(self, db_session, billing_service, mock_gateway,
                                                   make_subscription, creator):
        make_subscription()
        profile = db_session.query(Profile).filter(Profile.user_id == creator.id).one()
        profile.paystack_subaccount_code = None
        db_session.commit()

        result = billing_service.process_recurring_billing()

        assert result.processed == 1
        assert result.skipped == 1
        mock_gateway.charge.assert_not_called()

    def test_declined_charge_records_failed_payment(self, db_session, billing_service, mock_gateway, make_subscription):
        subscription = make_subscription()
        mock_gateway.charge.side_effect = ChargeDeclinedError("Insufficient funds", provider="paystack")

        result = billing_service.process_recurring_billing()

        assert result.failed == 1
        assert result.errors == [{"subscription_id": subscription.id, "error": "Insufficient funds"}]

        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.fee_cents == 0
        assert payment.net_cents == 0
        assert payment.failure_reason == "CHARGE_DECLINED: Insufficient funds"
        assert payment.external_reference.startswith("REC_")

        unchanged = db_session.get(Subscription, subscription.id)
        assert unchanged.status == SubscriptionStatus.ACTIVE.value
        assert unchanged.current_period_end == NOW - timedelta(hours=1)
        assert unchanged.ltv_cents == 0

    def test_processor_timeout_counts_as_failure(self, db_session, billing_service, mock_gateway, make_subscription):
        make_subscription()
        mock_gateway.charge.side_effect = ProcessorTimeoutError("Paystack request timed out after 30.0s",
                                                                provider="paystack")

        result = billing_service.process_recurring_billing()

        assert result.failed == 1
        assert db_session.query(Payment).one().failure_reason.startswith("PROCESSOR_TIMEOUT")

    def test_ceiling_after_grace_marks_past_due(self, db_session, billing_service, mock_gateway,
                                                make_subscription, add_failed_charge):
        period_end = NOW - timedelta(days=4)
        subscription = make_subscription(period_end=period_end)
        for hours in (0, 2, 26):
            add_failed_charge(subscription, period_end + timedelta(hours=hours))

        result = billing_service.process_recurring_billing()

        assert result.processed == 1
        assert result.failed == 1
        mock_gateway.charge.assert_not_called()
        assert db_session.get(Subscription, subscription.id).status == SubscriptionStatus.PAST_DUE.value
        assert db_session.query(Activity).filter(
            Activity.type == ActivityType.SUBSCRIPTION_PAST_DUE.value
        ).count() == 1

    def test_ceiling_within_grace_waits(self, db_session, billing_service, mock_gateway,
                                        make_subscription, add_failed_charge):
        period_end = NOW - timedelta(days=1)
        subscription = make_subscription(period_end=period_end)
        for hours in (0, 1, 2):
            add_failed_charge(subscription, period_end + timedelta(hours=hours))

        result = billing_service.process_recurring_billing()

        assert result.skipped == 1
        mock_gateway.charge.assert_not_called()
        assert db_session.get(Subscription, subscription.id).status == SubscriptionStatus.ACTIVE.value

    def test_failures_from_previous_cycle_do_not_count(self, db_session, billing_service, mock_gateway,
                                                       make_subscription, add_failed_charge):
        subscription = make_subscription()
        for days in (40, 39, 38):
            add_failed_charge(subscription, NOW - timedelta(days=days))

        result = billing_service.process_recurring_billing()

        assert result.succeeded == 1
        mock_gateway.charge.assert_called_once()

    def test_unexpected_error_does_not_stop_the_run(self, db_session, billing_service, mock_gateway, make_subscription):
        first = make_subscription()
        make_subscription()
        mock_gateway.charge.side_effect = [
            RuntimeError("connection reset"),
            ChargeResult(id="1", status="success", reference="REC_second"),
        ]

        result = billing_service.process_recurring_billing()

        assert result.processed == 2
        assert result.succeeded == 1
        assert result.errors == [{"subscription_id": first.id, "error": "connection reset"}]
        assert db_session.query(Payment).count() == 1

    def test_job_run_metric(self, billing_service):
        billing_service.process_recurring_billing()

        assert get_metrics_collector().get_counter(
            "billing_job_runs_total", {"job": JOB_RECURRING_BILLING}
        ) == 1.0


class TestBillingRetries:
    """Test the hourly retry run"""

    def test_backoff_not_elapsed_is_skipped(self, billing_service, mock_gateway, make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(hours=2))
        add_failed_charge(subscription, NOW - timedelta(minutes=30))

        result = billing_service.process_retries()

        assert result.skipped == 1
        assert result.processed == 0
        mock_gateway.charge.assert_not_called()

    def test_backoff_elapsed_retries(self, db_session, billing_service, mock_gateway,
                                     make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(hours=2))
        add_failed_charge(subscription, NOW - timedelta(minutes=90))
        mock_gateway.charge.return_value = ChargeResult(id="9", status="success", reference="RET_ok")

        result = billing_service.process_retries()

        assert result.processed == 1
        assert result.succeeded == 1
        kwargs = mock_gateway.charge.call_args.kwargs
        assert kwargs["idempotency_reference"] == f"RET_{subscription.id}_20260315_2"
        assert kwargs["metadata"]["isRetry"] is True
        assert kwargs["metadata"]["retryAttempt"] == 2
        assert db_session.get(Subscription, subscription.id).current_period_end == datetime(2026, 4, 15, 10, 0, 0)
        assert get_metrics_collector().get_counter(
            "billing_charges_total", {"job": JOB_BILLING_RETRIES, "outcome": "succeeded"}
        ) == 1.0

    def test_second_failure_waits_a_day(self, billing_service, mock_gateway, make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(days=1))
        add_failed_charge(subscription, NOW - timedelta(hours=20))
        add_failed_charge(subscription, NOW - timedelta(hours=2))

        result = billing_service.process_retries()

        assert result.skipped == 1
        mock_gateway.charge.assert_not_called()

    def test_failed_retry_adds_attempt(self, db_session, billing_service, mock_gateway,
                                       make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(days=2))
        add_failed_charge(subscription, NOW - timedelta(hours=30))
        add_failed_charge(subscription, NOW - timedelta(hours=25))
        mock_gateway.charge.side_effect = ChargeDeclinedError("Do not honor", provider="paystack")

        result = billing_service.process_retries()

        assert result.failed == 1
        assert billing_service.failed_attempts(db_session.get(Subscription, subscription.id)) == 3

    def test_ceiling_reached_is_not_retried(self, billing_service, mock_gateway, make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(days=2))
        for hours in (40, 30, 25):
            add_failed_charge(subscription, NOW - timedelta(hours=hours))

        result = billing_service.process_retries()

        assert result.processed == 0
        mock_gateway.charge.assert_not_called()

    def test_canceled_subscription_is_not_retried(self, billing_service, mock_gateway,
                                                  make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(hours=5), status=SubscriptionStatus.CANCELED.value)
        add_failed_charge(subscription, NOW - timedelta(hours=4))

        result = billing_service.process_retries()

        assert result.to_dict() == BillingResult().to_dict()
        mock_gateway.charge.assert_not_called()

    def test_paid_cycle_is_not_retried(self, billing_service, mock_gateway, make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW + timedelta(days=28))
        add_failed_charge(subscription, NOW - timedelta(days=2))

        result = billing_service.process_retries()

        assert result.processed == 0
        mock_gateway.charge.assert_not_called()

    def test_failures_from_another_processor_are_not_retried(self, billing_service, mock_gateway,
                                                             make_subscription, add_failed_charge):
        subscription = make_subscription(period_end=NOW - timedelta(hours=5))
        add_failed_charge(subscription, NOW - timedelta(hours=4), provider="stripe")

        result = billing_service.process_retries()

        assert result.to_dict() == BillingResult().to_dict()
        mock_gateway.charge.assert_not_called()

    def test_retry_delay_schedule(self, billing_service):
        assert billing_service.retry_delay_for(0) == timedelta(0)
        assert billing_service.retry_delay_for(1) == timedelta(hours=1)
        assert billing_service.retry_delay_for(2) == timedelta(days=1)
        # Past the schedule the last delay repeats
        assert billing_service.retry_delay_for(7) == timedelta(days=1)


class TestChargeReference:
    """Test processor references for charge attempts"""

    def test_reference_is_stable_per_cycle_and_attempt(self):
        subscription = Subscription(id=7, current_period_end=datetime(2026, 3, 15, 11, 0, 0))

        assert charge_reference("REC", subscription, 1) == "REC_7_20260315_1"
        assert charge_reference("REC", subscription, 1) == charge_reference("REC", subscription, 1)
        assert charge_reference("RET", subscription, 2) == "RET_7_20260315_2"

    def test_next_cycle_gets_a_new_reference(self):
        subscription = Subscription(id=7, current_period_end=datetime(2026, 3, 15, 11, 0, 0))
        renewed = Subscription(id=7, current_period_end=datetime(2026, 4, 15, 11, 0, 0))

        assert charge_reference("REC", subscription, 1) != charge_reference("REC", renewed, 1)

    def test_subscription_without_period(self):
        assert charge_reference("REC", Subscription(id=3), 1) == "REC_3_none_1"

    def test_rerun_after_lost_write_reuses_reference(self, db_session, billing_service, mock_gateway,
                                                     make_subscription):
        make_subscription()
        mock_gateway.charge.side_effect = RuntimeError("connection reset after charge")
        billing_service.process_recurring_billing()
        first = mock_gateway.charge.call_args.kwargs["idempotency_reference"]

        mock_gateway.charge.side_effect = None
        mock_gateway.charge.return_value = ChargeResult(id="1", status="success", reference=first)
        billing_service.process_recurring_billing()

        assert mock_gateway.charge.call_args.kwargs["idempotency_reference"] == first
