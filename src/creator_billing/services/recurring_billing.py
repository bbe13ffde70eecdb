"""
Recurring billing service

Charges due monthly subscriptions against their stored processor
authorization and retries failed renewals on a fixed backoff schedule.

Retry state is never held in memory: attempt counts and backoff timing are
derived from the failed Payment rows of the current billing cycle, so a
restarted or concurrently running worker reaches the same decisions.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from ..config import config
from ..db.models import (
    Activity,
    ActivityType,
    Payment,
    PaymentStatus,
    PaymentType,
    Profile,
    Subscription,
    SubscriptionInterval,
    SubscriptionStatus,
    User,
)
from ..exceptions import ProcessorError
from .billing_gateway import BillingGateway, ChargeResult
from .billing_periods import add_one_month
from .fee_model import LegacyFee
from .ledger_store import LedgerStore
from .metrics import Timer, get_metrics_collector, record_charge_outcome

logger = logging.getLogger(__name__)

JOB_RECURRING_BILLING = "recurring_billing"
JOB_BILLING_RETRIES = "billing_retries"


def charge_reference(prefix: str, subscription: Subscription, attempt: int) -> str:
    """
    Processor reference for one charge attempt

    Stable for a given subscription, cycle and attempt number, so a charge
    whose ledger write was lost is retried under the same reference and the
    processor refuses to take the money twice.
    """
    cycle = subscription.current_period_end.strftime("%Y%m%d") if subscription.current_period_end else "none"
    return f"{prefix}_{subscription.id}_{cycle}_{attempt}"


@dataclass
class BillingResult:
    """Summary of one scheduler run"""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, subscription_id: int, error: str):
        self.errors.append({"subscription_id": subscription_id, "error": error})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class RecurringBillingService:
    """
    Daily renewal charges and hourly retries for monthly subscriptions

    Policy:
    - At most max_retry_attempts failed charges per billing cycle
    - Backoff between attempts: retry_delays[attempt_count], last value repeats
    - Once the ceiling is hit and the grace period has passed, the
      subscription becomes past_due and is no longer charged
    """

    def __init__(
        self,
        db: Session,
        gateway: BillingGateway,
        now: Optional[datetime] = None,
        max_retry_attempts: Optional[int] = None,
        grace_period_days: Optional[int] = None,
        retry_delays_seconds: Optional[List[int]] = None,
        retry_lookback_days: Optional[int] = None,
        charge_timeout: Optional[float] = None,
    ):
        """
        Initialize recurring billing service

        Args:
            db: Database session
            gateway: Processor gateway used for authorization charges
            now: Fixed clock for tests (defaults to utcnow at construction)
            max_retry_attempts: Failed charges allowed per cycle
            grace_period_days: Days after period end before past_due
            retry_delays_seconds: Backoff schedule indexed by attempt count
            retry_lookback_days: How far back the retry job looks for failures
            charge_timeout: Processor call timeout in seconds
        """
        self.db = db
        self.store = LedgerStore(db)
        self.gateway = gateway
        self.now = now or datetime.utcnow()
        self.max_retry_attempts = max_retry_attempts or config.BILLING_MAX_RETRY_ATTEMPTS
        self.grace_period = timedelta(days=grace_period_days if grace_period_days is not None
                                      else config.BILLING_GRACE_PERIOD_DAYS)
        self.retry_delays = [timedelta(seconds=s) for s in (retry_delays_seconds or config.BILLING_RETRY_DELAYS_SECONDS)]
        self.retry_lookback = timedelta(days=retry_lookback_days or config.BILLING_RETRY_LOOKBACK_DAYS)
        self.charge_timeout = charge_timeout or config.BILLING_PROCESSOR_TIMEOUT_SECONDS

    def retry_delay_for(self, attempt_count: int) -> timedelta:
        """Required wait after attempt_count failures; past the schedule the last delay repeats"""
        if attempt_count < len(self.retry_delays):
            return self.retry_delays[attempt_count]
        return self.retry_delays[-1]

    def failed_attempts(self, subscription: Subscription) -> int:
        """Failed charges in the current cycle, which began at current_period_end"""
        return self.store.count(
            Payment,
            Payment.subscription_id == subscription.id,
            Payment.status == PaymentStatus.FAILED.value,
            Payment.created_at >= (subscription.current_period_end or self.now),
        )

    # ------------------------------------------------------------------
    # Daily renewal
    # ------------------------------------------------------------------

    def process_recurring_billing(self) -> BillingResult:
        """
        Charge every active monthly subscription whose period has ended

        Returns:
            BillingResult; per-subscription errors are collected, never raised
        """
        result = BillingResult()

        due = self.store.filter(
            Subscription,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.interval == SubscriptionInterval.MONTH.value,
            Subscription.current_period_end <= self.now,
            Subscription.paystack_authorization_code.isnot(None),
            order_by=Subscription.id,
        )
        due_ids = [subscription.id for subscription in due]
        logger.info(f"[billing] Found {len(due_ids)} subscriptions due for renewal")

        for subscription_id in due_ids:
            result.processed += 1
            try:
                self._renew(subscription_id, result)
            except Exception as e:
                self.db.rollback()
                result.add_error(subscription_id, str(e))
                logger.error(f"[billing] Unexpected error renewing subscription {subscription_id}: {e}", exc_info=True)

        self._finish(JOB_RECURRING_BILLING, result)
        return result

    def _renew(self, subscription_id: int, result: BillingResult):
        subscription = self.store.get(Subscription, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            result.skipped += 1
            return

        profile, subscriber = self._charge_parties(subscription)
        if profile is None or subscriber is None:
            result.skipped += 1
            logger.info(f"[billing] Skipping subscription {subscription_id}: missing authorization, payout destination or payer email")
            return

        attempts = self.failed_attempts(subscription)
        if attempts >= self.max_retry_attempts:
            if self.now >= subscription.current_period_end + self.grace_period:
                self._mark_past_due(subscription, attempts)
                result.failed += 1
            else:
                # Grace period still running; nothing more to try this cycle
                result.skipped += 1
            return

        self._attempt_charge(
            subscription, profile, subscriber,
            job=JOB_RECURRING_BILLING,
            reference_prefix="REC",
            attempt=attempts + 1,
            result=result,
        )

    # ------------------------------------------------------------------
    # Hourly retries
    # ------------------------------------------------------------------

    def process_retries(self) -> BillingResult:
        """
        Retry subscriptions with a recent failed renewal once their backoff has elapsed

        Returns:
            BillingResult; per-subscription errors are collected, never raised
        """
        result = BillingResult()

        recent_failures = self.store.filter(
            Payment,
            Payment.status == PaymentStatus.FAILED.value,
            Payment.type == PaymentType.RECURRING.value,
            Payment.subscription_id.isnot(None),
            Payment.provider == self.gateway.provider,
            Payment.created_at >= self.now - self.retry_lookback,
            order_by=Payment.created_at.desc(),
        )

        # Latest failure per subscription
        latest_failure_at: Dict[int, datetime] = {}
        for payment in recent_failures:
            latest_failure_at.setdefault(payment.subscription_id, payment.created_at)

        logger.info(f"[billing] {len(latest_failure_at)} subscriptions have recent failed renewals")

        for subscription_id, last_failed_at in latest_failure_at.items():
            try:
                self._retry(subscription_id, last_failed_at, result)
            except Exception as e:
                self.db.rollback()
                result.add_error(subscription_id, str(e))
                logger.error(f"[billing] Unexpected error retrying subscription {subscription_id}: {e}", exc_info=True)

        self._finish(JOB_BILLING_RETRIES, result)
        return result

    def _retry(self, subscription_id: int, last_failed_at: datetime, result: BillingResult):
        subscription = self.store.get(Subscription, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            return

        # Only cycles that are still unpaid are retried
        if subscription.current_period_end is None or subscription.current_period_end > self.now:
            return
        if last_failed_at < subscription.current_period_end:
            return

        attempts = self.failed_attempts(subscription)
        if attempts >= self.max_retry_attempts:
            result.skipped += 1
            return

        if self.now - last_failed_at < self.retry_delay_for(attempts):
            result.skipped += 1
            return

        result.processed += 1

        profile, subscriber = self._charge_parties(subscription)
        if profile is None or subscriber is None:
            result.skipped += 1
            return

        self._attempt_charge(
            subscription, profile, subscriber,
            job=JOB_BILLING_RETRIES,
            reference_prefix="RET",
            attempt=attempts + 1,
            result=result,
        )

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    def _charge_parties(self, subscription: Subscription):
        """Creator profile with a payout destination and a subscriber with an email, else (None, None)"""
        if not subscription.paystack_authorization_code:
            return None, None
        profile = self.store.first(Profile, Profile.user_id == subscription.creator_id)
        if profile is None or not profile.paystack_subaccount_code:
            return None, None
        subscriber = self.store.get(User, subscription.subscriber_id) if subscription.subscriber_id else None
        if subscriber is None or not subscriber.email:
            return None, None
        return profile, subscriber

    def _attempt_charge(
        self,
        subscription: Subscription,
        profile: Profile,
        subscriber: User,
        job: str,
        reference_prefix: str,
        attempt: int,
        result: BillingResult,
    ):
        """One charge attempt; success and failure each commit as their own unit of work"""
        reference = charge_reference(reference_prefix, subscription, attempt)
        is_retry = job == JOB_BILLING_RETRIES
        metadata = {
            "subscriptionId": subscription.id,
            "creatorId": subscription.creator_id,
            "subscriberId": subscription.subscriber_id,
            "interval": SubscriptionInterval.MONTH.value,
            "chargeType": PaymentType.RECURRING.value,
            "isRetry": is_retry,
            "retryAttempt": attempt,
        }

        try:
            with Timer("billing_charge_seconds", {"job": job}):
                charge = self.gateway.charge(
                    authorization_handle=subscription.paystack_authorization_code,
                    payer_email=subscriber.email,
                    amount_cents=subscription.amount,
                    currency=subscription.currency,
                    destination_handle=profile.paystack_subaccount_code,
                    metadata=metadata,
                    idempotency_reference=reference,
                    timeout=self.charge_timeout,
                )
        except ProcessorError as e:
            self._record_failed_charge(subscription, reference, metadata, e)
            result.failed += 1
            result.add_error(subscription.id, e.message)
            record_charge_outcome(job, "failed")
            logger.warning(
                f"[billing] Subscription {subscription.id} charge failed "
                f"(attempt {attempt}/{self.max_retry_attempts}, {e.code}): {e.message}"
            )
            return

        self._record_successful_charge(subscription, charge, reference, metadata)
        result.succeeded += 1
        record_charge_outcome(job, "succeeded")
        logger.info(f"[billing] Subscription {subscription.id} charged successfully: {charge.reference}")

    def _record_successful_charge(self, subscription: Subscription, charge: ChargeResult,
                                  reference: str, metadata: Dict[str, Any]):
        # Renewals always use the flat legacy formula on the base price
        fee = LegacyFee().compute(subscription.amount, subscription.currency)
        new_period_end = add_one_month(subscription.current_period_end or self.now)

        with self.store.unit_of_work():
            values = {"current_period_end": new_period_end}
            if charge.rotated_authorization:
                values["paystack_authorization_code"] = charge.rotated_authorization
            self.store.update(Subscription, subscription.id, **values)
            self.store.increment(Subscription, subscription.id, "ltv_cents", fee.net_cents)

            self.store.add(Payment(
                subscription_id=subscription.id,
                creator_id=subscription.creator_id,
                subscriber_id=subscription.subscriber_id,
                amount_cents=subscription.amount,
                gross_cents=fee.gross_cents,
                net_cents=fee.net_cents,
                fee_cents=fee.fee_cents,
                currency=subscription.currency,
                type=PaymentType.RECURRING.value,
                status=PaymentStatus.SUCCEEDED.value,
                fee_mode=fee.fee_mode,
                provider=self.gateway.provider,
                external_reference=charge.reference or reference,
                processor_charge_ref=charge.reference or reference,
                payment_metadata={**metadata, "processorTransactionId": charge.id},
                occurred_at=self.now,
                created_at=self.now,
            ))
            self.store.add(Activity(
                user_id=subscription.creator_id,
                type=ActivityType.PAYMENT_RECEIVED.value,
                payload={
                    "subscriptionId": subscription.id,
                    "amount": subscription.amount,
                    "netCents": fee.net_cents,
                    "currency": subscription.currency,
                    "provider": self.gateway.provider,
                    "isRecurring": True,
                },
                created_at=self.now,
            ))

    def _record_failed_charge(self, subscription: Subscription, reference: str,
                              metadata: Dict[str, Any], error: ProcessorError):
        with self.store.unit_of_work():
            self.store.add(Payment(
                subscription_id=subscription.id,
                creator_id=subscription.creator_id,
                subscriber_id=subscription.subscriber_id,
                amount_cents=subscription.amount,
                gross_cents=0,
                net_cents=0,
                fee_cents=0,
                currency=subscription.currency,
                type=PaymentType.RECURRING.value,
                status=PaymentStatus.FAILED.value,
                provider=self.gateway.provider,
                external_reference=reference,
                processor_charge_ref=reference,
                failure_reason=f"{error.code}: {error.message}"[:500],
                payment_metadata=metadata,
                occurred_at=self.now,
                created_at=self.now,
            ))

    def _mark_past_due(self, subscription: Subscription, attempts: int):
        with self.store.unit_of_work():
            self.store.update(Subscription, subscription.id, status=SubscriptionStatus.PAST_DUE.value)
            self.store.add(Activity(
                user_id=subscription.creator_id,
                type=ActivityType.SUBSCRIPTION_PAST_DUE.value,
                payload={
                    "subscriptionId": subscription.id,
                    "failedAttempts": attempts,
                    "currentPeriodEnd": subscription.current_period_end.isoformat(),
                },
                created_at=self.now,
            ))
        record_charge_outcome(JOB_RECURRING_BILLING, "past_due")
        logger.info(f"[billing] Subscription {subscription.id} marked past_due after {attempts} failed attempts")

    def _finish(self, job: str, result: BillingResult):
        get_metrics_collector().increment_counter("billing_job_runs_total", labels={"job": job})
        logger.info(
            f"[billing] {job} complete: {result.processed} processed, {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped, {len(result.errors)} errors"
        )
