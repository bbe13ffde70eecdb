"""
Webhook reconciler

Applies verified provider events to the ledger exactly once. Each event's
ledger mutations and its WebhookEvent marker commit in one transaction:
either both are durable or neither is, so a failed event is redelivered
by the provider and a replayed one is reported as already processed.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import json
import logging

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import (
    Activity,
    ActivityType,
    Payment,
    PaymentStatus,
    PaymentType,
    Profile,
    Request,
    RequestStatus,
    Subscription,
    SubscriptionInterval,
    SubscriptionStatus,
    User,
    WebhookEventStatus,
)
from ..exceptions import ReconciliationError, WebhookVerificationError
from ..schemas import CheckoutMetadata, WebhookAck
from .billing_gateway import BillingGateway, ProviderEvent, WebhookEventType, from_unix_timestamp
from .billing_periods import add_one_month
from .fee_model import (
    FEE_MODE_PASS_TO_SUBSCRIBER,
    FEE_MODE_SPLIT,
    SPLIT_FEE_MODEL,
    LegacyFee,
    SplitFee,
    fee_schedule_for,
    round_half_up,
)
from .ledger_store import LedgerStore
from .metrics import Timer, record_webhook_outcome

logger = logging.getLogger(__name__)


class ReconcileStatus:
    """Outcome labels returned to the webhook caller"""
    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class ReconcileOutcome:
    """Result of one webhook delivery"""
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def received(self) -> bool:
        return self.status not in (ReconcileStatus.REJECTED, ReconcileStatus.FAILED)

    @property
    def http_status(self) -> int:
        if self.status == ReconcileStatus.REJECTED:
            return 400
        if self.status == ReconcileStatus.FAILED:
            return 500
        return 200

    def to_response(self) -> Dict[str, Any]:
        return WebhookAck(received=self.received, status=self.status).model_dump()


@dataclass
class FeeBreakdown:
    """Money fields for one charge as recorded on the ledger"""
    base_cents: int
    gross_cents: int
    net_cents: int
    fee_cents: int
    subscriber_fee_cents: Optional[int]
    creator_fee_cents: Optional[int]
    fee_model: Optional[str]
    fee_mode: Optional[str]


def _first_positive(*values: Optional[int]) -> Optional[int]:
    for value in values:
        if value is not None and value > 0:
            return value
    return None


def _is_cross_border(profile: Optional[Profile], currency: str) -> bool:
    """Creator paid out in a different currency than the charge"""
    return bool(profile and profile.currency and profile.currency.upper() != currency.upper())


def _parse_metadata(raw: Any) -> Dict[str, Any]:
    """Paystack sometimes delivers metadata as a JSON string"""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class WebhookReconciler:
    """
    Consumes verified provider events and drives ledger mutations

    One handler per WebhookEventType. Handlers return PROCESSED when they
    changed the ledger and IGNORED for deliberate no-ops; both commit a
    marker. Handlers raise to abort the event without a marker.
    """

    def __init__(self, db: Session, gateway: BillingGateway, now: Optional[datetime] = None):
        """
        Initialize webhook reconciler

        Args:
            db: Database session
            gateway: Gateway of the provider whose endpoint received the event
            now: Fixed clock for tests (defaults to utcnow per call)
        """
        self.db = db
        self.store = LedgerStore(db)
        self.gateway = gateway
        self._now = now
        self._handlers: Dict[WebhookEventType, Callable[[ProviderEvent], str]] = {
            WebhookEventType.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            WebhookEventType.ASYNC_PAYMENT_SUCCEEDED: self._handle_async_payment_succeeded,
            WebhookEventType.CHECKOUT_EXPIRED: self._handle_checkout_expired,
            WebhookEventType.INVOICE_PAID: self._handle_invoice_paid,
            WebhookEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            WebhookEventType.CHARGE_SUCCEEDED: self._handle_charge_succeeded,
            WebhookEventType.CHARGE_REFUNDED: self._handle_charge_refunded,
            WebhookEventType.PAYMENT_FAILED: self._handle_payment_failed,
            WebhookEventType.UNHANDLED: self._handle_unhandled,
        }

    def now(self) -> datetime:
        return self._now or datetime.utcnow()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle(self, payload: bytes, signature: Optional[str]) -> ReconcileOutcome:
        """
        Verify, parse and apply a raw webhook delivery

        Args:
            payload: Raw request body exactly as received
            signature: Provider signature header value

        Returns:
            ReconcileOutcome (never raises)
        """
        provider = self.gateway.provider
        try:
            event = self._verified_event(payload, signature)
        except WebhookVerificationError as e:
            logger.warning(f"[{provider}] Rejected webhook: {e.message}")
            record_webhook_outcome(provider, ReconcileStatus.REJECTED)
            return ReconcileOutcome(status=ReconcileStatus.REJECTED, event_type=e.details.get("event_type"))

        return self.apply(event)

    def _verified_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not signature or not self.gateway.verify_webhook_signature(payload, signature):
            raise WebhookVerificationError("missing or invalid signature")

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError("signed body is not JSON") from e
        if not isinstance(body, dict):
            raise WebhookVerificationError(f"signed body is a JSON {type(body).__name__}, not an object")

        try:
            event = self.gateway.parse_webhook_event(body)
        except (TypeError, ValueError, OverflowError) as e:
            raise WebhookVerificationError(f"malformed event envelope: {e}") from e

        if not event.event_id:
            raise WebhookVerificationError(
                f"{event.raw_type or 'untyped'} event has no stable id",
                {"event_type": event.raw_type},
            )
        return event

    def apply(self, event: ProviderEvent) -> ReconcileOutcome:
        """
        Apply a parsed event exactly once

        Args:
            event: Verified provider event

        Returns:
            ReconcileOutcome
        """
        outcome = self._apply(event)
        record_webhook_outcome(event.provider, outcome.status)
        return outcome

    def _apply(self, event: ProviderEvent) -> ReconcileOutcome:
        if self.store.has_processed_event(event.event_id):
            logger.info(f"[{event.provider}] {event.raw_type} {event.event_id} already processed, skipping")
            return ReconcileOutcome(ReconcileStatus.ALREADY_PROCESSED, event.event_id, event.raw_type)

        handler = self._handlers[event.event_type]
        try:
            with Timer("webhook_processing_seconds", {"provider": event.provider}):
                with self.store.unit_of_work():
                    status = handler(event)
                    self.store.record_processed_event(
                        event.event_id,
                        provider=event.provider,
                        event_type=event.raw_type,
                        status=status,
                    )
        except IntegrityError:
            # A concurrent delivery of the same event committed its marker first
            if self.store.has_processed_event(event.event_id):
                logger.info(f"[{event.provider}] {event.event_id} committed concurrently, reporting as already processed")
                return ReconcileOutcome(ReconcileStatus.ALREADY_PROCESSED, event.event_id, event.raw_type)
            logger.error(f"[{event.provider}] Integrity error applying {event.raw_type} {event.event_id}", exc_info=True)
            return ReconcileOutcome(ReconcileStatus.FAILED, event.event_id, event.raw_type)
        except Exception as e:
            logger.error(
                f"[{event.provider}] Failed to apply {event.raw_type} {event.event_id}: {e}",
                exc_info=True,
            )
            return ReconcileOutcome(ReconcileStatus.FAILED, event.event_id, event.raw_type)

        logger.info(f"[{event.provider}] {event.raw_type} {event.event_id} -> {status}")
        return ReconcileOutcome(status, event.event_id, event.raw_type)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_unhandled(self, event: ProviderEvent) -> str:
        logger.debug(f"[{event.provider}] No handler for {event.raw_type}")
        return WebhookEventStatus.IGNORED.value

    def _handle_checkout_completed(self, event: ProviderEvent) -> str:
        session = event.data
        is_subscription_mode = session.get("mode") == "subscription"
        is_paid = session.get("payment_status") in ("paid", "no_payment_required")

        # Unpaid one-time sessions are completed by async_payment_succeeded
        if not is_paid and not is_subscription_mode:
            logger.info(f"[checkout.completed] Session {session.get('id')} awaiting async payment, nothing to record")
            return WebhookEventStatus.IGNORED.value

        return self._apply_stripe_session(event, is_subscription_mode, request_paid=is_paid)

    def _handle_async_payment_succeeded(self, event: ProviderEvent) -> str:
        session = event.data
        return self._apply_stripe_session(event, session.get("mode") == "subscription", request_paid=True)

    def _apply_stripe_session(self, event: ProviderEvent, is_subscription_mode: bool, request_paid: bool) -> str:
        session = event.data
        meta = self._validate_metadata(session.get("metadata"), event)
        customer_details = session.get("customer_details") or {}

        # In subscription mode the charge itself is recorded by invoice.paid
        self._record_first_charge(
            event,
            meta,
            amount_total=session.get("amount_total"),
            currency=session.get("currency") or "usd",
            payer_email=customer_details.get("email") or session.get("customer_email"),
            interval=SubscriptionInterval.MONTH.value if is_subscription_mode else SubscriptionInterval.ONE_TIME.value,
            handles={
                "stripe_checkout_session_id": session.get("id"),
                "stripe_subscription_id": session.get("subscription"),
                "stripe_customer_id": session.get("customer"),
            },
            record_payment=not is_subscription_mode,
            external_reference=event.event_id,
            processor_charge_ref=session.get("payment_intent"),
            accept_request=request_paid,
        )
        return WebhookEventStatus.PROCESSED.value

    def _handle_charge_succeeded(self, event: ProviderEvent) -> str:
        data = event.data
        raw_meta = _parse_metadata(data.get("metadata"))
        reference = data.get("reference")

        # Renewals are recorded by the billing scheduler that initiated them
        if raw_meta.get("chargeType") == PaymentType.RECURRING.value:
            logger.info(f"[paystack] Charge {reference} is a scheduled renewal, already on the ledger")
            return WebhookEventStatus.IGNORED.value
        if reference and self.store.first(Payment, Payment.external_reference == reference):
            logger.info(f"[paystack] Charge {reference} already recorded")
            return WebhookEventStatus.IGNORED.value

        meta = self._validate_metadata(raw_meta, event)
        customer = data.get("customer") or {}
        authorization = data.get("authorization") or {}
        interval = SubscriptionInterval.MONTH.value if meta.interval == "month" else SubscriptionInterval.ONE_TIME.value

        self._record_first_charge(
            event,
            meta,
            amount_total=data.get("amount"),
            currency=data.get("currency") or "NGN",
            payer_email=customer.get("email"),
            interval=interval,
            handles={
                "paystack_authorization_code": authorization.get("authorization_code") if authorization.get("reusable", True) else None,
                "paystack_customer_code": customer.get("customer_code"),
            },
            record_payment=True,
            external_reference=reference or event.event_id,
            processor_charge_ref=reference,
            accept_request=True,
        )
        return WebhookEventStatus.PROCESSED.value

    def _handle_checkout_expired(self, event: ProviderEvent) -> str:
        session = event.data
        session_id = session.get("id")
        raw_meta = session.get("metadata") or {}

        criteria = [
            Request.stripe_checkout_session_id == session_id,
            Request.status == RequestStatus.PENDING_PAYMENT.value,
        ]
        request_id = raw_meta.get("requestId")
        if request_id:
            try:
                criteria.append(Request.id == int(request_id))
            except (TypeError, ValueError):
                logger.warning(f"[checkout.expired] Ignoring malformed requestId on session {session_id}")

        request = self.store.first(Request, *criteria) if session_id else None
        if request is None:
            logger.info(f"[checkout.expired] No pending request for session {session_id}")
            return WebhookEventStatus.IGNORED.value

        self.store.update(
            Request,
            request.id,
            status=RequestStatus.SENT.value,
            stripe_checkout_session_id=None,
        )
        logger.info(f"[checkout.expired] Request {request.id} reverted to sent")
        return WebhookEventStatus.PROCESSED.value

    def _handle_invoice_paid(self, event: ProviderEvent) -> str:
        invoice = event.data
        stripe_subscription_id = invoice.get("subscription")
        if not stripe_subscription_id:
            logger.info(f"[invoice.paid] Invoice {invoice.get('id')} is not for a subscription")
            return WebhookEventStatus.IGNORED.value

        subscription = self.store.first(Subscription, Subscription.stripe_subscription_id == stripe_subscription_id)
        if subscription is None:
            subscription = self._backfill_subscription(event, invoice)

        gross_cents = int(invoice.get("amount_paid") or 0)
        currency = (invoice.get("currency") or subscription.currency or "usd").upper()
        period_end = self._invoice_period_end(invoice) or add_one_month(subscription.current_period_end or self.now())

        if gross_cents <= 0:
            self.store.update(Subscription, subscription.id, current_period_end=period_end)
            logger.info(f"[invoice.paid] Zero-amount invoice for subscription {subscription.id}, period advanced")
            return WebhookEventStatus.PROCESSED.value

        breakdown = self._invoice_breakdown(subscription, invoice, gross_cents, currency)

        self.store.add(Payment(
            subscription_id=subscription.id,
            creator_id=subscription.creator_id,
            subscriber_id=subscription.subscriber_id,
            amount_cents=subscription.amount,
            gross_cents=breakdown.gross_cents,
            net_cents=breakdown.net_cents,
            fee_cents=breakdown.fee_cents,
            subscriber_fee_cents=breakdown.subscriber_fee_cents,
            creator_fee_cents=breakdown.creator_fee_cents,
            currency=currency,
            type=PaymentType.RECURRING.value,
            status=PaymentStatus.SUCCEEDED.value,
            fee_model=breakdown.fee_model,
            fee_mode=breakdown.fee_mode,
            provider=event.provider,
            external_reference=event.event_id,
            processor_charge_ref=invoice.get("charge") or invoice.get("payment_intent"),
            payment_metadata={"invoice_id": invoice.get("id"), "billing_reason": invoice.get("billing_reason")},
            occurred_at=event.created_at or self.now(),
        ))

        # past_due is never lifted here; reactivation is an external action
        self.store.update(Subscription, subscription.id, current_period_end=period_end)
        self.store.increment(Subscription, subscription.id, "ltv_cents", breakdown.net_cents)

        self._emit(subscription.creator_id, ActivityType.PAYMENT_RECEIVED, {
            "subscriptionId": subscription.id,
            "amount": breakdown.gross_cents,
            "netCents": breakdown.net_cents,
            "currency": currency,
            "type": PaymentType.RECURRING.value,
            "provider": event.provider,
        })
        return WebhookEventStatus.PROCESSED.value

    def _handle_subscription_deleted(self, event: ProviderEvent) -> str:
        data = event.data
        if event.provider == "paystack":
            code = data.get("subscription_code")
            subscription = self.store.first(Subscription, Subscription.paystack_subscription_code == code) if code else None
        else:
            subscription = self.store.first(Subscription, Subscription.stripe_subscription_id == data.get("id"))

        if subscription is None:
            logger.warning(f"[{event.provider}] Cancellation for unknown subscription in event {event.event_id}")
            return WebhookEventStatus.IGNORED.value

        if subscription.status == SubscriptionStatus.CANCELED.value:
            return WebhookEventStatus.IGNORED.value

        canceled_at = from_unix_timestamp(data.get("canceled_at")) or self.now()
        self.store.update(
            Subscription,
            subscription.id,
            status=SubscriptionStatus.CANCELED.value,
            canceled_at=canceled_at,
        )
        self._emit(subscription.creator_id, ActivityType.SUBSCRIPTION_CANCELED, {
            "subscriptionId": subscription.id,
            "subscriberId": subscription.subscriber_id,
            "amount": subscription.amount,
            "currency": subscription.currency,
            "provider": event.provider,
        })
        logger.info(f"[{event.provider}] Subscription {subscription.id} canceled by processor")
        return WebhookEventStatus.PROCESSED.value

    def _handle_charge_refunded(self, event: ProviderEvent) -> str:
        """
        Record a refund as a negated Payment and take its net back out of LTV

        Stripe reports the cumulative amount_refunded on the charge, Paystack
        reports each refund's own amount. Fees are reversed in the same ratio
        as the original charge.
        """
        data = event.data
        if event.provider == "paystack":
            transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}
            charge_refs = [transaction.get("reference") or data.get("transaction_reference")]
        else:
            charge_refs = [data.get("id"), data.get("payment_intent")]
        charge_refs = [ref for ref in charge_refs if ref]

        original = self.store.first(
            Payment,
            Payment.processor_charge_ref.in_(charge_refs),
            Payment.status == PaymentStatus.SUCCEEDED.value,
            order_by=Payment.created_at,
        ) if charge_refs else None
        if original is None:
            logger.warning(f"[{event.provider}] Refund {event.event_id} does not match a recorded charge {charge_refs}")
            return WebhookEventStatus.IGNORED.value

        gross = original.gross_cents or 0
        already_refunded = -sum(
            p.gross_cents or 0
            for p in self.store.filter(
                Payment,
                Payment.processor_charge_ref == original.processor_charge_ref,
                Payment.status == PaymentStatus.REFUNDED.value,
            )
        )
        if event.provider == "paystack":
            amount = int(data.get("amount") or gross - already_refunded)
        else:
            amount = int(data.get("amount_refunded") or 0) - already_refunded
        amount = min(amount, gross - already_refunded)
        if amount <= 0:
            logger.info(f"[{event.provider}] Refund on {original.processor_charge_ref} already recorded")
            return WebhookEventStatus.IGNORED.value

        ratio = Decimal(amount) / Decimal(gross)
        fee_cents = round_half_up(original.fee_cents * ratio)
        subscriber_fee = None
        creator_fee = None
        if original.subscriber_fee_cents is not None and original.creator_fee_cents is not None:
            subscriber_fee = round_half_up(original.subscriber_fee_cents * ratio)
            creator_fee = fee_cents - subscriber_fee
        net_cents = amount - fee_cents

        self.store.add(Payment(
            subscription_id=original.subscription_id,
            creator_id=original.creator_id,
            subscriber_id=original.subscriber_id,
            amount_cents=-amount,
            gross_cents=-amount,
            net_cents=-net_cents,
            fee_cents=-fee_cents,
            subscriber_fee_cents=-subscriber_fee if subscriber_fee is not None else None,
            creator_fee_cents=-creator_fee if creator_fee is not None else None,
            currency=original.currency,
            type=original.type,
            status=PaymentStatus.REFUNDED.value,
            fee_model=original.fee_model,
            fee_mode=original.fee_mode,
            provider=event.provider,
            external_reference=event.event_id,
            processor_charge_ref=original.processor_charge_ref,
            payment_metadata={"refundOf": original.id},
            occurred_at=event.created_at or self.now(),
            created_at=self.now(),
        ))

        if original.subscription_id is not None:
            subscription = self.store.get_for_update(Subscription, original.subscription_id)
            # LTV never goes negative
            decrement = min(net_cents, subscription.ltv_cents or 0)
            if decrement > 0:
                self.store.increment(Subscription, subscription.id, "ltv_cents", -decrement)

        reason = data.get("customer_note")
        refunds = data.get("refunds") if isinstance(data.get("refunds"), dict) else {}
        for refund in refunds.get("data") or []:
            if isinstance(refund, dict) and refund.get("reason"):
                reason = refund["reason"]
                break
        self._emit(original.creator_id, ActivityType.PAYMENT_REFUNDED, {
            "subscriptionId": original.subscription_id,
            "paymentId": original.id,
            "amount": amount,
            "netCents": net_cents,
            "currency": original.currency,
            "reason": reason or "requested_by_customer",
            "provider": event.provider,
        })
        logger.info(f"[{event.provider}] Refunded {amount} of payment {original.id}")
        return WebhookEventStatus.PROCESSED.value

    def _handle_payment_failed(self, event: ProviderEvent) -> str:
        """
        Keep a failed renewal reported by the processor as retry evidence

        The subscription status is left alone; past_due is decided by the
        billing scheduler from the failures of the current cycle.
        """
        data = event.data
        if event.provider == "paystack":
            meta = _parse_metadata(data.get("metadata"))
            # Failed scheduler charges are already on the ledger
            if meta.get("chargeType") == PaymentType.RECURRING.value:
                return WebhookEventStatus.IGNORED.value
            subscription = self._subscription_by_id(meta.get("subscriptionId"))
            charge_ref = data.get("reference")
            amount_due = data.get("amount")
            reason = data.get("gateway_response")
        else:
            details = data.get("subscription_details") if isinstance(data.get("subscription_details"), dict) else {}
            stripe_subscription_id = data.get("subscription") or details.get("subscription")
            subscription = self.store.first(
                Subscription, Subscription.stripe_subscription_id == stripe_subscription_id
            ) if stripe_subscription_id else None
            charge_ref = data.get("charge") or data.get("payment_intent")
            amount_due = data.get("amount_due")
            error = data.get("last_finalization_error") if isinstance(data.get("last_finalization_error"), dict) else {}
            reason = error.get("message")

        if subscription is None:
            logger.info(f"[{event.provider}] Failed payment {event.event_id} is not for a known subscription")
            return WebhookEventStatus.IGNORED.value
        if charge_ref and self.store.first(Payment, Payment.external_reference == charge_ref):
            return WebhookEventStatus.IGNORED.value

        reason = reason or "Payment could not be processed"
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
            provider=event.provider,
            external_reference=event.event_id,
            processor_charge_ref=charge_ref,
            failure_reason=reason[:500],
            payment_metadata={"invoiceId": data.get("id") if event.provider == "stripe" else None,
                              "amountDue": amount_due},
            occurred_at=event.created_at or self.now(),
            created_at=self.now(),
        ))
        self._emit(subscription.creator_id, ActivityType.PAYMENT_FAILED, {
            "subscriptionId": subscription.id,
            "amount": amount_due,
            "currency": subscription.currency,
            "failureMessage": reason,
            "provider": event.provider,
        })
        logger.info(f"[{event.provider}] Recorded failed payment for subscription {subscription.id}")
        return WebhookEventStatus.PROCESSED.value

    # ------------------------------------------------------------------
    # Shared transitions
    # ------------------------------------------------------------------

    def _record_first_charge(
        self,
        event: ProviderEvent,
        meta: CheckoutMetadata,
        amount_total: Optional[int],
        currency: str,
        payer_email: Optional[str],
        interval: str,
        handles: Dict[str, Optional[str]],
        record_payment: bool,
        external_reference: str,
        accept_request: bool,
        processor_charge_ref: Optional[str] = None,
    ) -> Subscription:
        """Create or refresh the subscription for a checkout, then record its payment"""
        currency = currency.upper()
        profile = self.store.first(Profile, Profile.user_id == meta.creator_id)
        if self.store.get(User, meta.creator_id) is None:
            raise ReconciliationError(f"Creator {meta.creator_id} does not exist", {"event_id": event.event_id})

        breakdown = self._first_charge_breakdown(meta, amount_total, currency, profile)
        subscriber = self._resolve_subscriber(payer_email)

        subscription = self._find_subscription(handles, meta.creator_id, subscriber, interval)
        period_end = add_one_month(self.now()) if interval == SubscriptionInterval.MONTH.value else None
        known_handles = {k: v for k, v in handles.items() if v}

        if subscription is None:
            subscription = self.store.add(Subscription(
                creator_id=meta.creator_id,
                subscriber_id=subscriber.id if subscriber else None,
                amount=breakdown.base_cents,
                currency=currency,
                interval=interval,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_end=period_end,
                fee_model=breakdown.fee_model,
                fee_mode=breakdown.fee_mode,
                ltv_cents=breakdown.net_cents if record_payment else 0,
                **known_handles,
            ))
            logger.info(f"[{event.provider}] Created subscription {subscription.id} for creator {meta.creator_id}")
        else:
            values = dict(known_handles)
            if subscription.status == SubscriptionStatus.CANCELED.value:
                # Resubscribe after cancellation starts a fresh cycle
                values.update(status=SubscriptionStatus.ACTIVE.value, canceled_at=None, cancel_at_period_end=False)
            if period_end is not None and handles.get("paystack_authorization_code"):
                values["current_period_end"] = period_end
            values.update(amount=breakdown.base_cents, fee_model=breakdown.fee_model, fee_mode=breakdown.fee_mode)
            self.store.update(Subscription, subscription.id, **values)
            if record_payment:
                self.store.increment(Subscription, subscription.id, "ltv_cents", breakdown.net_cents)

        if record_payment:
            self.store.add(Payment(
                subscription_id=subscription.id,
                creator_id=meta.creator_id,
                subscriber_id=subscriber.id if subscriber else None,
                amount_cents=breakdown.base_cents,
                gross_cents=breakdown.gross_cents,
                net_cents=breakdown.net_cents,
                fee_cents=breakdown.fee_cents,
                subscriber_fee_cents=breakdown.subscriber_fee_cents,
                creator_fee_cents=breakdown.creator_fee_cents,
                currency=currency,
                type=PaymentType.RECURRING.value if interval == SubscriptionInterval.MONTH.value else PaymentType.ONE_TIME.value,
                status=PaymentStatus.SUCCEEDED.value,
                fee_model=breakdown.fee_model,
                fee_mode=breakdown.fee_mode,
                provider=event.provider,
                external_reference=external_reference,
                processor_charge_ref=processor_charge_ref,
                payment_metadata={"tierId": meta.tier_id, "feeWasCapped": meta.fee_was_capped},
                occurred_at=event.created_at or self.now(),
            ))
            self._emit(meta.creator_id, ActivityType.PAYMENT_RECEIVED, {
                "subscriptionId": subscription.id,
                "amount": breakdown.gross_cents,
                "netCents": breakdown.net_cents,
                "currency": currency,
                "type": interval,
                "provider": event.provider,
            })

        if meta.request_id and accept_request:
            self._accept_request(meta.request_id, meta.creator_id, event.provider)

        return subscription

    def _accept_request(self, request_id: int, creator_id: int, provider: str) -> None:
        request = self.store.get_for_update(Request, request_id)
        if request is None or request.creator_id != creator_id:
            logger.warning(f"[{provider}] Checkout references unknown request {request_id}")
            return
        if request.status == RequestStatus.ACCEPTED.value:
            return

        self.store.update(Request, request.id, status=RequestStatus.ACCEPTED.value, responded_at=self.now())
        self._emit(creator_id, ActivityType.REQUEST_ACCEPTED, {
            "requestId": request.id,
            "recipientName": request.recipient_name,
            "amount": request.amount_cents,
            "provider": provider,
        })

    def _find_subscription(
        self,
        handles: Dict[str, Optional[str]],
        creator_id: int,
        subscriber: Optional[User],
        interval: str,
    ) -> Optional[Subscription]:
        for column in ("stripe_checkout_session_id", "stripe_subscription_id"):
            value = handles.get(column)
            if value:
                existing = self.store.first(Subscription, getattr(Subscription, column) == value)
                if existing is not None:
                    return existing

        # One-time payments always open their own record
        if subscriber is None or interval != SubscriptionInterval.MONTH.value:
            return None
        return self.store.first(
            Subscription,
            Subscription.creator_id == creator_id,
            Subscription.subscriber_id == subscriber.id,
            Subscription.interval == interval,
            order_by=Subscription.created_at.desc(),
        )

    def _subscription_by_id(self, raw_id: Any) -> Optional[Subscription]:
        try:
            return self.store.get(Subscription, int(raw_id))
        except (TypeError, ValueError):
            return None

    def _resolve_subscriber(self, email: Optional[str]) -> Optional[User]:
        if not email:
            return None
        email = email.strip().lower()
        user = self.store.first(User, User.email == email)
        if user is None:
            user = self.store.add(User(email=email))
        return user

    def _backfill_subscription(self, event: ProviderEvent, invoice: Dict[str, Any]) -> Subscription:
        """Recreate a subscription missing locally from the metadata Stripe carries on the invoice"""
        details = invoice.get("subscription_details") or {}
        raw_meta = details.get("metadata") or {}
        if not raw_meta.get("creatorId"):
            raise ReconciliationError(
                f"Subscription {invoice.get('subscription')} not found and invoice carries no metadata",
                {"event_id": event.event_id},
            )

        meta = self._validate_metadata(raw_meta, event)
        if self.store.get(User, meta.creator_id) is None:
            raise ReconciliationError(f"Creator {meta.creator_id} does not exist", {"event_id": event.event_id})

        subscriber = self._resolve_subscriber(invoice.get("customer_email"))
        base_cents = _first_positive(meta.base_amount_cents, meta.gross_amount, meta.net_amount,
                                     int(invoice.get("amount_paid") or 0))
        if base_cents is None:
            raise ReconciliationError("Cannot determine base price for backfilled subscription",
                                      {"event_id": event.event_id})

        subscription = self.store.add(Subscription(
            creator_id=meta.creator_id,
            subscriber_id=subscriber.id if subscriber else None,
            amount=base_cents,
            currency=(invoice.get("currency") or "usd").upper(),
            interval=SubscriptionInterval.MONTH.value,
            status=SubscriptionStatus.ACTIVE.value,
            fee_model=meta.fee_model if meta.fee_model == SPLIT_FEE_MODEL else None,
            fee_mode=meta.fee_mode or FEE_MODE_PASS_TO_SUBSCRIBER,
            ltv_cents=0,
            stripe_subscription_id=invoice.get("subscription"),
            stripe_customer_id=invoice.get("customer"),
        ))
        logger.warning(f"[invoice.paid] Backfilled missing subscription {subscription.id} from invoice metadata")
        return subscription

    # ------------------------------------------------------------------
    # Money
    # ------------------------------------------------------------------

    def _first_charge_breakdown(
        self,
        meta: CheckoutMetadata,
        amount_total: Optional[int],
        currency: str,
        profile: Optional[Profile],
    ) -> FeeBreakdown:
        """
        Ledger amounts for a first charge

        The base price follows baseAmountCents -> gross -> net, whichever is
        present first, under every fee model.
        """
        gross_cents = _first_positive(meta.gross_amount, int(amount_total or 0))
        if gross_cents is None:
            raise ReconciliationError("Charge carries no amount")

        base_cents = _first_positive(meta.base_amount_cents, gross_cents, meta.net_amount)
        purpose = profile.purpose if profile else None
        cross_border = _is_cross_border(profile, currency)

        if meta.fee_model != SPLIT_FEE_MODEL:
            legacy = LegacyFee().compute(gross_cents, currency)
            return FeeBreakdown(
                base_cents=base_cents,
                gross_cents=gross_cents,
                net_cents=legacy.net_cents,
                fee_cents=legacy.fee_cents,
                subscriber_fee_cents=None,
                creator_fee_cents=None,
                fee_model=None,
                fee_mode=meta.fee_mode or FEE_MODE_PASS_TO_SUBSCRIBER,
            )

        net_cents = meta.net_amount
        fee_cents = meta.service_fee
        if net_cents is None and fee_cents is None:
            computed = SplitFee(purpose=purpose, cross_border=cross_border).compute(base_cents, currency)
            fee_cents = computed.fee_cents
        if net_cents is None:
            net_cents = gross_cents - fee_cents
        if fee_cents is None or net_cents + fee_cents != gross_cents:
            if fee_cents is not None:
                logger.warning(
                    f"Fee metadata does not balance (gross={gross_cents} net={net_cents} fee={fee_cents}), "
                    f"using gross - net"
                )
            fee_cents = gross_cents - net_cents

        subscriber_fee = meta.subscriber_fee_cents
        creator_fee = meta.creator_fee_cents
        if subscriber_fee is None or creator_fee is None or subscriber_fee + creator_fee != fee_cents:
            subscriber_fee = max(gross_cents - base_cents, 0)
            creator_fee = fee_cents - subscriber_fee

        return FeeBreakdown(
            base_cents=base_cents,
            gross_cents=gross_cents,
            net_cents=net_cents,
            fee_cents=fee_cents,
            subscriber_fee_cents=subscriber_fee,
            creator_fee_cents=creator_fee,
            fee_model=SPLIT_FEE_MODEL,
            fee_mode=meta.fee_mode or FEE_MODE_SPLIT,
        )

    def _invoice_breakdown(
        self,
        subscription: Subscription,
        invoice: Dict[str, Any],
        gross_cents: int,
        currency: str,
    ) -> FeeBreakdown:
        """Renewal amounts under the subscription's stored fee schedule"""
        profile = self.store.first(Profile, Profile.user_id == subscription.creator_id)
        schedule = fee_schedule_for(
            subscription.fee_model,
            purpose=profile.purpose if profile else None,
            cross_border=_is_cross_border(profile, currency),
        )

        if isinstance(schedule, LegacyFee):
            legacy = schedule.compute(gross_cents, currency)
            return FeeBreakdown(
                base_cents=subscription.amount,
                gross_cents=gross_cents,
                net_cents=legacy.net_cents,
                fee_cents=legacy.fee_cents,
                subscriber_fee_cents=None,
                creator_fee_cents=None,
                fee_model=None,
                fee_mode=subscription.fee_mode or FEE_MODE_PASS_TO_SUBSCRIBER,
            )

        computed = schedule.compute(subscription.amount, currency)
        carried_fee = invoice.get("application_fee_amount")
        fee_cents = int(carried_fee) if carried_fee is not None else computed.fee_cents
        fee_cents = min(fee_cents, gross_cents)

        if carried_fee is not None and fee_cents != computed.fee_cents:
            logger.warning(
                f"[invoice.paid] Fee mismatch on subscription {subscription.id}: "
                f"carried={fee_cents} computed={computed.fee_cents}"
            )
            self._emit(subscription.creator_id, ActivityType.FEE_MISMATCH_ALERT, {
                "subscriptionId": subscription.id,
                "invoiceId": invoice.get("id"),
                "carriedFeeCents": fee_cents,
                "computedFeeCents": computed.fee_cents,
                "grossCents": gross_cents,
            })

        subscriber_fee = min(max(gross_cents - subscription.amount, 0), fee_cents)
        return FeeBreakdown(
            base_cents=subscription.amount,
            gross_cents=gross_cents,
            net_cents=gross_cents - fee_cents,
            fee_cents=fee_cents,
            subscriber_fee_cents=subscriber_fee,
            creator_fee_cents=fee_cents - subscriber_fee,
            fee_model=SPLIT_FEE_MODEL,
            fee_mode=subscription.fee_mode or FEE_MODE_SPLIT,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_metadata(self, raw: Any, event: ProviderEvent) -> CheckoutMetadata:
        try:
            return CheckoutMetadata.model_validate(_parse_metadata(raw))
        except ValidationError as e:
            raise ReconciliationError(
                f"Invalid checkout metadata on {event.raw_type} {event.event_id}",
                {"errors": [err["msg"] for err in e.errors()]},
            ) from e

    @staticmethod
    def _invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
        lines = (invoice.get("lines") or {}).get("data") or []
        if lines:
            period = lines[0].get("period") or {}
            return from_unix_timestamp(period.get("end"))
        return from_unix_timestamp(invoice.get("period_end"))

    def _emit(self, user_id: int, activity_type: ActivityType, payload: Dict[str, Any]) -> None:
        self.store.add(Activity(user_id=user_id, type=activity_type.value, payload=payload, created_at=self.now()))
