"""
Billing Gateway - Abstract interface for payment processors
Supports Paystack (authorization charges + webhooks) and Stripe (webhooks)
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple
import enum
import hashlib
import hmac
import json
import logging

import httpx
import stripe

from ..exceptions import (
    ChargeDeclinedError,
    ProcessorError,
    ProcessorNetworkError,
    ProcessorTimeoutError,
)

logger = logging.getLogger(__name__)


class WebhookEventType(str, enum.Enum):
    """Closed set of provider events the reconciler knows how to apply"""
    CHECKOUT_COMPLETED = "checkout_completed"
    ASYNC_PAYMENT_SUCCEEDED = "async_payment_succeeded"
    CHECKOUT_EXPIRED = "checkout_expired"
    INVOICE_PAID = "invoice_paid"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_REFUNDED = "charge_refunded"
    PAYMENT_FAILED = "payment_failed"
    UNHANDLED = "unhandled"


STRIPE_EVENT_TYPES = {
    "checkout.session.completed": WebhookEventType.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": WebhookEventType.ASYNC_PAYMENT_SUCCEEDED,
    "checkout.session.expired": WebhookEventType.CHECKOUT_EXPIRED,
    "invoice.paid": WebhookEventType.INVOICE_PAID,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_DELETED,
    "charge.refunded": WebhookEventType.CHARGE_REFUNDED,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
}

PAYSTACK_EVENT_TYPES = {
    "charge.success": WebhookEventType.CHARGE_SUCCEEDED,
    "subscription.disable": WebhookEventType.SUBSCRIPTION_DELETED,
    "refund.processed": WebhookEventType.CHARGE_REFUNDED,
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
}


@dataclass
class ProviderEvent:
    """A verified provider event in provider-neutral form"""
    provider: str
    event_id: str
    event_type: WebhookEventType
    raw_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class ChargeResult:
    """Outcome of a successful authorization charge"""
    id: str
    status: str
    reference: str
    rotated_authorization: Optional[str] = None


def _object(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def from_unix_timestamp(value: Any) -> Optional[datetime]:
    """Convert a provider unix timestamp to a naive UTC datetime"""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def from_iso_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Convert a provider ISO-8601 string to a naive UTC datetime"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class BillingGateway(ABC):
    """Abstract base class for payment processors"""

    provider: str = ""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify webhook signature"""
        pass

    @abstractmethod
    def parse_webhook_event(self, payload: Dict) -> ProviderEvent:
        """Parse a verified webhook body into a ProviderEvent"""
        pass

    @abstractmethod
    def charge(
        self,
        authorization_handle: str,
        payer_email: str,
        amount_cents: int,
        currency: str,
        destination_handle: Optional[str],
        metadata: Dict[str, Any],
        idempotency_reference: str,
        timeout: float,
    ) -> ChargeResult:
        """
        Charge a stored authorization off-session

        Raises:
            ChargeDeclinedError: processor answered without approving
            ProcessorTimeoutError: no answer within timeout
            ProcessorNetworkError: transport failure or processor 5xx
        """
        pass


class StripeGateway(BillingGateway):
    """Stripe payment gateway (webhook side only; Stripe renews via its own invoices)"""

    provider = "stripe"

    def __init__(self, api_key: str, webhook_secret: str, is_test: bool = False):
        """
        Initialize Stripe gateway

        Args:
            api_key: Stripe API key (test or live)
            webhook_secret: Stripe webhook signing secret
            is_test: Whether using test mode
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.is_test = is_test
        stripe.api_key = api_key

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """
        Verify Stripe webhook signature

        Only the Stripe-Signature header is checked here; the body is parsed
        by the caller.
        """
        if not signature:
            return False
        try:
            # verify_header signs the text form of the body
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning(f"Stripe webhook payload is not valid UTF-8: {e}")
            return False
        try:
            return stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError:
            return False

    def parse_webhook_event(self, payload: Dict) -> ProviderEvent:
        """Parse Stripe webhook event"""
        raw_type = payload.get("type", "")
        return ProviderEvent(
            provider=self.provider,
            event_id=payload.get("id", ""),
            event_type=STRIPE_EVENT_TYPES.get(raw_type, WebhookEventType.UNHANDLED),
            raw_type=raw_type,
            data=_object(_object(payload.get("data")).get("object")),
            created_at=from_unix_timestamp(payload.get("created")),
        )

    def charge(self, authorization_handle, payer_email, amount_cents, currency,
               destination_handle, metadata, idempotency_reference, timeout) -> ChargeResult:
        raise NotImplementedError("Stripe renewals are charged by Stripe and reported via invoice.paid")


class PaystackGateway(BillingGateway):
    """Paystack payment gateway"""

    provider = "paystack"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        is_test: bool = False,
        base_url: str = "https://api.paystack.co",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Paystack gateway

        Args:
            secret_key: Paystack secret key (test or live)
            webhook_secret: Key used to sign webhooks (Paystack signs with the secret key by default)
            is_test: Whether using test mode
            base_url: API root
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret or secret_key
        self.is_test = is_test
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    def _post(self, endpoint: str, data: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """POST to the Paystack API and map transport failures onto processor errors"""
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json"
        }

        try:
            with httpx.Client(transport=self.transport, timeout=timeout) as client:
                response = client.post(url, headers=headers, json=data)
        except httpx.TimeoutException as e:
            raise ProcessorTimeoutError(f"Paystack request timed out after {timeout}s", provider=self.provider) from e
        except httpx.TransportError as e:
            raise ProcessorNetworkError(f"Paystack request failed: {e}", provider=self.provider) from e

        if response.status_code >= 500:
            raise ProcessorNetworkError(
                f"Paystack returned HTTP {response.status_code}",
                provider=self.provider,
                details={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProcessorError(f"Paystack returned a non-JSON body (HTTP {response.status_code})",
                                 provider=self.provider) from e

        if response.status_code >= 400 or not body.get("status"):
            raise ChargeDeclinedError(
                body.get("message") or f"Paystack rejected the request (HTTP {response.status_code})",
                provider=self.provider,
                details={"status_code": response.status_code},
            )
        return body

    def charge(
        self,
        authorization_handle: str,
        payer_email: str,
        amount_cents: int,
        currency: str,
        destination_handle: Optional[str],
        metadata: Dict[str, Any],
        idempotency_reference: str,
        timeout: float,
    ) -> ChargeResult:
        """Charge a stored Paystack authorization"""
        request_body = {
            "authorization_code": authorization_handle,
            "email": payer_email,
            "amount": amount_cents,
            "currency": currency.upper(),
            "metadata": metadata,
            "reference": idempotency_reference,
        }
        if destination_handle:
            request_body["subaccount"] = destination_handle
            request_body["bearer"] = "account"

        body = self._post("/transaction/charge_authorization", request_body, timeout)
        data = body.get("data") or {}

        status = data.get("status", "")
        if status != "success":
            raise ChargeDeclinedError(
                data.get("gateway_response") or f"Charge status {status or 'unknown'}",
                provider=self.provider,
                details={"reference": data.get("reference", idempotency_reference), "status": status},
            )

        authorization = data.get("authorization") or {}
        rotated = authorization.get("authorization_code")
        if rotated == authorization_handle:
            rotated = None

        logger.info(f"Paystack charge {data.get('reference', idempotency_reference)} succeeded")
        return ChargeResult(
            id=str(data.get("id", "")),
            status=status,
            reference=data.get("reference", idempotency_reference),
            rotated_authorization=rotated,
        )

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify Paystack webhook signature (HMAC-SHA512 of the raw body)"""
        if not signature or not self.webhook_secret:
            return False
        computed_signature = hmac.new(
            self.webhook_secret.encode(),
            payload,
            hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(computed_signature, signature)

    def parse_webhook_event(self, payload: Dict) -> ProviderEvent:
        """
        Parse Paystack webhook event

        Paystack may redeliver with a new envelope, so the transaction
        reference (or data id) is the stable idempotency key.
        """
        raw_type = payload.get("event", "")
        data = _object(payload.get("data"))
        stable_id = data.get("reference") or data.get("subscription_code") or data.get("id")
        return ProviderEvent(
            provider=self.provider,
            event_id=f"paystack_{raw_type}_{stable_id}" if stable_id else "",
            event_type=PAYSTACK_EVENT_TYPES.get(raw_type, WebhookEventType.UNHANDLED),
            raw_type=raw_type,
            data=data,
            created_at=from_iso_timestamp(data.get("paid_at") or data.get("created_at")),
        )


def sign_paystack_payload(payload: Dict[str, Any], secret: str) -> Tuple[bytes, str]:
    """Serialize a body and sign it the way Paystack does (used by tooling and tests)"""
    body = json.dumps(payload).encode()
    return body, hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def get_billing_gateway(provider: str, config) -> BillingGateway:
    """
    Factory function to get the appropriate billing gateway

    Args:
        provider: 'stripe' or 'paystack'
        config: Config object with payment provider settings

    Returns:
        BillingGateway instance
    """
    is_staging = config.ENV == "staging"

    if provider == "stripe":
        if is_staging:
            api_key = config.STRIPE_TEST_SECRET_KEY
            webhook_secret = config.STRIPE_TEST_WEBHOOK_SECRET
        else:
            api_key = config.STRIPE_SECRET_KEY
            webhook_secret = config.STRIPE_WEBHOOK_SECRET

        if not api_key:
            raise ValueError("Stripe API key not configured")
        if not webhook_secret:
            raise ValueError("Stripe webhook secret not configured")

        return StripeGateway(api_key, webhook_secret, is_test=is_staging)

    elif provider == "paystack":
        if is_staging:
            secret_key = config.PAYSTACK_TEST_SECRET_KEY
            webhook_secret = config.PAYSTACK_TEST_WEBHOOK_SECRET
        else:
            secret_key = config.PAYSTACK_SECRET_KEY
            webhook_secret = config.PAYSTACK_WEBHOOK_SECRET

        if not secret_key:
            raise ValueError("Paystack secret key not configured")

        return PaystackGateway(secret_key, webhook_secret, is_test=is_staging, base_url=config.PAYSTACK_BASE_URL)

    else:
        raise ValueError(f"Unsupported payment provider: {provider}")
