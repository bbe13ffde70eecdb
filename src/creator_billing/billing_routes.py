"""
Billing API routes - provider webhooks and scheduler job triggers
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import hmac
import logging

from .config import config
from .db.engine import get_db
from .schemas import BillingJobSummary, WebhookAck
from .services.billing_gateway import BillingGateway, get_billing_gateway
from .services.recurring_billing import RecurringBillingService
from .services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


def get_stripe_gateway() -> BillingGateway:
    return get_billing_gateway("stripe", config)


def get_paystack_gateway() -> BillingGateway:
    return get_billing_gateway("paystack", config)


def verify_jobs_secret(x_jobs_secret: Optional[str] = Header(None, alias="X-Jobs-Secret")):
    """
    Guard for manual job triggers

    With BILLING_JOBS_SECRET set the header must match it. Without one,
    triggers are only allowed in dev and test.
    """
    expected = config.BILLING_JOBS_SECRET
    if expected:
        if not x_jobs_secret or not hmac.compare_digest(x_jobs_secret, expected):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid jobs secret"
            )
        return
    if config.ENV not in ["dev", "test"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Job triggers are disabled"
        )


async def _reconcile(request: Request, signature_header: str, gateway: BillingGateway, db: Session) -> JSONResponse:
    # Signature is computed over the raw body, so it must not be re-serialized
    body = await request.body()
    signature = request.headers.get(signature_header)

    outcome = WebhookReconciler(db, gateway).handle(body, signature)
    return JSONResponse(content=outcome.to_response(), status_code=outcome.http_status)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_stripe_gateway)
):
    """
    Stripe webhook endpoint with signature verification and replay protection

    Returns 200 for processed, ignored and already-processed events, 400 for
    rejected deliveries and 500 when the event could not be applied (Stripe
    then redelivers).
    """
    return await _reconcile(request, "stripe-signature", gateway, db)


@router.post("/webhooks/paystack", response_model=WebhookAck)
async def paystack_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_paystack_gateway)
):
    """
    Paystack webhook endpoint with signature verification and replay protection
    """
    return await _reconcile(request, "x-paystack-signature", gateway, db)


@router.post("/jobs/recurring-billing", response_model=BillingJobSummary, dependencies=[Depends(verify_jobs_secret)])
def trigger_recurring_billing(
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_paystack_gateway)
):
    """Run the daily renewal job now"""
    result = RecurringBillingService(db, gateway).process_recurring_billing()
    return result.to_dict()


@router.post("/jobs/retries", response_model=BillingJobSummary, dependencies=[Depends(verify_jobs_secret)])
def trigger_billing_retries(
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_paystack_gateway)
):
    """Run the hourly retry job now"""
    result = RecurringBillingService(db, gateway).process_retries()
    return result.to_dict()
