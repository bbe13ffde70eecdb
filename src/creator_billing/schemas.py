"""
Pydantic schemas for provider metadata and API responses
"""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import Any, List, Optional


def _lenient_int(value: Any) -> Optional[int]:
    """Parse a metadata amount; anything unparseable or negative counts as absent"""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        try:
            parsed = int(float(str(value).strip()))
        except (TypeError, ValueError):
            return None
    return parsed if parsed >= 0 else None


class CheckoutMetadata(BaseModel):
    """
    Metadata attached to a checkout session or first charge

    Providers deliver metadata values as strings (Stripe) or JSON numbers
    (Paystack). Fee amounts are parsed leniently: a malformed value is
    treated as missing so the base-price fallback chain can apply.
    creatorId is the only hard requirement.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    creator_id: int = Field(..., validation_alias=AliasChoices("creatorId", "creator_id"))
    tier_id: Optional[str] = Field(None, validation_alias=AliasChoices("tierId", "tier_id"))
    request_id: Optional[int] = Field(None, validation_alias=AliasChoices("requestId", "request_id"))
    interval: Optional[str] = None

    gross_amount: Optional[int] = Field(None, validation_alias=AliasChoices("grossAmount", "grossCents"))
    net_amount: Optional[int] = Field(None, validation_alias=AliasChoices("netAmount", "creatorAmount", "netCents"))
    service_fee: Optional[int] = Field(None, validation_alias=AliasChoices("serviceFee", "feeCents"))
    base_amount_cents: Optional[int] = Field(None, validation_alias=AliasChoices("baseAmountCents", "baseCents"))
    subscriber_fee_cents: Optional[int] = Field(None, validation_alias=AliasChoices("subscriberFeeCents"))
    creator_fee_cents: Optional[int] = Field(None, validation_alias=AliasChoices("creatorFeeCents"))

    fee_model: Optional[str] = Field(None, validation_alias=AliasChoices("feeModel", "fee_model"))
    fee_mode: Optional[str] = Field(None, validation_alias=AliasChoices("feeMode", "fee_mode"))
    fee_effective_rate: Optional[float] = Field(None, validation_alias=AliasChoices("feeEffectiveRate"))
    fee_was_capped: bool = Field(False, validation_alias=AliasChoices("feeWasCapped"))

    @field_validator(
        "gross_amount", "net_amount", "service_fee", "base_amount_cents",
        "subscriber_fee_cents", "creator_fee_cents",
        mode="before",
    )
    @classmethod
    def parse_amount(cls, v):
        return _lenient_int(v)

    @field_validator("request_id", mode="before")
    @classmethod
    def parse_request_id(cls, v):
        return _lenient_int(v)

    @field_validator("fee_effective_rate", mode="before")
    @classmethod
    def parse_rate(cls, v):
        try:
            return float(v) if v not in (None, "") else None
        except (TypeError, ValueError):
            return None

    @field_validator("fee_was_capped", mode="before")
    @classmethod
    def parse_capped(cls, v):
        """Stripe sends "true"/"false" strings"""
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)

    @field_validator("fee_model", "fee_mode", "interval", "tier_id", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class WebhookAck(BaseModel):
    """Body returned to the provider for every webhook delivery"""
    received: bool
    status: str


class BillingErrorEntry(BaseModel):
    subscription_id: int
    error: str


class BillingJobSummary(BaseModel):
    """Structured summary of one scheduler run"""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[BillingErrorEntry] = Field(default_factory=list)
