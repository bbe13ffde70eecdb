"""
Fee model for creator subscriptions

Two fee schedules exist side by side:
- SplitFee (fee_model = "split_v1"): the platform fee is divided between a
  subscriber surcharge and a creator deduction, with a processor-fee buffer
  so tiny charges still cover the processor's fixed cost.
- LegacyFee (fee_model = None): a flat percentage plus a fixed buffer taken
  off the gross amount actually charged. Split fields stay null.

All arithmetic is integer minor units with Decimal rates and half-up rounding.
Nothing here reads the clock or performs I/O.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

SPLIT_FEE_MODEL = "split_v1"

FEE_MODE_SPLIT = "split"
FEE_MODE_PASS_TO_SUBSCRIBER = "pass_to_subscriber"

# Nominal platform fee by payer purpose
PLATFORM_FEE_RATES = {
    "personal": Decimal("0.09"),
    "service": Decimal("0.08"),
}
DEFAULT_PURPOSE = "personal"

# Share of the platform fee carried by the subscriber
SUBSCRIBER_SHARE = Decimal("0.5")

# Extra FX/processor surcharge when payer and creator currencies differ
CROSS_BORDER_BUFFER = Decimal("0.015")

# Share of a processor-buffer deficit pushed onto the subscriber
BUFFER_SUBSCRIBER_SHARE = Decimal("0.6")

# The buffered fee never exceeds this fraction of the base price
MAX_FEE_FRACTION = Decimal("0.75")

LEGACY_FEE_RATE = Decimal("0.08")
LEGACY_FIXED_CENTS = 30

# Processor fee estimates: (percent rate, fixed minor units)
PROCESSOR_FEES = {
    "USD": (Decimal("0.029"), 30),
    "EUR": (Decimal("0.029"), 25),
    "GBP": (Decimal("0.029"), 20),
    "CAD": (Decimal("0.029"), 30),
    "AUD": (Decimal("0.029"), 30),
    "ZAR": (Decimal("0.029"), 500),
    "KES": (Decimal("0.015"), 5000),
    "NGN": (Decimal("0.015"), 10000),
    "GHS": (Decimal("0.019"), 0),
}
DEFAULT_PROCESSOR_FEE = PROCESSOR_FEES["USD"]

# Minimum platform margin kept after processor fees, in minor units
MIN_MARGIN_CENTS = {
    "USD": 25,
    "EUR": 25,
    "GBP": 20,
    "CAD": 35,
    "AUD": 35,
    "ZAR": 500,
    "KES": 2500,
    "NGN": 25000,
    "GHS": 250,
}
DEFAULT_MIN_MARGIN = 25


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def estimate_processor_fee(gross_cents: int, currency: str) -> int:
    """Estimate the processor's own fee on a gross charge"""
    percent_rate, fixed_cents = PROCESSOR_FEES.get(currency.upper(), DEFAULT_PROCESSOR_FEE)
    return round_half_up(Decimal(gross_cents) * percent_rate) + fixed_cents


def min_margin_for(currency: str) -> int:
    return MIN_MARGIN_CENTS.get(currency.upper(), DEFAULT_MIN_MARGIN)


def normalize_purpose(purpose: Optional[str]) -> str:
    return purpose if purpose in PLATFORM_FEE_RATES else DEFAULT_PURPOSE


@dataclass(frozen=True)
class FeeResult:
    """Fee breakdown for a single charge"""
    base_cents: int
    gross_cents: int
    net_cents: int
    fee_cents: int
    subscriber_fee_cents: Optional[int]
    creator_fee_cents: Optional[int]
    currency: str
    fee_mode: str
    fee_model: Optional[str]
    fee_was_capped: bool
    estimated_processor_fee: int
    estimated_margin: int
    effective_rate: Decimal = Decimal("0")

    @property
    def is_split(self) -> bool:
        return self.fee_model == SPLIT_FEE_MODEL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "base_cents": self.base_cents,
            "gross_cents": self.gross_cents,
            "net_cents": self.net_cents,
            "fee_cents": self.fee_cents,
            "subscriber_fee_cents": self.subscriber_fee_cents,
            "creator_fee_cents": self.creator_fee_cents,
            "currency": self.currency,
            "fee_mode": self.fee_mode,
            "fee_model": self.fee_model,
            "fee_was_capped": self.fee_was_capped,
            "estimated_processor_fee": self.estimated_processor_fee,
            "estimated_margin": self.estimated_margin,
            "effective_rate": float(self.effective_rate),
        }


@dataclass(frozen=True)
class SplitFee:
    """
    Split fee schedule (fee_model = "split_v1")

    The amount passed to compute() is the creator's base price.
    """
    purpose: str = DEFAULT_PURPOSE
    cross_border: bool = False

    @property
    def platform_rate(self) -> Decimal:
        rate = PLATFORM_FEE_RATES[normalize_purpose(self.purpose)]
        if self.cross_border:
            rate += CROSS_BORDER_BUFFER
        return rate

    def compute(self, base_cents: int, currency: str) -> FeeResult:
        """
        Compute the split fee breakdown for a base price

        Args:
            base_cents: Creator-set price in minor units
            currency: ISO currency code

        Returns:
            FeeResult with gross = base + subscriber fee and net = base - creator fee
        """
        if base_cents < 0:
            raise ValueError("Amount cannot be negative")

        currency = currency.upper()
        if base_cents == 0:
            return FeeResult(
                base_cents=0, gross_cents=0, net_cents=0, fee_cents=0,
                subscriber_fee_cents=0, creator_fee_cents=0, currency=currency,
                fee_mode=FEE_MODE_SPLIT, fee_model=SPLIT_FEE_MODEL, fee_was_capped=False,
                estimated_processor_fee=0, estimated_margin=0,
            )

        base = Decimal(base_cents)
        total_fee = round_half_up(base * self.platform_rate)
        subscriber_fee = round_half_up(Decimal(total_fee) * SUBSCRIBER_SHARE)
        creator_fee = total_fee - subscriber_fee

        processor_fee = estimate_processor_fee(base_cents + subscriber_fee, currency)
        floor_fee = processor_fee + min_margin_for(currency)

        fee_was_capped = False
        if total_fee < floor_fee:
            fee_was_capped = True
            max_fee = int((base * MAX_FEE_FRACTION).quantize(Decimal("1"), rounding=ROUND_FLOOR))
            # Past the ceiling the platform absorbs the rest of the shortfall
            target_fee = max(min(floor_fee, max_fee), total_fee)
            deficit = target_fee - total_fee
            subscriber_extra = int((Decimal(deficit) * BUFFER_SUBSCRIBER_SHARE).quantize(
                Decimal("1"), rounding=ROUND_CEILING))
            subscriber_fee += subscriber_extra
            creator_fee += deficit - subscriber_extra
            total_fee = subscriber_fee + creator_fee

        gross_cents = base_cents + subscriber_fee
        net_cents = base_cents - creator_fee
        if fee_was_capped:
            processor_fee = estimate_processor_fee(gross_cents, currency)

        return FeeResult(
            base_cents=base_cents,
            gross_cents=gross_cents,
            net_cents=net_cents,
            fee_cents=total_fee,
            subscriber_fee_cents=subscriber_fee,
            creator_fee_cents=creator_fee,
            currency=currency,
            fee_mode=FEE_MODE_SPLIT,
            fee_model=SPLIT_FEE_MODEL,
            fee_was_capped=fee_was_capped,
            estimated_processor_fee=processor_fee,
            estimated_margin=total_fee - processor_fee,
            effective_rate=Decimal(subscriber_fee) / base,
        )


@dataclass(frozen=True)
class LegacyFee:
    """
    Legacy fee schedule (fee_model = None, fee_mode = "pass_to_subscriber")

    The amount passed to compute() is the gross actually charged.
    """

    def compute(self, gross_cents: int, currency: str) -> FeeResult:
        if gross_cents < 0:
            raise ValueError("Amount cannot be negative")

        currency = currency.upper()
        if gross_cents == 0:
            fee_cents = 0
        else:
            fee_cents = round_half_up(Decimal(gross_cents) * LEGACY_FEE_RATE) + LEGACY_FIXED_CENTS
            # Never take more than was charged
            fee_cents = min(fee_cents, gross_cents)

        processor_fee = estimate_processor_fee(gross_cents, currency) if gross_cents else 0

        return FeeResult(
            base_cents=gross_cents,
            gross_cents=gross_cents,
            net_cents=gross_cents - fee_cents,
            fee_cents=fee_cents,
            subscriber_fee_cents=None,
            creator_fee_cents=None,
            currency=currency,
            fee_mode=FEE_MODE_PASS_TO_SUBSCRIBER,
            fee_model=None,
            fee_was_capped=False,
            estimated_processor_fee=processor_fee,
            estimated_margin=fee_cents - processor_fee,
            effective_rate=LEGACY_FEE_RATE,
        )


FeeSchedule = Union[LegacyFee, SplitFee]


def fee_schedule_for(
    fee_model: Optional[str],
    purpose: Optional[str] = None,
    cross_border: bool = False,
) -> FeeSchedule:
    """
    Resolve the fee schedule stored on a subscription

    Args:
        fee_model: Subscription.fee_model ("split_v1" or None)
        purpose: Creator profile purpose ("personal" or "service")
        cross_border: Whether payer and creator currencies differ

    Returns:
        SplitFee or LegacyFee
    """
    if fee_model == SPLIT_FEE_MODEL:
        return SplitFee(purpose=normalize_purpose(purpose), cross_border=cross_border)
    return LegacyFee()


def compute_fee(
    amount_base_cents: int,
    currency: str,
    payer_purpose: Optional[str] = None,
    cross_border: bool = False,
) -> FeeResult:
    """Split-model fee for a new charge on a base price"""
    return SplitFee(purpose=normalize_purpose(payer_purpose), cross_border=cross_border).compute(
        amount_base_cents, currency
    )


def calculate_legacy_fee(gross_cents: int, currency: str = "USD") -> FeeResult:
    """Flat legacy fee taken off a gross charge"""
    return LegacyFee().compute(gross_cents, currency)


def format_rate(rate: Decimal) -> str:
    """Format a rate as a percentage with one decimal, e.g. 4.5%"""
    percent = (rate * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return f"{percent}%"


def calculate_fee_preview(
    amount_cents: int,
    currency: str,
    purpose: Optional[str] = None,
    cross_border: bool = False,
) -> Dict[str, Any]:
    """
    What the creator receives and the subscriber pays for a price

    Args:
        amount_cents: Creator-set price in minor units
        currency: ISO currency code
        purpose: Creator profile purpose
        cross_border: Whether payer and creator currencies differ

    Returns:
        Dictionary for display callers
    """
    result = compute_fee(amount_cents, currency, purpose, cross_border)
    return {
        "creator_receives": result.net_cents,
        "subscriber_pays": result.gross_cents,
        "service_fee": result.fee_cents,
        "subscriber_fee": result.subscriber_fee_cents,
        "creator_fee": result.creator_fee_cents,
        "effective_rate": format_rate(result.effective_rate),
        "fee_mode": result.fee_mode,
        "fee_was_capped": result.fee_was_capped,
    }
