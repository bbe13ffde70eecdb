"""
Central configuration module for Creator Billing
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from typing import Optional, List

from dotenv import load_dotenv

# Only load .env in development
if os.getenv("ENV", "dev").lower() == "dev":
    load_dotenv()


def _int_list(raw: str) -> List[int]:
    """Parse a comma separated list of integers"""
    return [int(part.strip()) for part in raw.split(",") if part.strip()]


class Config:
    """Central configuration class with environment variable validation"""

    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()

    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    PORT: int = int(os.getenv("PORT", "8000"))

    # Database pool
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "900"))
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))

    # Payment providers - Stripe
    STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_TEST_SECRET_KEY: Optional[str] = os.getenv("STRIPE_TEST_SECRET_KEY")
    STRIPE_TEST_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_TEST_WEBHOOK_SECRET")

    # Payment providers - Paystack
    PAYSTACK_SECRET_KEY: Optional[str] = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_WEBHOOK_SECRET: Optional[str] = os.getenv("PAYSTACK_WEBHOOK_SECRET")
    PAYSTACK_TEST_SECRET_KEY: Optional[str] = os.getenv("PAYSTACK_TEST_SECRET_KEY")
    PAYSTACK_TEST_WEBHOOK_SECRET: Optional[str] = os.getenv("PAYSTACK_TEST_WEBHOOK_SECRET")
    PAYSTACK_BASE_URL: str = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")

    # Recurring billing policy
    BILLING_MAX_RETRY_ATTEMPTS: int = int(os.getenv("BILLING_MAX_RETRY_ATTEMPTS", "3"))
    BILLING_GRACE_PERIOD_DAYS: int = int(os.getenv("BILLING_GRACE_PERIOD_DAYS", "3"))
    BILLING_RETRY_DELAYS_SECONDS: List[int] = _int_list(
        os.getenv("BILLING_RETRY_DELAYS_SECONDS", "0,3600,86400")
    )
    BILLING_RETRY_LOOKBACK_DAYS: int = int(os.getenv("BILLING_RETRY_LOOKBACK_DAYS", "7"))
    BILLING_PROCESSOR_TIMEOUT_SECONDS: float = float(os.getenv("BILLING_PROCESSOR_TIMEOUT_SECONDS", "30"))

    # Manual job triggers
    BILLING_JOBS_SECRET: Optional[str] = os.getenv("BILLING_JOBS_SECRET")
    ENABLE_SCHEDULER: bool = os.getenv("ENABLE_SCHEDULER", "false").lower() == "true"

    # Build version (set during build/deploy)
    BUILD_VERSION: str = os.getenv("BUILD_VERSION", "dev")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._validate()

    def _validate(self):
        """Validate required configuration based on environment"""
        errors = []

        if self.ENV not in ["dev", "staging", "prod", "test"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'staging', 'prod' or 'test'")

        deployed = self.ENV in ["staging", "prod"]

        if deployed and not self.DATABASE_URL.startswith("postgresql"):
            errors.append(f"DATABASE_URL must point at PostgreSQL in {self.ENV}")

        if not self.BILLING_RETRY_DELAYS_SECONDS:
            errors.append("BILLING_RETRY_DELAYS_SECONDS must contain at least one delay")

        if self.BILLING_MAX_RETRY_ATTEMPTS < 1:
            errors.append("BILLING_MAX_RETRY_ATTEMPTS must be at least 1")

        if deployed:
            prefix = "" if self.ENV == "prod" else "TEST_"
            # Paystack falls back to its API key for webhook signatures, Stripe has no fallback
            if getattr(self, f"STRIPE_{prefix}SECRET_KEY") and not getattr(self, f"STRIPE_{prefix}WEBHOOK_SECRET"):
                errors.append(f"STRIPE_{prefix}WEBHOOK_SECRET must be set when Stripe is enabled")
            if not self.BILLING_JOBS_SECRET:
                errors.append(f"BILLING_JOBS_SECRET must be set in {self.ENV}")

        if errors:
            self._report(errors, fatal=deployed)

    def _report(self, errors: List[str], fatal: bool):
        heading = "CONFIGURATION VALIDATION FAILED" if fatal else f"CONFIGURATION WARNINGS ({self.ENV})"
        lines = ["=" * 60, heading, "=" * 60]
        lines.extend(f"  - {error}" for error in errors)
        lines.append("=" * 60)
        print("\n".join(lines), file=sys.stderr)
        if fatal:
            sys.exit(1)

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode"""
        return self.ENV == "dev"

    def get_database_url(self) -> str:
        """Get database URL, defaulting to a local SQLite file outside staging/prod"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return "sqlite:///./creator_billing.db"


# Create global config instance
config = Config()
