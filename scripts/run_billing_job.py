#!/usr/bin/env python
"""
Billing Job Runner - run a scheduler job once from the command line

Usage:
    python scripts/run_billing_job.py billing
    python scripts/run_billing_job.py retries

Schedule (when the in-process scheduler is disabled):
    0 0 * * * cd /app && python scripts/run_billing_job.py billing
    0 * * * * cd /app && python scripts/run_billing_job.py retries
"""
import json
import sys
import logging

from creator_billing.config import config
from creator_billing.db.engine import SessionLocal, init_db
from creator_billing.logging_config import setup_logging
from creator_billing.services.billing_gateway import get_billing_gateway
from creator_billing.services.recurring_billing import RecurringBillingService

logger = logging.getLogger(__name__)


def run_job(job: str) -> dict:
    """
    Run one billing job to completion

    Args:
        job: 'billing' or 'retries'

    Returns:
        Job summary dictionary
    """
    db = SessionLocal()
    try:
        service = RecurringBillingService(db, get_billing_gateway("paystack", config))
        if job == "billing":
            result = service.process_recurring_billing()
        else:
            result = service.process_retries()
        return result.to_dict()
    finally:
        db.close()


def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Run a recurring billing job once")
    parser.add_argument(
        'job',
        choices=['billing', 'retries'],
        help="'billing' charges due subscriptions, 'retries' retries failed renewals"
    )

    args = parser.parse_args()

    setup_logging(config.ENV, config.LOG_LEVEL)
    init_db()

    try:
        summary = run_job(args.job)
    except Exception as e:
        logger.error(f"Billing job '{args.job}' failed: {e}", exc_info=True)
        sys.exit(2)

    print(json.dumps(summary, indent=2))

    # Exit with error code if any subscription errored
    if summary['errors']:
        sys.exit(1)
    else:
        sys.exit(0)


if __name__ == "__main__":
    main()
