"""
Scheduled Jobs Service
Runs recurring billing (daily at 00:00 UTC) and charge retries (hourly)
"""
import logging
from typing import Optional
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import config

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> BackgroundScheduler:
    """
    Get or create the background scheduler instance

    Returns:
        BackgroundScheduler instance
    """
    global _scheduler

    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Only one instance at a time
                'misfire_grace_time': 3600  # 1 hour grace period
            }
        )

    return _scheduler


def start_scheduler():
    """
    Start the background scheduler and register the billing jobs
    """
    scheduler = get_scheduler()

    if not scheduler.running:
        scheduler.add_job(
            func=run_recurring_billing_job,
            trigger=CronTrigger(hour=0, minute=0, timezone="UTC"),
            id='recurring_billing',
            name='Charge due monthly subscriptions',
            replace_existing=True
        )
        logger.info("Registered recurring billing job (daily at 00:00 UTC)")

        scheduler.add_job(
            func=run_billing_retries_job,
            trigger=CronTrigger(minute=0, timezone="UTC"),
            id='billing_retries',
            name='Retry failed renewal charges',
            replace_existing=True
        )
        logger.info("Registered billing retries job (hourly)")

        scheduler.start()
        logger.info("Background scheduler started")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """
    Stop the background scheduler
    """
    scheduler = get_scheduler()

    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")


def _run_billing_job(job: str) -> Optional[dict]:
    from ..db.engine import SessionLocal
    from .billing_gateway import get_billing_gateway
    from .metrics import get_metrics_collector
    from .recurring_billing import RecurringBillingService, JOB_RECURRING_BILLING

    logger.info("=" * 60)
    logger.info(f"Starting scheduled {job} job")
    logger.info("=" * 60)

    db = SessionLocal()

    try:
        service = RecurringBillingService(db, get_billing_gateway("paystack", config))
        if job == JOB_RECURRING_BILLING:
            result = service.process_recurring_billing()
        else:
            result = service.process_retries()

        summary = result.to_dict()
        logger.info(f"{job} summary:")
        logger.info(f"  - Processed: {summary['processed']}")
        logger.info(f"  - Succeeded: {summary['succeeded']}")
        logger.info(f"  - Failed: {summary['failed']}")
        logger.info(f"  - Skipped: {summary['skipped']}")

        if summary['errors']:
            logger.error(f"Errors encountered: {len(summary['errors'])}")
            for error in summary['errors']:
                logger.error(f"  - Subscription {error['subscription_id']}: {error['error']}")

        return summary

    except Exception as e:
        logger.error(f"Fatal error during {job} job: {e}", exc_info=True)
        get_metrics_collector().increment_counter("billing_job_runs_total", labels={"job": job, "status": "fatal_error"})
        return None

    finally:
        db.close()
        logger.info(f"{job} job finished")


def run_recurring_billing_job() -> Optional[dict]:
    """Daily renewal of due monthly subscriptions"""
    from .recurring_billing import JOB_RECURRING_BILLING
    return _run_billing_job(JOB_RECURRING_BILLING)


def run_billing_retries_job() -> Optional[dict]:
    """Hourly retry of failed renewals whose backoff has elapsed"""
    from .recurring_billing import JOB_BILLING_RETRIES
    return _run_billing_job(JOB_BILLING_RETRIES)
