#!/usr/bin/env python
"""
HTTP server for Creator Billing
Serves provider webhooks, job triggers, /health and /metrics
"""
import sys
import os
import logging

from creator_billing.config import config
from creator_billing.main import app


if __name__ == "__main__":
    import uvicorn

    # Set up basic logging for startup
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger(__name__)

    logger.info("=" * 50)
    logger.info("Creator Billing API - Starting Up")
    logger.info("=" * 50)
    logger.info(f"Python version: {sys.version}")
    logger.info(f"ENV: {config.ENV}")
    logger.info(f"PORT: {config.PORT}")
    logger.info(f"DATABASE_URL: {'SET' if os.getenv('DATABASE_URL') else 'NOT SET (using SQLite)'}")
    logger.info(f"Scheduler: {'enabled' if config.ENABLE_SCHEDULER else 'disabled'}")
    logger.info(f"Health check endpoint: http://0.0.0.0:{config.PORT}/health")
    logger.info("=" * 50)

    try:
        uvicorn.run(
            app,
            host="0.0.0.0",
            port=config.PORT,
            log_config=None,  # Logging is configured by setup_logging
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)
