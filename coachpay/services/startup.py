"""
Application lifespan: start background maintenance on startup, release the
scheduler and the Supabase connection pool on shutdown.
"""

import logging
from contextlib import asynccontextmanager

from coachpay.config import Config
from coachpay.config.supabase_config import cleanup_supabase_client, test_connection
from coachpay.services.maintenance_scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    is_valid, missing = Config.validate_critical_env_vars()
    if not is_valid:
        logger.warning(f"Missing critical environment variables: {', '.join(missing)}")
    else:
        try:
            test_connection()
        except RuntimeError as e:
            # Requests retry the connection lazily
            logger.warning(f"Starting without a verified database connection: {e}")

    start_scheduler()

    yield

    logger.info("Shutting down billing services...")
    stop_scheduler()
    cleanup_supabase_client()
