# marketsync/core/logging_config.py
"""
Centralized logging configuration for the application.

Keeps sync/import logs visible while quieting HTTP, database and scheduler
libraries that log every request or job run.
"""

import logging
import os


def configure_logging(level: str = None):
    """
    Configure logging for the application.

    - marketsync code: INFO (or whatever LOG_LEVEL says)
    - HTTP clients (httpx, httpcore): WARNING only
    - Database (sqlalchemy, asyncpg, aiosqlite): WARNING only
    - APScheduler: WARNING only (the job listener logs outcomes itself)
    """
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )

    for noisy in ("httpx", "httpcore", "sqlalchemy", "sqlalchemy.engine",
                  "asyncpg", "aiosqlite", "apscheduler", "apscheduler.scheduler",
                  "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger("marketsync").setLevel(numeric_level)
    logging.getLogger("__main__").setLevel(numeric_level)

    logger = logging.getLogger(__name__)
    logger.info("Logging configured at level: %s", log_level)
