#!/usr/bin/env python3
"""Database bootstrap: wait for the database, then run `alembic upgrade head`.

If migrations fail the process exits non-zero so the API never starts
against an unknown schema.
"""

import logging
import os
import sys
import time

from alembic import command
from alembic.config import Config

from core.database import check_db_connection
from core.logging import setup_logging

logger = logging.getLogger(__name__)

MAX_WAIT_ATTEMPTS = 30


def _get_alembic_config() -> Config:
    here = os.path.dirname(os.path.abspath(__file__))
    cfg = Config(os.path.join(here, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(here, "alembic"))
    return cfg


def wait_for_database(max_attempts: int = MAX_WAIT_ATTEMPTS, delay_s: float = 1.0) -> bool:
    for attempt in range(1, max_attempts + 1):
        if check_db_connection():
            return True
        logger.info(f"Database is unavailable - sleeping (attempt {attempt}/{max_attempts})")
        time.sleep(delay_s)
    return False


def alembic_upgrade_head() -> None:
    """Apply all pending migrations."""
    command.upgrade(_get_alembic_config(), "head")


def main() -> int:
    setup_logging()
    if not wait_for_database():
        logger.error("Database is not ready after maximum retries")
        return 1
    try:
        alembic_upgrade_head()
    except Exception:
        logger.exception("Alembic upgrade failed")
        return 1
    logger.info("Migrations completed successfully")
    return 0


if __name__ == '__main__':
    sys.exit(main())
