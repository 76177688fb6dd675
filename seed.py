"""
Create or upgrade the admin account from ADMIN_EMAIL / ADMIN_PASS.

Usage: python seed.py
"""
import logging
import sys

import database
from config import get_settings, setup_logging
from users import UserDirectory

logger = logging.getLogger("seed")


def seed_admin(db, settings) -> dict:
    if not settings.admin_configured:
        raise SystemExit("ADMIN_EMAIL and ADMIN_PASS must be set to create an admin user.")
    return UserDirectory(db).ensure_admin(settings.admin_email, settings.admin_password, settings.admin_name)


def main() -> int:
    settings = get_settings()
    setup_logging(settings.log_level)
    if database.db is None:
        logger.error("DATABASE_URL and DATABASE_NAME must be set before running the seed script.")
        return 1
    database.ensure_indexes(database.db)
    admin = seed_admin(database.db, settings)
    logger.info("Seeding complete: %s is an admin", admin["email"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
