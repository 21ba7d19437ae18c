#!/usr/bin/env python3
"""
Database migration script

Brings the schema to the Alembic head, then applies pending catalog
migrations through the MigrationService (ordered, exactly once, audited).
"""

import atexit
import logging
import sys
import time

# Set up logging with more verbose output
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_IN_PROGRESS = 2
EXIT_CHECKSUM_MISMATCH = 3


def cleanup():
    logger.info("Script is exiting...")
    sys.stdout.flush()
    sys.stderr.flush()


# Register cleanup function
atexit.register(cleanup)


def wait_for_database(app):
    """Wait for database to be ready"""
    logger.info("Waiting for database to be ready...")

    max_retries = 30
    retry_count = 0

    while retry_count < max_retries:
        try:
            from sqlalchemy import text

            from folioapi import db

            with app.app_context(), db.engine.connect() as connection:
                connection.execute(text("SELECT 1")).fetchone()

            logger.info("Database is ready!")
            return True

        except Exception as e:
            retry_count += 1
            logger.info(
                f"Database not ready (attempt {retry_count}/{max_retries}): {e}"
            )
            time.sleep(2)

    raise RuntimeError("Database did not become ready within timeout period")


def upgrade_schema(app):
    """Run Flask-Migrate (Alembic) up to head"""
    from flask_migrate import upgrade

    with app.app_context():
        logger.info("Running Flask-Migrate upgrade to head...")
        upgrade(revision="head")
        logger.info("Flask-Migrate upgrade completed successfully")


def verify_schema(app):
    """Required tables must exist before catalog migrations run"""
    from folioapi.services import MigrationService

    with app.app_context():
        result = MigrationService.verify_schema()
    if not result["valid"]:
        detail = result["error"] or ", ".join(result["missing"])
        logger.error(f"Schema verification failed: {detail}")
        print(f"✗ Schema verification failed: {detail}")
    return result["valid"]


def run_catalog(app):
    """Apply pending catalog migrations. Returns a process exit code."""
    from folioapi.errors import ConcurrentMigrationError, MigrationChecksumMismatch
    from folioapi.services import MigrationService

    with app.app_context():
        try:
            result = MigrationService.run(actor="run_db_migrations")
        except ConcurrentMigrationError as e:
            logger.warning(f"Catalog migrations skipped: {e.message}")
            print("⚠️  Another migration run is in progress")
            return EXIT_IN_PROGRESS
        except MigrationChecksumMismatch as e:
            logger.critical(f"Catalog migrations refused: {e.message}")
            print(f"✗ Migration {e.version} was modified after it was applied")
            return EXIT_CHECKSUM_MISMATCH

        if result.skipped:
            logger.warning(f"Skipped out-of-order migrations: {result.skipped}")
        if not result.success:
            logger.error(f"Migration {result.failed} failed: {result.error}")
            print(f"✗ Migration {result.failed} failed: {result.error}")
            return EXIT_FAILED

        print(f"✓ Applied {len(result.applied)} catalog migrations")
        return EXIT_OK


def run_migrations():
    """Run database migrations"""
    print("Running database migrations...")
    logger.info("Migration script started")

    try:
        from folioapi import app

        wait_for_database(app)
        upgrade_schema(app)
        if not verify_schema(app):
            sys.exit(EXIT_FAILED)
        exit_code = run_catalog(app)
    except Exception as e:
        print(f"✗ Migration failed: {e}")
        logger.exception(f"Migration failed: {e}")
        sys.exit(EXIT_FAILED)

    logger.info(f"Migration script finished with exit code {exit_code}")
    sys.exit(exit_code)


if __name__ == "__main__":
    run_migrations()
