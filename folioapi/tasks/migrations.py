"""SCHEMA MIGRATION TASKS"""

import logging

from celery import Task
import rollbar

logger = logging.getLogger(__name__)


class MigrationTask(Task):
    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Schema migration task failed: {exc}")
        rollbar.report_exc_info()


# Import celery after other imports to avoid circular dependency
from folioapi import celery  # noqa: E402


@celery.task(base=MigrationTask, bind=True)
def run_pending_migrations(self, actor_id=None):
    """Run the schema migration catalog.

    A concurrent run is retried later; checksum mismatches are not retried and
    need an operator.
    """
    from folioapi.errors import ConcurrentMigrationError
    from folioapi.services import MigrationService

    logger.info("[TASK]: Running pending schema migrations")
    try:
        result = MigrationService.run(actor=actor_id)
    except ConcurrentMigrationError as error:
        logger.info("[TASK]: Another migration run is active, retrying later")
        raise self.retry(exc=error, countdown=120, max_retries=5) from error

    logger.info(f"[TASK]: Migration run finished: {result.serialize()}")
    return result.serialize()
