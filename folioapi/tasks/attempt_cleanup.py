"""AUTH ATTEMPT CLEANUP TASKS"""

import logging

from celery import Task
import rollbar

logger = logging.getLogger(__name__)


class AttemptCleanupTask(Task):
    """Base task for auth attempt retention cleanup"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Auth attempt cleanup task failed: {exc}")
        rollbar.report_exc_info()


# Import celery after other imports to avoid circular dependency
from folioapi import celery  # noqa: E402


@celery.task(base=AttemptCleanupTask, bind=True)
def cleanup_old_auth_attempts(self, retention=None):
    """Delete auth attempts older than the configured retention period."""
    logger.info("[TASK]: Starting cleanup of old auth attempts")

    try:
        from folioapi.config import SETTINGS
        from folioapi.services import AttemptService

        retention = retention or SETTINGS.get("ATTEMPTS", {}).get("RETENTION", "30d")
        removed = AttemptService.cleanup_old_attempts(retention)

        logger.info(f"[TASK]: Removed {removed} auth attempts older than {retention}")
        return {"status": "success", "removed_count": removed}
    except Exception as error:
        logger.error(f"[TASK]: Error cleaning up auth attempts: {str(error)}")
        raise self.retry(exc=error, countdown=60, max_retries=3) from error
