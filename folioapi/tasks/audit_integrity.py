"""AUDIT CHAIN INTEGRITY TASKS"""

import logging

from celery import Task
import rollbar

logger = logging.getLogger(__name__)


class AuditIntegrityTask(Task):
    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Audit chain verification task failed: {exc}")
        rollbar.report_exc_info()


# Import celery after other imports to avoid circular dependency
from folioapi import celery  # noqa: E402


@celery.task(base=AuditIntegrityTask, bind=True)
def verify_audit_chains(self):
    """Walk every audit partition and report broken chains."""
    logger.info("[TASK]: Verifying audit chains")

    from folioapi.services import AuditService

    results = []
    for head in AuditService.list_partitions():
        verification = AuditService.verify_chain(partition=head["partition"])
        results.append(verification.serialize())
        if not verification.valid:
            rollbar.report_message(
                f"Audit chain {verification.partition} corrupt at "
                f"#{verification.corrupt_at}",
                level="critical",
                extra_data=verification.serialize(),
            )

    corrupt = [r for r in results if not r["valid"]]
    logger.info(
        f"[TASK]: Verified {len(results)} audit partitions, {len(corrupt)} corrupt"
    )
    return {
        "status": "corrupt" if corrupt else "success",
        "partitions": results,
    }
