"""FOLIO API SERVICES MODULE"""

import logging
import sys

logger = logging.getLogger()


def handle_exception(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


sys.excepthook = handle_exception

from folioapi.services.audit_service import AuditService  # noqa: E402
from folioapi.services.attempt_service import AttemptService  # noqa: E402
from folioapi.services.lockout_service import LockoutService  # noqa: E402
from folioapi.services.migration_service import MigrationService  # noqa: E402
from folioapi.services.user_service import UserService  # noqa: E402

# Import last, it composes the services above
from folioapi.services.admin_service import AdminService  # noqa: E402, isort:skip

__all__ = [
    "AuditService",
    "AttemptService",
    "LockoutService",
    "MigrationService",
    "UserService",
    "AdminService",
]
