"""TASKS MODULE"""

# Import tasks to ensure they are registered with Celery
from folioapi.tasks import (
    attempt_cleanup,  # noqa: F401
    audit_integrity,  # noqa: F401
    migrations,  # noqa: F401
)
