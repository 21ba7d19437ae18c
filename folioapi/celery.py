from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure
import rollbar

TASKS = "folioapi.tasks"


def celery_base_data_hook(request, data):
    data["framework"] = "celery"


rollbar.BASE_DATA_HOOK = celery_base_data_hook


@task_failure.connect
def handle_task_failure(sender=None, task_id=None, exception=None, **kw):
    rollbar.report_exc_info(
        extra_data={"task": getattr(sender, "name", None), "task_id": task_id}
    )


def make_celery(app):
    celery = Celery(
        app.import_name,
        backend=app.config["result_backend"],
        broker=app.config["broker_url"],
    )
    celery.conf.update(app.config)

    # Migration runs get their own queue so one worker can own them
    celery.conf.task_routes = {
        f"{TASKS}.migrations.*": {"queue": "migrations"},
        f"{TASKS}.audit_integrity.*": {"queue": "default"},
        f"{TASKS}.attempt_cleanup.*": {"queue": "default"},
    }
    celery.conf.beat_schedule = {
        "verify-audit-chains": {
            "task": f"{TASKS}.audit_integrity.verify_audit_chains",
            "schedule": crontab(hour=3, minute=0),
        },
        "cleanup-old-auth-attempts": {
            "task": f"{TASKS}.attempt_cleanup.cleanup_old_auth_attempts",
            "schedule": crontab(hour=4, minute=0),
        },
    }
    celery.conf.timezone = "UTC"

    task_base = celery.Task

    class ContextTask(task_base):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return task_base.__call__(self, *args, **kwargs)

    celery.Task = ContextTask
    return celery
