"""Celery application for the beat-driven deployment.

Beat enqueues one automation pass per poll interval and the stale pending
sweep every 10 minutes; both land on the ``automation`` queue. Run it with
``AUTOMATION_AUTOSTART=false`` on the API so the in-process timer and the
beat task do not both poll.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

AUTOMATION_QUEUE = "automation"

celery_app = Celery(
    "automation_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["worker.tasks.automation"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_default_queue=AUTOMATION_QUEUE,
    result_expires=3600,

    # A pass is sequential over one batch; it must end well before the next
    task_soft_time_limit=240,
    task_time_limit=300,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # One worker process keeps passes from overlapping
    worker_concurrency=1,

    beat_schedule={
        "process-pending-automations": {
            "task": "worker.tasks.automation.process_pending_automations",
            "schedule": settings.AUTOMATION_POLL_INTERVAL_SECONDS,
            # A pass that waited a whole interval in the queue is superseded
            "options": {"expires": settings.AUTOMATION_POLL_INTERVAL_SECONDS},
        },
        "clear-stale-pending-logs": {
            "task": "worker.tasks.automation.clear_stale_pending_logs",
            "schedule": crontab(minute="*/10"),
        },
    },
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the application's structlog setup instead of Celery's."""
    setup_logging()
