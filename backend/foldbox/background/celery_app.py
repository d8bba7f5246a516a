"""Celery application for the sandbox background worker and beat scheduler.

Run with:
    celery -A foldbox.background.celery_app worker --beat
"""

from celery import Celery
from celery.utils.log import get_task_logger

from foldbox.configs import CELERY_BROKER_URL
from foldbox.configs import SANDBOX_REAPER_INTERVAL_SECONDS
from foldbox.configs import SANDBOX_REAPER_MAX_AGE_MINUTES

task_logger = get_task_logger(__name__)


class FoldboxCeleryTask:
    CLEANUP_STALE_SANDBOXES = "cleanup_stale_sandboxes_task"


class FoldboxRedisLocks:
    CLEANUP_STALE_SANDBOXES_BEAT_LOCK = "da_lock:cleanup_stale_sandboxes_beat"


celery_app = Celery(
    "foldbox",
    broker=CELERY_BROKER_URL,
    include=["foldbox.sandbox.tasks.tasks"],
)

celery_app.conf.update(
    task_ignore_result=True,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = {
    "cleanup-stale-sandboxes": {
        "task": FoldboxCeleryTask.CLEANUP_STALE_SANDBOXES,
        "schedule": SANDBOX_REAPER_INTERVAL_SECONDS,
        "kwargs": {"max_age_minutes": SANDBOX_REAPER_MAX_AGE_MINUTES},
    },
}
