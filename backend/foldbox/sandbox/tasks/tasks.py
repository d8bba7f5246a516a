"""Celery tasks for sandbox cleanup operations."""

from celery import shared_task
from celery import Task
from redis.lock import Lock as RedisLock

from foldbox.background.celery_app import FoldboxCeleryTask
from foldbox.background.celery_app import FoldboxRedisLocks
from foldbox.background.celery_app import task_logger
from foldbox.configs import SANDBOX_BACKEND
from foldbox.configs import SANDBOX_REAPER_LOCK_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_REAPER_MAX_AGE_MINUTES
from foldbox.configs import SandboxBackend
from foldbox.redis.redis_pool import get_redis_client
from foldbox.sandbox.reaper import sweep


@shared_task(
    name=FoldboxCeleryTask.CLEANUP_STALE_SANDBOXES,
    soft_time_limit=300,
    bind=True,
    ignore_result=True,
)
def cleanup_stale_sandboxes_task(
    self: Task, *, max_age_minutes: int = SANDBOX_REAPER_MAX_AGE_MINUTES
) -> int | None:
    """Remove sandbox containers older than max_age_minutes.

    NOTE: This task is a no-op for the local backend - local sandboxes persist
    until they are destroyed explicitly.

    Returns:
        Number of containers removed, or None if the run was skipped
    """
    if SANDBOX_BACKEND == SandboxBackend.LOCAL:
        task_logger.debug(
            "cleanup_stale_sandboxes_task skipped (local backend - cleanup disabled)"
        )
        return None

    redis_client = get_redis_client()
    lock: RedisLock = redis_client.lock(
        FoldboxRedisLocks.CLEANUP_STALE_SANDBOXES_BEAT_LOCK,
        timeout=SANDBOX_REAPER_LOCK_TIMEOUT_SECONDS,
    )

    # Prevent overlapping runs of this task
    if not lock.acquire(blocking=False):
        task_logger.debug("cleanup_stale_sandboxes_task - lock not acquired, skipping")
        return None

    try:
        removed = sweep(max_age_minutes=max_age_minutes)
    except Exception:
        task_logger.exception("Error in cleanup_stale_sandboxes_task")
        raise
    finally:
        if lock.owned():
            lock.release()

    task_logger.info(f"cleanup_stale_sandboxes_task completed, removed {removed}")
    return removed
