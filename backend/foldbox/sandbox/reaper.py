"""Removal of stale sandbox containers.

The reaper is a backstop for sandboxes whose callers never destroyed them.
It only looks at container names and creation times, so it works without any
record of which sandboxes this process created.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from foldbox.configs import SANDBOX_CONTAINER_PREFIX
from foldbox.configs import SANDBOX_REAPER_MAX_AGE_MINUTES
from foldbox.sandbox.runtime.base import ContainerRuntime
from foldbox.sandbox.runtime.base import get_container_runtime
from foldbox.sandbox.runtime.base import RuntimeUnavailableError
from foldbox.utils.logger import setup_logger

logger = setup_logger()


def sweep(
    max_age_minutes: int = SANDBOX_REAPER_MAX_AGE_MINUTES,
    runtime: ContainerRuntime | None = None,
    now: datetime | None = None,
) -> int:
    """Force-remove every sandbox container older than max_age_minutes.

    Age is measured from container creation, not last use, so a sandbox that is
    still in use but older than the threshold is removed as well.

    Returns:
        Number of containers removed. 0 when the container runtime is unreachable.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=max_age_minutes)

    try:
        runtime = runtime or get_container_runtime()
        containers = runtime.list_containers(SANDBOX_CONTAINER_PREFIX)
    except RuntimeUnavailableError as e:
        logger.warning(f"Sandbox sweep skipped, container runtime unavailable: {e}")
        return 0

    removed = 0
    for container in containers:
        if container.created_at >= cutoff:
            continue

        try:
            if runtime.remove(container.id):
                removed += 1
                logger.info(
                    f"Removed stale sandbox container {container.name} "
                    f"(created {container.created_at.isoformat()})"
                )
        except Exception as e:
            logger.warning(f"Failed to remove stale container {container.name}: {e}")

    if removed:
        logger.info(f"Sandbox sweep removed {removed} container(s)")
    return removed
