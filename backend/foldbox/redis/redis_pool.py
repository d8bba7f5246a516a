import threading

import redis
from redis.client import Redis

from foldbox.configs import REDIS_URL

_pool: redis.ConnectionPool | None = None
_pool_lock = threading.Lock()


def get_redis_client() -> Redis:
    """Redis client backed by a process-wide connection pool."""
    global _pool

    if _pool is None:
        with _pool_lock:
            if _pool is None:
                _pool = redis.ConnectionPool.from_url(REDIS_URL)

    return Redis(connection_pool=_pool)
