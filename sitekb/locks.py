"""Per-site serialization of pipeline runs.

Provides:
- get_redis: cached Redis client from REDIS_URL with decode_responses.
- SiteLockRegistry: in-process lock per site id (single worker deployments, tests).
- RedisSiteLocks: Redis lock per site id, shared by every API worker and CLI process.

Both expose ``hold(site_id)``, a context manager that blocks until the site's
lock is acquired, so an initialize and a refresh of the same site never
interleave their upserts and status writes.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis

from sitekb.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        redis.Redis: Client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


class SiteLockRegistry:
    """One threading.Lock per site id, created on first use."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, site_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(site_id, threading.Lock())

    @contextmanager
    def hold(self, site_id: str) -> Iterator[None]:
        lock = self._lock_for(site_id)
        if lock.locked():
            logger.info("Waiting for running pipeline of site %s", site_id)
        with lock:
            yield


class RedisSiteLocks:
    """Distributed per-site lock.

    Args:
        client: Redis client.
        timeout: Lock expiry in seconds so a crashed holder cannot block a site forever.
        prefix: Key prefix.
    """

    def __init__(self, client: redis.Redis, timeout: int = 1800, prefix: str = "sitekb:lock"):
        self.client = client
        self.timeout = timeout
        self.prefix = prefix

    def key(self, site_id: str) -> str:
        return f"{self.prefix}:{site_id}"

    @contextmanager
    def hold(self, site_id: str) -> Iterator[None]:
        lock = self.client.lock(self.key(site_id), timeout=self.timeout)
        lock.acquire(blocking=True)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as exc:
                # Lock expired while the pipeline was still running
                logger.warning("Lock for site %s was lost before release: %s", site_id, exc)
