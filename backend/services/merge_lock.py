# services/merge_lock.py
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

import redis
from redis.exceptions import LockError

from config import Settings
from services.exceptions import MergeInProgressError

logger = logging.getLogger(__name__)


class LocalMergeLock:
    """Per content hash lock for a single worker process"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, content_hash: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(content_hash, threading.Lock())
            self._waiters[content_hash] = self._waiters.get(content_hash, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[content_hash] -= 1
                if self._waiters[content_hash] == 0:
                    del self._waiters[content_hash]
                    del self._locks[content_hash]

    def active_keys(self) -> List[str]:
        with self._guard:
            return sorted(self._locks)


class RedisMergeLock:
    """Per content hash lock shared by every worker through redis"""

    def __init__(self, redis_client, timeout: int = 300, blocking_timeout: float = 30):
        self.redis_client = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    def _keep_alive(self, lock, content_hash: str, stop: threading.Event):
        """Reset the lock TTL every third of the timeout until ``stop`` is set"""
        while not stop.wait(self.timeout / 3):
            try:
                lock.reacquire()
            except LockError as e:
                logger.error(f"Could not extend merge lock for {content_hash}: {e}")
                return

    @contextmanager
    def hold(self, content_hash: str) -> Iterator[None]:
        # The token must be visible to the keep-alive thread
        lock = self.redis_client.lock(
            f"upload_merge:{content_hash}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
            thread_local=False,
        )
        if not lock.acquire():
            logger.warning(f"Could not acquire merge lock for {content_hash}")
            raise MergeInProgressError(content_hash)
        stop = threading.Event()
        keeper = threading.Thread(target=self._keep_alive, args=(lock, content_hash, stop), daemon=True)
        keeper.start()
        try:
            yield
        finally:
            stop.set()
            keeper.join()
            try:
                lock.release()
            except LockError as e:
                # Lock expired while merging; another worker may now hold it
                logger.error(f"Merge lock for {content_hash} was lost before release: {e}")


def create_merge_lock(settings: Settings):
    if settings.merge_lock_backend == "redis":
        redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password or None,
            decode_responses=False,
            socket_connect_timeout=5,
            health_check_interval=30,
            db=0
        )
        logger.info(f"Using redis merge lock at {settings.redis_host}:{settings.redis_port}")
        return RedisMergeLock(redis_client, timeout=settings.merge_lock_timeout)
    return LocalMergeLock()
