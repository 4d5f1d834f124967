# /flowbot/workflows/sessions.py

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from redis.exceptions import LockError

logger = logging.getLogger(__name__)


def session_key(project_id: str, chat_id: str) -> str:
    return f"{project_id}:{chat_id}"


class SessionBusy(RuntimeError):
    """The session lock could not be acquired in time."""


class SessionLocks(ABC):
    """Serialises event handling per (project, chat) session."""

    @abstractmethod
    def hold(self, key: str):
        """Async context manager holding the lock for ``key``."""


class LocalSessionLocks(SessionLocks):
    """asyncio locks for a single worker process. Idle locks are discarded."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisSessionLocks(SessionLocks):
    """Distributed locks so several workers can share one session store."""

    def __init__(self, redis_client, timeout: int = 30, blocking_timeout: float = 10.0, prefix: str = "flow_session"):
        self.redis = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.redis.lock(f"{self.prefix}:{key}", timeout=self.timeout, blocking_timeout=self.blocking_timeout)
        if not await lock.acquire():
            raise SessionBusy(f"Session {key} is busy")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # The lock expired while we held it; another worker may have taken over
                logger.warning(f"Session lock {key} expired before release")
