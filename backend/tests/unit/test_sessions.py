# backend/tests/unit/test_sessions.py
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import LockError

from flowbot.workflows.sessions import LocalSessionLocks, RedisSessionLocks, SessionBusy, session_key


def test_session_key():
    assert session_key("proj-1", "chat-42") == "proj-1:chat-42"


@pytest.mark.asyncio
async def test_local_locks_serialise_one_session():
    locks = LocalSessionLocks()
    order = []

    async def handle(name, pause):
        async with locks.hold("p:c"):
            order.append(f"{name}-in")
            await asyncio.sleep(pause)
            order.append(f"{name}-out")

    await asyncio.gather(handle("first", 0.02), handle("second", 0))

    assert order == ["first-in", "first-out", "second-in", "second-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_local_locks_do_not_block_other_sessions():
    locks = LocalSessionLocks()
    async with locks.hold("p:a"):
        await asyncio.wait_for(_enter(locks, "p:b"), timeout=1)


async def _enter(locks, key):
    async with locks.hold(key):
        return True


def _redis_with_lock(acquired=True, release_error=None):
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock(side_effect=release_error)
    client = MagicMock()
    client.lock.return_value = lock
    return client, lock


@pytest.mark.asyncio
async def test_redis_lock_is_released_after_use():
    client, lock = _redis_with_lock()
    locks = RedisSessionLocks(client, timeout=5, blocking_timeout=1)

    async with locks.hold("p:c"):
        pass

    client.lock.assert_called_once_with("flow_session:p:c", timeout=5, blocking_timeout=1)
    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_lock_timeout_raises_session_busy():
    client, _ = _redis_with_lock(acquired=False)
    locks = RedisSessionLocks(client)

    with pytest.raises(SessionBusy):
        async with locks.hold("p:c"):
            pass


@pytest.mark.asyncio
async def test_expired_redis_lock_is_tolerated_on_release():
    client, lock = _redis_with_lock(release_error=LockError("expired"))
    locks = RedisSessionLocks(client)

    async with locks.hold("p:c"):
        pass
    lock.release.assert_awaited_once()
