"""Locks that keep overlapping deploys from double-handling work.

During a rolling deploy two bot processes can be connected to the gateway at
the same time. ``acquire_lock`` lets exactly one of them claim a message, and
``StartupLock`` makes a new process wait for the previous one before logging
in.
"""

import asyncio
import logging
import uuid
from typing import Optional

from config import (
    DEPLOY_LOCK_TTL,
    STARTUP_LOCK_NAME,
    STARTUP_LOCK_POLL_SECONDS,
    STARTUP_LOCK_TTL,
)
from services.session_service import CoordinatorUnavailable, SessionStore

logger = logging.getLogger(__name__)

LOCK_PREFIX = "deploy_lock"
INSTANCE_ID = uuid.uuid4().hex


def lock_key(name: str) -> str:
    return f"{LOCK_PREFIX}:{name}"


async def acquire_lock(store: SessionStore, name: str, ttl_seconds: float = DEPLOY_LOCK_TTL) -> bool:
    return await store.set_if_absent(lock_key(name), INSTANCE_ID, ttl_seconds)


class StartupLock:
    """Held for the lifetime of the process and refreshed every ttl/3."""

    def __init__(
        self,
        store: SessionStore,
        name: str = STARTUP_LOCK_NAME,
        ttl_seconds: float = STARTUP_LOCK_TTL,
        poll_seconds: float = STARTUP_LOCK_POLL_SECONDS,
    ):
        self.store = store
        self.key = lock_key(name)
        self.ttl_seconds = ttl_seconds
        self.poll_seconds = poll_seconds
        self.token = uuid.uuid4().hex
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def held(self) -> bool:
        return self._refresh_task is not None

    async def acquire(self, timeout: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        waited = False
        while not await self.store.set_if_absent(self.key, self.token, self.ttl_seconds):
            if not waited:
                logger.info("Startup lock %s held by another instance, waiting", self.key)
                waited = True
            if deadline is not None and loop.time() >= deadline:
                raise TimeoutError(f"could not acquire startup lock {self.key}")
            await asyncio.sleep(self.poll_seconds)
        logger.info("Startup lock %s acquired", self.key)
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def _refresh_loop(self):
        interval = self.ttl_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                still_ours = await self.store.expire_if_equal(self.key, self.token, self.ttl_seconds)
            except CoordinatorUnavailable:
                logger.warning("Could not refresh startup lock %s, will retry", self.key)
                continue
            if not still_ours:
                logger.error("Startup lock %s was lost to another instance", self.key)
                return

    async def release(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        released = await self.store.delete_if_equal(self.key, self.token)
        if released:
            logger.info("Startup lock %s released", self.key)
