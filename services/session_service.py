"""
Command cooldowns and exclusive sessions.

Every process instance of the bot talks to the same session store, so the
store (Redis in production) is the source of truth for "may this user run
this command now". The in-process cache only remembers recent rejections for
a few seconds so that spamming a command does not hit Redis on every message.

Key layout:

    command_cooldown:{guild}:{user}:{command}  -> expiry (epoch ms)
    exclusive_session:{guild}:{user}           -> {"commandName", "token", "expiresAt"}
    command_session:{type}:{message_id}        -> interaction state (JSON)
"""

import asyncio
import json
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import (
    EXCLUSIVE_SESSION_TTL,
    INTERACTION_SESSION_TTL,
    IS_DEVEL,
    LOCAL_COOLDOWN_CACHE_SECONDS,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

COOLDOWN_PREFIX = "command_cooldown"
EXCLUSIVE_PREFIX = "exclusive_session"
INTERACTION_PREFIX = "command_session"

_DELETE_IF_EQUAL = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

_DELETE_IF_TOKEN = """
local raw = redis.call("GET", KEYS[1])
if not raw then
    return 0
end
local ok, payload = pcall(cjson.decode, raw)
if ok and type(payload) == "table" and payload["token"] == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

_EXPIRE_IF_EQUAL = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
end
return 0
"""


class CoordinatorUnavailable(RuntimeError):
    """The shared session store could not be reached."""


# =============================================================================
# Store Interface
# =============================================================================


class SessionStore(ABC):
    """Key/value store with TTLs and atomic conditional writes."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Write *value* only if *key* does not exist. Returns True on write."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete *key*."""
        pass

    @abstractmethod
    async def delete_if_equal(self, key: str, value: str) -> bool:
        pass

    @abstractmethod
    async def delete_if_token(self, key: str, token: str) -> bool:
        """Delete a JSON payload only if its ``token`` field matches."""
        pass

    @abstractmethod
    async def expire_if_equal(self, key: str, value: str, ttl_seconds: float) -> bool:
        pass

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# In-Memory Store
# =============================================================================


class MemorySessionStore(SessionStore):
    """Single-process store used in development and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl_seconds: float):
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        async with self._lock:
            self._write(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._write(key, value, ttl_seconds)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            existed = self._live(key) is not None
            self._entries.pop(key, None)
            return existed

    async def pop(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def delete_if_equal(self, key: str, value: str) -> bool:
        async with self._lock:
            if self._live(key) != value:
                return False
            del self._entries[key]
            return True

    async def delete_if_token(self, key: str, token: str) -> bool:
        async with self._lock:
            raw = self._live(key)
            if raw is None:
                return False
            try:
                payload = json.loads(raw)
            except ValueError:
                return False
            if not isinstance(payload, dict) or payload.get("token") != token:
                return False
            del self._entries[key]
            return True

    async def expire_if_equal(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._lock:
            if self._live(key) != value:
                return False
            self._write(key, value, ttl_seconds)
            return True

    @property
    def size(self) -> int:
        return len(self._entries)


# =============================================================================
# Redis Store
# =============================================================================


def _ttl_ms(ttl_seconds: float) -> int:
    return max(1, int(math.ceil(ttl_seconds * 1000)))


class RedisSessionStore(SessionStore):
    """Redis-backed store shared by every bot instance."""

    def __init__(self, url: Optional[str] = None, *, client: Optional[redis.Redis] = None):
        if client is None:
            client = redis.from_url(url, decode_responses=True)
        self._client = client
        self._delete_if_equal = self._client.register_script(_DELETE_IF_EQUAL)
        self._delete_if_token = self._client.register_script(_DELETE_IF_TOKEN)
        self._expire_if_equal = self._client.register_script(_EXPIRE_IF_EQUAL)

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except RedisError as error:
            logger.warning("Redis %s failed: %s", operation, error)
            raise CoordinatorUnavailable(
                f"session store unavailable during {operation}"
            ) from error

    async def connect(self) -> None:
        async with self._guard("ping"):
            await self._client.ping()
        logger.info("Connected to Redis session store")

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        async with self._guard("set"):
            await self._client.set(key, value, px=_ttl_ms(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._guard("set_if_absent"):
            result = await self._client.set(key, value, px=_ttl_ms(ttl_seconds), nx=True)
        return bool(result)

    async def delete(self, key: str) -> bool:
        async with self._guard("delete"):
            return await self._client.delete(key) > 0

    async def pop(self, key: str) -> Optional[str]:
        async with self._guard("pop"):
            return await self._client.getdel(key)

    async def delete_if_equal(self, key: str, value: str) -> bool:
        async with self._guard("delete_if_equal"):
            return bool(await self._delete_if_equal(keys=[key], args=[value]))

    async def delete_if_token(self, key: str, token: str) -> bool:
        async with self._guard("delete_if_token"):
            return bool(await self._delete_if_token(keys=[key], args=[token]))

    async def expire_if_equal(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._guard("expire_if_equal"):
            result = await self._expire_if_equal(
                keys=[key], args=[value, _ttl_ms(ttl_seconds)]
            )
        return bool(result)

    async def close(self) -> None:
        await self._client.aclose()


def create_session_store() -> SessionStore:
    if REDIS_URL:
        return RedisSessionStore(REDIS_URL)
    if IS_DEVEL:
        logger.warning("REDIS_URL not set; using in-memory session store (single instance only)")
        return MemorySessionStore()
    raise RuntimeError("REDIS_URL is required unless IS_DEVEL is enabled")


# =============================================================================
# Coordinator
# =============================================================================


@dataclass(frozen=True)
class CooldownReservation:
    reserved: bool
    remaining: float = 0.0


@dataclass(frozen=True)
class ExclusiveSession:
    command_name: str
    token: str
    expires_at: float


@dataclass(frozen=True)
class SessionAcquisition:
    acquired: bool
    token: Optional[str] = None
    blocking_command: Optional[str] = None
    expires_at: Optional[float] = None


def cooldown_key(user_id: int, guild_id: int, command_name: str) -> str:
    return f"{COOLDOWN_PREFIX}:{guild_id}:{user_id}:{command_name}"


def exclusive_key(user_id: int, guild_id: int) -> str:
    return f"{EXCLUSIVE_PREFIX}:{guild_id}:{user_id}"


def interaction_key(session_type: str, message_id: int) -> str:
    return f"{INTERACTION_PREFIX}:{session_type}:{message_id}"


class SessionCoordinator:
    """Cooldown reservations and per-user exclusive sessions.

    All checks are atomic in the shared store: a cooldown is reserved with
    ``SET NX`` and an exclusive session is released only by the holder of its
    token, so a slow or crashed holder can never free a newer session.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
        local_cache_seconds: float = LOCAL_COOLDOWN_CACHE_SECONDS,
    ):
        self.store = store
        self._clock = clock
        self._local_cache_seconds = local_cache_seconds
        # key -> (cooldown expiry, cache entry expiry)
        self._rejections: Dict[str, Tuple[float, float]] = {}

    # ---------- cooldowns ----------

    def _cached_rejection(self, key: str, now: float) -> Optional[float]:
        entry = self._rejections.get(key)
        if entry is None:
            return None
        expires_at, cached_until = entry
        if now >= cached_until or now >= expires_at:
            del self._rejections[key]
            return None
        return expires_at - now

    async def reserve_cooldown(
        self, user_id: int, guild_id: int, command_name: str, seconds: float
    ) -> CooldownReservation:
        if seconds <= 0:
            return CooldownReservation(True)

        key = cooldown_key(user_id, guild_id, command_name)
        now = self._clock()
        remaining = self._cached_rejection(key, now)
        if remaining is not None:
            return CooldownReservation(False, remaining)

        expires_at = now + seconds
        # A second pass covers the key expiring between the write and the read.
        for _ in range(2):
            if await self.store.set_if_absent(key, str(int(expires_at * 1000)), seconds):
                return CooldownReservation(True)

            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                held_until = int(raw) / 1000
            except ValueError:
                logger.warning("Malformed cooldown value for %s: %r", key, raw)
                held_until = expires_at
            remaining = max(held_until - now, 0.001)
            self._rejections[key] = (
                held_until,
                now + min(self._local_cache_seconds, remaining),
            )
            return CooldownReservation(False, remaining)

        return CooldownReservation(False, 0.001)

    async def clear_cooldown(self, user_id: int, guild_id: int, command_name: str) -> None:
        key = cooldown_key(user_id, guild_id, command_name)
        self._rejections.pop(key, None)
        await self.store.delete(key)

    # ---------- exclusive sessions ----------

    async def get_exclusive_session(
        self, user_id: int, guild_id: int
    ) -> Optional[ExclusiveSession]:
        raw = await self.store.get(exclusive_key(user_id, guild_id))
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            return ExclusiveSession(
                command_name=str(payload["commandName"]),
                token=str(payload["token"]),
                expires_at=int(payload["expiresAt"]) / 1000,
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Malformed exclusive session for %s/%s: %r", guild_id, user_id, raw)
            return None

    async def acquire_exclusive_session(
        self,
        user_id: int,
        guild_id: int,
        command_name: str,
        ttl_seconds: float = EXCLUSIVE_SESSION_TTL,
    ) -> SessionAcquisition:
        key = exclusive_key(user_id, guild_id)
        for _ in range(2):
            token = uuid.uuid4().hex
            expires_at = self._clock() + ttl_seconds
            payload = json.dumps(
                {
                    "commandName": command_name,
                    "token": token,
                    "expiresAt": int(expires_at * 1000),
                }
            )
            if await self.store.set_if_absent(key, payload, ttl_seconds):
                return SessionAcquisition(True, token=token, expires_at=expires_at)

            current = await self.get_exclusive_session(user_id, guild_id)
            if current is not None:
                return SessionAcquisition(
                    False,
                    blocking_command=current.command_name,
                    expires_at=current.expires_at,
                )
            if await self.store.get(key) is not None:
                # held, but by a payload we cannot read
                return SessionAcquisition(False)

        return SessionAcquisition(False)

    async def release_exclusive_session(self, user_id: int, guild_id: int, token: str) -> bool:
        released = await self.store.delete_if_token(exclusive_key(user_id, guild_id), token)
        if not released:
            logger.debug("Exclusive session %s/%s not released: token no longer current", guild_id, user_id)
        return released

    async def force_release_exclusive_session(self, user_id: int, guild_id: int) -> bool:
        return await self.store.delete(exclusive_key(user_id, guild_id))

    # ---------- interaction sessions ----------

    async def set_session(
        self,
        session_type: str,
        message_id: int,
        data: Dict[str, Any],
        ttl_seconds: float = INTERACTION_SESSION_TTL,
    ) -> None:
        await self.store.set(interaction_key(session_type, message_id), json.dumps(data), ttl_seconds)

    async def get_session(self, session_type: str, message_id: int) -> Optional[Dict[str, Any]]:
        raw = await self.store.get(interaction_key(session_type, message_id))
        return json.loads(raw) if raw is not None else None

    async def claim_session(self, session_type: str, message_id: int) -> Optional[Dict[str, Any]]:
        """Take ownership of an interaction session; only one caller gets it."""
        raw = await self.store.pop(interaction_key(session_type, message_id))
        return json.loads(raw) if raw is not None else None

    async def close(self) -> None:
        self._rejections.clear()
        await self.store.close()
