import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import asyncpg

from config import (
    DB_RETRY_ATTEMPTS,
    DB_RETRY_BASE_DELAY,
    IS_DEVEL,
    PG_COMMAND_TIMEOUT,
    PG_POOL_MAX_SIZE,
    PG_POOL_MIN_SIZE,
    PGSSL_REJECT_UNAUTHORIZED,
    POSTGRES_URI,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

db_pool: Optional[asyncpg.Pool] = None

TRANSIENT_SQLSTATES = frozenset(
    {
        "57P01",  # admin_shutdown
        "57P02",  # crash_shutdown
        "57P03",  # cannot_connect_now
        "08000",  # connection_exception
        "08001",  # sqlclient_unable_to_establish_sqlconnection
        "08003",  # connection_does_not_exist
        "08006",  # connection_failure
        "53300",  # too_many_connections
    }
)

_TRANSIENT_SNIPPETS = (
    "connection terminated",
    "connection reset",
    "connection was closed",
    "terminating connection",
    "timeout",
)


# ---------- pool ----------


async def _init_connection(conn: asyncpg.Connection):
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


async def connect(dsn: str = POSTGRES_URI) -> asyncpg.Pool:
    global db_pool
    if db_pool is not None:
        return db_pool
    if not dsn:
        raise RuntimeError("POSTGRES_URI is not configured")

    ssl: Optional[str] = None
    if not IS_DEVEL:
        ssl = "verify-full" if PGSSL_REJECT_UNAUTHORIZED else "require"

    db_pool = await asyncpg.create_pool(
        dsn,
        min_size=PG_POOL_MIN_SIZE,
        max_size=PG_POOL_MAX_SIZE,
        timeout=20,
        command_timeout=PG_COMMAND_TIMEOUT,
        init=_init_connection,
        ssl=ssl,
    )
    logger.info("Postgres pool ready (max %s connections)", PG_POOL_MAX_SIZE)
    return db_pool


async def close():
    global db_pool
    if db_pool is None:
        return
    pool, db_pool = db_pool, None
    await pool.close()
    logger.info("Postgres pool closed")


def get_pool() -> asyncpg.Pool:
    if db_pool is None:
        raise RuntimeError("Database pool is not initialised; call connect() first")
    return db_pool


# ---------- errors & retry ----------


def is_transient_database_error(error: BaseException) -> bool:
    """Whether *error* is worth retrying (server restart, dropped link...)."""

    if isinstance(
        error,
        (
            asyncpg.exceptions.PostgresConnectionError,
            asyncpg.exceptions.ConnectionDoesNotExistError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
    ):
        return True
    sqlstate = getattr(error, "sqlstate", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    if isinstance(error, OSError):
        return True
    message = str(error).lower()
    return any(snippet in message for snippet in _TRANSIENT_SNIPPETS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DB_RETRY_ATTEMPTS,
    base_delay: float = DB_RETRY_BASE_DELAY,
) -> T:
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as error:
            if attempt >= attempts or not is_transient_database_error(error):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Transient database error (attempt %s/%s), retrying in %.2fs: %s",
                attempt,
                attempts,
                delay,
                error,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")


# ---------- queries ----------


async def fetchrow(query: str, *args: Any) -> Optional[asyncpg.Record]:
    async def _run():
        async with get_pool().acquire() as conn:
            return await conn.fetchrow(query, *args)

    return await with_retry(_run)


async def fetch(query: str, *args: Any) -> list[asyncpg.Record]:
    async def _run():
        async with get_pool().acquire() as conn:
            return await conn.fetch(query, *args)

    return await with_retry(_run)


async def fetchval(query: str, *args: Any) -> Any:
    async def _run():
        async with get_pool().acquire() as conn:
            return await conn.fetchval(query, *args)

    return await with_retry(_run)


async def execute(query: str, *args: Any) -> str:
    async def _run():
        async with get_pool().acquire() as conn:
            return await conn.execute(query, *args)

    return await with_retry(_run)


@asynccontextmanager
async def transaction() -> AsyncIterator[asyncpg.Connection]:
    """Yield a connection inside a transaction; commits on clean exit."""
    async with get_pool().acquire() as conn:
        async with conn.transaction():
            yield conn
