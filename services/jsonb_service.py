"""Per-user JSON state stored in ``economy.data``."""

from dataclasses import dataclass
from typing import Any, Optional

from db.DBHelper import execute, fetchrow, fetchval


@dataclass(frozen=True)
class TimedKey:
    acquired: bool
    value: int


async def _ensure_row(user_id: int, guild_id: int):
    await execute(
        "INSERT INTO economy (userid, guildid) VALUES ($1, $2) ON CONFLICT DO NOTHING",
        str(user_id),
        str(guild_id),
    )


async def get_key(user_id: int, guild_id: int, key: str) -> Any:
    return await fetchval(
        "SELECT data -> $3::text FROM economy WHERE userid = $1 AND guildid = $2",
        str(user_id),
        str(guild_id),
        key,
    )


async def set_key(user_id: int, guild_id: int, key: str, value: Any):
    await execute(
        """
        INSERT INTO economy (userid, guildid, data)
        VALUES ($1, $2, jsonb_build_object($3::text, $4::jsonb))
        ON CONFLICT (userid, guildid)
        DO UPDATE SET data = economy.data || EXCLUDED.data
        """,
        str(user_id),
        str(guild_id),
        key,
        value,
    )


async def remove_key(user_id: int, guild_id: int, key: str):
    await execute(
        "UPDATE economy SET data = data - $3::text WHERE userid = $1 AND guildid = $2",
        str(user_id),
        str(guild_id),
        key,
    )


async def increment_key(user_id: int, guild_id: int, key: str, amount: int = 1) -> int:
    await _ensure_row(user_id, guild_id)
    value = await fetchval(
        """
        UPDATE economy
        SET data = jsonb_set(
            data,
            ARRAY[$3::text],
            to_jsonb(COALESCE((data ->> $3::text)::bigint, 0) + $4::bigint),
            true
        )
        WHERE userid = $1 AND guildid = $2
        RETURNING (data ->> $3::text)::bigint
        """,
        str(user_id),
        str(guild_id),
        key,
        amount,
    )
    return int(value)


async def acquire_timed_key(
    user_id: int, guild_id: int, key: str, until_ms: int, now_ms: int
) -> TimedKey:
    """Set *key* to *until_ms* only if its current value is at or before *now_ms*.

    This is a single conditional UPDATE, so concurrent callers racing for the
    same key get exactly one winner. On failure the value that blocked the
    write is returned.
    """

    await _ensure_row(user_id, guild_id)
    row = await fetchrow(
        """
        UPDATE economy
        SET data = jsonb_set(data, ARRAY[$3::text], to_jsonb($4::bigint), true)
        WHERE userid = $1
          AND guildid = $2
          AND COALESCE((data ->> $3::text)::bigint, 0) <= $5::bigint
        RETURNING (data ->> $3::text)::bigint AS value
        """,
        str(user_id),
        str(guild_id),
        key,
        until_ms,
        now_ms,
    )
    if row is not None:
        return TimedKey(True, int(row["value"]))

    current: Optional[int] = await fetchval(
        "SELECT COALESCE((data ->> $3::text)::bigint, 0) FROM economy WHERE userid = $1 AND guildid = $2",
        str(user_id),
        str(guild_id),
        key,
    )
    return TimedKey(False, int(current or 0))
