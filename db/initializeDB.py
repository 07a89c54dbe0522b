import logging

from config import STARTING_BANK_MAX
from db.DBHelper import transaction

logger = logging.getLogger(__name__)

SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS economy (
        userid TEXT NOT NULL,
        guildid TEXT NOT NULL,
        balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
        bank_balance BIGINT NOT NULL DEFAULT 0 CHECK (bank_balance >= 0),
        bank_max BIGINT NOT NULL DEFAULT {STARTING_BANK_MAX},
        data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        PRIMARY KEY (userid, guildid)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS economy_guild_balance_idx
        ON economy (guildid, balance DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS items (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        type TEXT NOT NULL,
        price BIGINT,
        data JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory (
        userid TEXT NOT NULL,
        guildid TEXT NOT NULL,
        itemid BIGINT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
        quantity BIGINT NOT NULL DEFAULT 0 CHECK (quantity >= 0),
        PRIMARY KEY (userid, guildid, itemid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS loans (
        userid TEXT NOT NULL,
        guildid TEXT NOT NULL,
        option_id TEXT NOT NULL,
        principal BIGINT NOT NULL,
        debt BIGINT NOT NULL CHECK (debt >= 0),
        status TEXT NOT NULL DEFAULT 'active',
        taken_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        due_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (userid, guildid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS history (
        id BIGSERIAL PRIMARY KEY,
        userid TEXT NOT NULL,
        guildid TEXT NOT NULL,
        type TEXT NOT NULL,
        itemid BIGINT,
        amount BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS history_user_idx
        ON history (userid, guildid, created_at DESC)
    """,
]


async def init_db():
    async with transaction() as conn:
        for statement in SCHEMA:
            await conn.execute(statement)
    logger.info("Database schema ready (%s statements)", len(SCHEMA))
