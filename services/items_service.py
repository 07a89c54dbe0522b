"""Item catalogue: definitions in code, rows in the ``items`` table."""

import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import asyncpg

from db.DBHelper import fetch, fetchrow, transaction
from services import economy, level_service
from config import CURRENCY
from utils import format_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemUseResult:
    success: bool
    message: str


ItemEffect = Callable[[int, int, int], Awaitable[ItemUseResult]]


@dataclass(frozen=True)
class ItemDefinition:
    name: str
    title: str
    type: str
    price: Optional[int]
    description: str
    use: Optional[ItemEffect] = field(default=None, compare=False)


@dataclass(frozen=True)
class StoredItem:
    id: int
    name: str
    title: str
    type: str
    price: Optional[int]
    description: str


# ---------- effects ----------


def _cash_effect(low: int, high: int, noun: str, verb: str, reason: str) -> ItemEffect:
    async def use(user_id: int, guild_id: int, quantity: int) -> ItemUseResult:
        total = sum(random.randint(low, high) for _ in range(quantity))
        if total > 0:
            await economy.update_balance(user_id, guild_id, total, reason, garnish=True)
        return ItemUseResult(
            True, f"You {verb} {format_money(quantity)} {noun} and got {format_money(total)} {CURRENCY}."
        )

    return use


async def _use_bank_note(user_id: int, guild_id: int, quantity: int) -> ItemUseResult:
    progression = await level_service.get_level_data(user_id, guild_id)
    try:
        upgrade = await economy.expand_bank_capacity(
            user_id, guild_id, quantity, progression.level
        )
    except economy.EconomyError as error:
        return ItemUseResult(False, str(error))
    return ItemUseResult(
        True,
        f"You used {format_money(quantity)} bank note(s) at level {upgrade.level}.\n"
        f"Bank max increased by {format_money(upgrade.total_increase)} "
        f"to {format_money(upgrade.bank_max)}.",
    )


ITEM_DEFINITIONS: dict[str, ItemDefinition] = {
    definition.name: definition
    for definition in (
        ItemDefinition(
            "shovel",
            "Shovel",
            "tool",
            750,
            "Needed for `dig`. Might break while digging.",
        ),
        ItemDefinition(
            "hunting_rifle",
            "Hunting Rifle",
            "tool",
            1_200,
            "Needed for `hunt`. Might break while hunting.",
        ),
        ItemDefinition(
            "bank_note",
            "Bank Note",
            "consumable",
            1_000,
            "Expands your max bank storage based on your current cap and level.",
            _use_bank_note,
        ),
        ItemDefinition(
            "scratch_ticket",
            "Scratch Ticket",
            "consumable",
            900,
            "A risky scratch card. Could be nothing, could be a big hit.",
            _cash_effect(0, 1_800, "ticket(s)", "scratched", "scratch-ticket-reward"),
        ),
        ItemDefinition(
            "payday_box",
            "Payday Box",
            "consumable",
            2_500,
            "A sealed envelope of cash from a mystery employer.",
            _cash_effect(600, 4_000, "payday box(es)", "opened", "payday-box-reward"),
        ),
        ItemDefinition(
            "vault_key",
            "Vault Key",
            "consumable",
            8_000,
            "A high-roller key that unlocks a random cash stash.",
            _cash_effect(1_500, 12_000, "vault key(s)", "used", "vault-key-reward"),
        ),
        ItemDefinition(
            "coffee_thermos",
            "Coffee Thermos",
            "consumable",
            300,
            "A full thermos. You sell some cups and make a small side income.",
            _cash_effect(70, 180, "coffee thermos(es)", "sold", "coffee-thermos-reward"),
        ),
        ItemDefinition(
            "snack_pack",
            "Snack Pack",
            "consumable",
            80,
            "A cheap snack that turns into a little pocket change.",
            _cash_effect(15, 40, "snack pack(s)", "sold", "snack-pack-reward"),
        ),
        ItemDefinition(
            "dih_coin",
            "Dih Coin",
            "consumable",
            100,
            f"A shiny coin that grants you 10 {CURRENCY} when used.",
            _cash_effect(10, 10, "Dih Coin(s)", "traded in", "dih-coin-reward"),
        ),
    )
}


# ---------- catalogue ----------


def normalize_item_name(raw: str) -> str:
    return raw.strip().lower().replace(" ", "_").replace("-", "_")


def get_definition(name: str) -> Optional[ItemDefinition]:
    return ITEM_DEFINITIONS.get(normalize_item_name(name))


def item_from_row(row: asyncpg.Record) -> StoredItem:
    data = row["data"] or {}
    return StoredItem(
        id=row["id"],
        name=row["name"],
        title=row["title"],
        type=row["type"],
        price=row["price"],
        description=data.get("description", ""),
    )


async def sync_items() -> int:
    """Upsert every defined item and drop rows for items that no longer exist."""

    async with transaction() as conn:
        for definition in ITEM_DEFINITIONS.values():
            await conn.execute(
                """
                INSERT INTO items (name, title, type, price, data)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (name) DO UPDATE
                SET title = EXCLUDED.title,
                    type = EXCLUDED.type,
                    price = EXCLUDED.price,
                    data = EXCLUDED.data
                """,
                definition.name,
                definition.title,
                definition.type,
                definition.price,
                {"description": definition.description},
            )
        removed = await conn.fetch(
            """
            DELETE FROM items
            WHERE NOT (name = ANY($1::text[]))
              AND NOT EXISTS (SELECT 1 FROM inventory WHERE inventory.itemid = items.id)
            RETURNING name
            """,
            list(ITEM_DEFINITIONS),
        )
    if removed:
        logger.warning("Removed retired items: %s", ", ".join(r["name"] for r in removed))
    logger.info("Synced %s items", len(ITEM_DEFINITIONS))
    return len(ITEM_DEFINITIONS)


async def get_item_by_name(name: str) -> Optional[StoredItem]:
    normalized = normalize_item_name(name)
    row = await fetchrow(
        "SELECT * FROM items WHERE name = $1 OR lower(title) = lower($2)",
        normalized,
        name.strip(),
    )
    return item_from_row(row) if row else None


async def get_shop_items() -> list[StoredItem]:
    rows = await fetch("SELECT * FROM items WHERE price IS NOT NULL ORDER BY price, name")
    return [item_from_row(row) for row in rows]

