import logging
from dataclasses import dataclass

from db.DBHelper import fetch, fetchrow, fetchval, transaction
from services.economy import EconomyError
from services.items_service import ItemUseResult, StoredItem, get_definition, item_from_row

logger = logging.getLogger(__name__)


class InventoryError(EconomyError):
    pass


@dataclass(frozen=True)
class InventoryEntry:
    item: StoredItem
    quantity: int

    @property
    def worth(self) -> int:
        return (self.item.price or 0) * self.quantity


async def get_inventory(user_id: int, guild_id: int) -> list[InventoryEntry]:
    rows = await fetch(
        """
        SELECT it.*, inv.quantity
        FROM inventory inv
        JOIN items it ON it.id = inv.itemid
        WHERE inv.userid = $1 AND inv.guildid = $2 AND inv.quantity > 0
        ORDER BY it.title
        """,
        str(user_id),
        str(guild_id),
    )
    return [InventoryEntry(item_from_row(row), row["quantity"]) for row in rows]


async def add_item(user_id: int, guild_id: int, item_id: int, quantity: int = 1) -> int:
    if quantity <= 0:
        raise InventoryError("Quantity must be positive.")
    row = await fetchrow(
        """
        INSERT INTO inventory (userid, guildid, itemid, quantity)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (userid, guildid, itemid)
        DO UPDATE SET quantity = inventory.quantity + EXCLUDED.quantity
        RETURNING quantity
        """,
        str(user_id),
        str(guild_id),
        item_id,
        quantity,
    )
    return row["quantity"]


async def remove_item(user_id: int, guild_id: int, item_id: int, quantity: int = 1) -> int:
    """Take *quantity* items away; returns what is left."""

    if quantity <= 0:
        raise InventoryError("Quantity must be positive.")
    async with transaction() as conn:
        remaining = await conn.fetchval(
            """
            UPDATE inventory SET quantity = quantity - $4
            WHERE userid = $1 AND guildid = $2 AND itemid = $3 AND quantity >= $4
            RETURNING quantity
            """,
            str(user_id),
            str(guild_id),
            item_id,
            quantity,
        )
        if remaining is None:
            raise InventoryError("Not enough items to remove.")
        if remaining == 0:
            await conn.execute(
                "DELETE FROM inventory WHERE userid = $1 AND guildid = $2 AND itemid = $3",
                str(user_id),
                str(guild_id),
                item_id,
            )
    return remaining


async def has_item(user_id: int, guild_id: int, item_id: int, quantity: int = 1) -> bool:
    owned = await fetchval(
        "SELECT quantity FROM inventory WHERE userid = $1 AND guildid = $2 AND itemid = $3",
        str(user_id),
        str(guild_id),
        item_id,
    )
    return (owned or 0) >= quantity


async def use_item(user_id: int, guild_id: int, item: StoredItem, quantity: int = 1) -> ItemUseResult:
    """Consume items and apply their effect.

    The items are taken in one transaction together with a history row. If
    the effect then reports failure or raises, the items are given back.
    """

    definition = get_definition(item.name)
    if definition is None or definition.use is None:
        return ItemUseResult(False, f"**{item.title}** cannot be used.")
    if quantity <= 0:
        return ItemUseResult(False, "Please specify a valid quantity.")

    async with transaction() as conn:
        owned = await conn.fetchval(
            """
            SELECT quantity FROM inventory
            WHERE userid = $1 AND guildid = $2 AND itemid = $3
            FOR UPDATE
            """,
            str(user_id),
            str(guild_id),
            item.id,
        )
        if (owned or 0) < quantity:
            return ItemUseResult(
                False, f"You only have {owned or 0} **{item.title}**."
            )
        if owned == quantity:
            await conn.execute(
                "DELETE FROM inventory WHERE userid = $1 AND guildid = $2 AND itemid = $3",
                str(user_id),
                str(guild_id),
                item.id,
            )
        else:
            await conn.execute(
                """
                UPDATE inventory SET quantity = quantity - $4
                WHERE userid = $1 AND guildid = $2 AND itemid = $3
                """,
                str(user_id),
                str(guild_id),
                item.id,
                quantity,
            )
        await conn.execute(
            "INSERT INTO history (userid, guildid, type, itemid, amount) VALUES ($1, $2, 'item-use', $3, $4)",
            str(user_id),
            str(guild_id),
            item.id,
            quantity,
        )

    try:
        result = await definition.use(user_id, guild_id, quantity)
    except Exception:
        logger.exception("Effect of %s failed for %s in %s, returning items", item.name, user_id, guild_id)
        await add_item(user_id, guild_id, item.id, quantity)
        raise
    if not result.success:
        await add_item(user_id, guild_id, item.id, quantity)
    return result
