import logging
import math

from commands.base import (
    BaseCommand,
    Category,
    CommandContext,
    Failure,
    Ok,
    UsageError,
    make_embed,
)
from config import COOLDOWNS, CURRENCY, INVENTORY_PAGE_SIZE, MAX_ITEM_QUANTITY, SHOP_PAGE_SIZE
from services import economy, inventory_service, items_service
from utils import ensure_bigint_range, format_money, is_number, parse_positive_amount

logger = logging.getLogger(__name__)


def _money(amount: int) -> str:
    return f"{format_money(amount)} {CURRENCY}"


def _parse_page(raw: str):
    if not is_number(raw) or int(raw) < 1:
        return None
    return int(raw)


def _split_quantity(args: list[str]) -> tuple[str, str]:
    """``["bank", "note", "3"]`` -> ``("bank note", "3")``."""
    if len(args) > 1 and is_number(args[-1].replace(",", "")):
        return " ".join(args[:-1]), args[-1]
    return " ".join(args), "1"


def _parse_quantity(raw: str):
    try:
        quantity = parse_positive_amount(raw, "Quantity")
    except ValueError as error:
        return UsageError(str(error))
    if quantity > MAX_ITEM_QUANTITY:
        return UsageError(f"You can handle at most {MAX_ITEM_QUANTITY} items at once.")
    return quantity


class ShopCommand(BaseCommand):
    name = "shop"
    description = "Browse and buy items."
    category = Category.ITEMS
    usage = "shop [page] | shop buy <item> [quantity]"
    aliases = ("store",)
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        if not ctx.args:
            return await self._show(ctx, 1)
        if ctx.args[0].lower() == "buy":
            return await self._buy(ctx, ctx.args[1:])
        page = _parse_page(ctx.args[0])
        if page is None:
            return UsageError("Give a page number or `buy <item> [quantity]`.")
        return await self._show(ctx, page)

    async def _show(self, ctx: CommandContext, page: int):
        items = await items_service.get_shop_items()
        if not items:
            return Failure("The shop is currently empty.")
        pages = math.ceil(len(items) / SHOP_PAGE_SIZE)
        if page > pages:
            return Failure(f"Invalid page. There are only {pages} page(s).", waive_cooldown=True)

        chunk = items[(page - 1) * SHOP_PAGE_SIZE : page * SHOP_PAGE_SIZE]
        description = "\n\n".join(
            f"**{item.title}** (`{item.name}`)\nPrice: {_money(item.price)}"
            + (f"\n*{item.description}*" if item.description else "")
            for item in chunk
        )
        embed = make_embed(f"🛒 Shop - Page {page}/{pages}", description)
        embed.set_footer(text="Use shop buy <item> [quantity] to purchase an item.")
        await ctx.reply(embed=embed)
        return Ok()

    async def _buy(self, ctx: CommandContext, args: list[str]):
        if not args:
            return UsageError("Name the item you want to buy.")
        name, raw_quantity = _split_quantity(args)
        quantity = _parse_quantity(raw_quantity)
        if isinstance(quantity, UsageError):
            return quantity

        item = await items_service.get_item_by_name(name)
        if item is None or item.price is None:
            return Failure(f'Item "{name}" was not found in the shop.', waive_cooldown=True)
        try:
            cost = ensure_bigint_range(item.price * quantity, "Total purchase cost")
        except ValueError as error:
            return UsageError(str(error))

        try:
            update = await economy.update_balance(ctx.user_id, ctx.guild_id, -cost, "shop-purchase")
        except economy.InsufficientFunds:
            balance = await economy.get_balance(ctx.user_id, ctx.guild_id)
            return Failure(
                f"You don't have enough money.\nCost: {_money(cost)} | Your balance: {_money(balance)}",
                waive_cooldown=True,
            )

        try:
            await inventory_service.add_item(ctx.user_id, ctx.guild_id, item.id, quantity)
        except Exception:
            logger.exception(
                "Adding %s x%s to %s in %s failed, refunding %s",
                item.name,
                quantity,
                ctx.user_id,
                ctx.guild_id,
                cost,
            )
            await economy.update_balance(ctx.user_id, ctx.guild_id, cost, "shop-purchase-refund")
            raise

        embed = make_embed(
            "✅ Purchase Successful",
            f"You bought **{item.title}** x{format_money(quantity)}.",
            "SUCCESS",
        )
        embed.add_field(name="Cost", value=_money(cost), inline=True)
        embed.add_field(name="New Balance", value=_money(update.balance), inline=True)
        await ctx.reply(embed=embed)
        return Ok()


class InventoryCommand(BaseCommand):
    name = "inventory"
    description = "List the items you own."
    category = Category.ITEMS
    usage = "inventory [page]"
    aliases = ("inv",)
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        page = 1
        if ctx.args:
            page = _parse_page(ctx.args[0])
            if page is None:
                return UsageError("Page must be a positive number.")

        entries = await inventory_service.get_inventory(ctx.user_id, ctx.guild_id)
        if not entries:
            await ctx.reply("🎒 Your inventory is empty. Check out the `shop`!")
            return Ok()
        pages = math.ceil(len(entries) / INVENTORY_PAGE_SIZE)
        page = min(page, pages)

        chunk = entries[(page - 1) * INVENTORY_PAGE_SIZE : page * INVENTORY_PAGE_SIZE]
        lines = [
            f"**{entry.item.title}** x{format_money(entry.quantity)} (`{entry.item.name}`)"
            for entry in chunk
        ]
        embed = make_embed(f"🎒 {ctx.author.display_name}'s Inventory", "\n".join(lines), "INFO")
        worth = sum(entry.worth for entry in entries)
        embed.set_footer(text=f"Page {page}/{pages} | Worth {format_money(worth)} {CURRENCY}")
        await ctx.reply(embed=embed)
        return Ok()


class UseCommand(BaseCommand):
    name = "use"
    description = "Use an item from your inventory."
    category = Category.ITEMS
    usage = "use <item> [quantity]"
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        if not ctx.args:
            return UsageError("Please specify an item to use.")
        name, raw_quantity = _split_quantity(ctx.args)
        quantity = _parse_quantity(raw_quantity)
        if isinstance(quantity, UsageError):
            return quantity

        item = await items_service.get_item_by_name(name)
        if item is None:
            return Failure(f'Item "{name}" not found.', waive_cooldown=True)

        result = await inventory_service.use_item(ctx.user_id, ctx.guild_id, item, quantity)
        if not result.success:
            return Failure(f"❌ {result.message}", waive_cooldown=True)
        await ctx.reply(embed=make_embed(f"✨ {item.title}", result.message, "SUCCESS"))
        return Ok()


def setup(handler):
    for command_cls in (ShopCommand, InventoryCommand, UseCommand):
        handler.register(command_cls(handler.bot))
