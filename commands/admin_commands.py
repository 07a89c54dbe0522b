import logging

import discord

from commands.base import (
    BaseCommand,
    Category,
    CommandContext,
    Failure,
    Ok,
    UsageError,
)
from config import COOLDOWNS, CURRENCY
from services import economy
from utils import format_money, parse_positive_amount

logger = logging.getLogger(__name__)

MANAGE_GUILD = frozenset({"manage_guild"})


class AdminCommand(BaseCommand):
    category = Category.ADMIN
    cooldown = COOLDOWNS["ADMIN"]
    permissions = MANAGE_GUILD

    def target_from(self, ctx: CommandContext):
        if not ctx.args:
            return None
        return ctx.member_from_arg(ctx.args[0])


class AddMoneyCommand(AdminCommand):
    name = "addmoney"
    description = "Add money to (or with a negative amount remove it from) a user's wallet."
    usage = "addmoney <@user> <amount>"

    async def execute(self, ctx: CommandContext):
        if len(ctx.args) != 2:
            return UsageError("Mention a user and an amount.")
        target = self.target_from(ctx)
        if target is None:
            return UsageError("Please mention a valid user.")
        raw = ctx.args[1]
        sign = -1 if raw.startswith("-") else 1
        try:
            amount = parse_positive_amount(raw.lstrip("-+"))
        except ValueError as error:
            return UsageError(str(error))

        try:
            update = await economy.update_balance(
                target.id, ctx.guild_id, sign * amount, f"admin-adjust:{ctx.user_id}"
            )
        except economy.EconomyError as error:
            return Failure(f"❌ {error}", waive_cooldown=True)
        logger.info(
            "%s adjusted %s's wallet in %s by %+d", ctx.user_id, target.id, ctx.guild_id, sign * amount
        )
        verb = "Added" if sign > 0 else "Removed"
        await ctx.reply(
            f"✅ {verb} **{format_money(amount)} {CURRENCY}** {'to' if sign > 0 else 'from'} "
            f"{target.mention}. New wallet: **{format_money(update.balance)} {CURRENCY}**.",
            allowed_mentions=discord.AllowedMentions.none(),
        )
        return Ok()


class ResetCooldownCommand(AdminCommand):
    name = "resetcooldown"
    description = "Clear a user's cooldown for one command, or for all of them."
    usage = "resetcooldown <@user> <command|all>"

    async def execute(self, ctx: CommandContext):
        if len(ctx.args) != 2:
            return UsageError("Mention a user and a command name.")
        target = self.target_from(ctx)
        if target is None:
            return UsageError("Please mention a valid user.")

        if ctx.args[1].lower() == "all":
            names = sorted(ctx.handler.commands)
        else:
            command = ctx.handler.get(ctx.args[1])
            if command is None:
                return UsageError(f"Unknown command `{ctx.args[1]}`.")
            names = [command.name]

        for name in names:
            await ctx.coordinator.clear_cooldown(target.id, ctx.guild_id, name)
        label = "all commands" if len(names) > 1 else f"`{names[0]}`"
        await ctx.reply(
            f"✅ Cleared {label} cooldown(s) for {target.mention}.",
            allowed_mentions=discord.AllowedMentions.none(),
        )
        return Ok()


class EndSessionCommand(AdminCommand):
    name = "endsession"
    description = "Force-end a user's stuck exclusive session."
    usage = "endsession <@user>"

    async def execute(self, ctx: CommandContext):
        if len(ctx.args) != 1:
            return UsageError("Mention the user whose session should end.")
        target = self.target_from(ctx)
        if target is None:
            return UsageError("Please mention a valid user.")

        session = await ctx.coordinator.get_exclusive_session(target.id, ctx.guild_id)
        if session is None:
            return Failure(f"{target.display_name} has no active session.", waive_cooldown=True)
        await ctx.coordinator.force_release_exclusive_session(target.id, ctx.guild_id)
        logger.warning(
            "%s force-ended %s session of %s in %s",
            ctx.user_id,
            session.command_name,
            target.id,
            ctx.guild_id,
        )
        await ctx.reply(
            f"✅ Ended the `{session.command_name}` session of {target.mention}.",
            allowed_mentions=discord.AllowedMentions.none(),
        )
        return Ok()


def setup(handler):
    for command_cls in (AddMoneyCommand, ResetCooldownCommand, EndSessionCommand):
        handler.register(command_cls(handler.bot))
