import asyncio
import logging
import time

import discord

from commands.base import (
    BaseCommand,
    Category,
    CommandContext,
    Failure,
    Ok,
    UsageError,
    make_embed,
)
from config import COOLDOWNS, CURRENCY, DAILY_REWARD, GUILD_STATS_DAYS, LEADERBOARD_SIZE
from services import economy, inventory_service, level_service
from utils import format_money, format_remaining, parse_positive_amount

logger = logging.getLogger(__name__)


def _money(amount: int) -> str:
    return f"{format_money(amount)} {CURRENCY}"


def _garnish_note(garnished: int) -> str:
    if not garnished:
        return ""
    return f"\n⚠️ {_money(garnished)} went toward your overdue loan."


def _parse_optional_amount(raw: str, label: str):
    """``all`` means everything; otherwise a positive amount."""
    if raw.lower() in ("all", "max"):
        return None
    return parse_positive_amount(raw, label)


class BalanceCommand(BaseCommand):
    name = "balance"
    description = "Show your wallet and bank, or someone else's."
    category = Category.ECONOMY
    usage = "balance [@user]"
    aliases = ("bal",)
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        member = ctx.author
        if ctx.args:
            member = ctx.member_from_arg(ctx.args[0])
            if member is None:
                return UsageError("Please mention a valid user.")

        data = await economy.get_user_data(member.id, ctx.guild_id)
        embed = make_embed(f"💰 {member.display_name}'s Balance")
        embed.add_field(name="Wallet", value=_money(data.wallet), inline=True)
        embed.add_field(
            name="Bank", value=f"{_money(data.bank)} / {format_money(data.bank_max)}", inline=True
        )
        embed.add_field(name="Total", value=_money(data.total), inline=True)
        await ctx.reply(embed=embed)
        return Ok()


class BankCommand(BaseCommand):
    name = "bank"
    description = "Check your bank, deposit into it or withdraw from it."
    category = Category.ECONOMY
    usage = "bank [deposit|withdraw] [amount|all]"
    aliases = ("safe", "vault")
    cooldown = COOLDOWNS["ECONOMY"]

    _ACTIONS = {
        "deposit": "deposit",
        "dep": "deposit",
        "d": "deposit",
        "withdraw": "withdraw",
        "with": "withdraw",
        "w": "withdraw",
    }

    async def execute(self, ctx: CommandContext):
        if not ctx.args:
            data = await economy.get_bank_data(ctx.user_id, ctx.guild_id)
            embed = make_embed("🏦 Bank", color="INFO")
            embed.add_field(name="Wallet", value=_money(data.wallet), inline=True)
            embed.add_field(name="Bank", value=_money(data.bank), inline=True)
            embed.add_field(name="Capacity", value=_money(data.bank_max), inline=True)
            embed.set_footer(text=f"Space left: {format_money(data.available_space)}")
            await ctx.reply(embed=embed)
            return Ok()

        action = self._ACTIONS.get(ctx.args[0].lower())
        if action is None:
            return UsageError("Choose `deposit` or `withdraw`.")
        try:
            amount = _parse_optional_amount(ctx.args[1], "Amount") if len(ctx.args) > 1 else None
        except ValueError as error:
            return UsageError(str(error))

        try:
            if action == "deposit":
                move = await economy.deposit_to_bank(ctx.user_id, ctx.guild_id, amount)
                text = f"Deposited **{_money(move.moved)}** into your bank."
            else:
                move = await economy.withdraw_from_bank(ctx.user_id, ctx.guild_id, amount)
                text = f"Withdrew **{_money(move.moved)}** from your bank."
        except economy.EconomyError as error:
            return Failure(f"❌ {error}", waive_cooldown=True)
        data = move.data

        embed = make_embed("🏦 Bank", text, "SUCCESS")
        embed.add_field(name="Wallet", value=_money(data.wallet), inline=True)
        embed.add_field(
            name="Bank", value=f"{_money(data.bank)} / {format_money(data.bank_max)}", inline=True
        )
        await ctx.reply(embed=embed)
        return Ok()


class TransferCommand(BaseCommand):
    name = "transfer"
    description = "Send money from your wallet to another user."
    category = Category.ECONOMY
    usage = "transfer <@user> <amount>"
    aliases = ("give", "pay")
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        if len(ctx.args) != 2:
            return UsageError("Mention a user and an amount.")
        target = ctx.member_from_arg(ctx.args[0])
        if target is None:
            return UsageError("Please mention a valid user.")
        try:
            amount = parse_positive_amount(ctx.args[1])
        except ValueError as error:
            return UsageError(str(error))
        if target.id == ctx.user_id:
            return Failure("❌ You can't transfer money to yourself.", waive_cooldown=True)
        if target.bot:
            return Failure("❌ Bots don't need money.", waive_cooldown=True)

        try:
            result = await economy.transfer_balance(
                ctx.user_id, target.id, ctx.guild_id, amount, "transfer"
            )
        except economy.EconomyError as error:
            return Failure(f"❌ {error}", waive_cooldown=True)

        await ctx.reply(
            f"✅ Sent **{_money(amount)}** to {target.mention}. "
            f"Your wallet: **{_money(result.from_balance)}**.",
            allowed_mentions=discord.AllowedMentions.none(),
        )
        return Ok()


class DailyCommand(BaseCommand):
    name = "daily"
    description = f"Claim {DAILY_REWARD} {CURRENCY} once every 24 hours."
    category = Category.ECONOMY
    usage = "daily"
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        now_ms = int(time.time() * 1000)
        claim = await economy.claim_daily(ctx.user_id, ctx.guild_id, now_ms)
        if not claim.claimed:
            remaining = (claim.available_at_ms - now_ms) / 1000
            return Failure(f"⏳ You can claim again in **{format_remaining(remaining)}**.")
        await ctx.reply(
            f"✅ {_money(DAILY_REWARD)} added! You now have **{_money(claim.balance)}** 💰."
            + _garnish_note(claim.garnished)
        )
        return Ok()


class LeaderboardCommand(BaseCommand):
    name = "leaderboard"
    description = "Show the richest wallets in this server."
    category = Category.ECONOMY
    usage = "leaderboard"
    aliases = ("lb", "top")
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        top = await economy.get_top_users(ctx.guild_id, LEADERBOARD_SIZE)
        if not top:
            await ctx.reply("No data yet 🤷‍♂️")
            return Ok()

        lines = []
        for position, (user_id, balance) in enumerate(top, start=1):
            member = ctx.guild.get_member(user_id)
            name = member.display_name if member else f"<@{user_id}>"
            lines.append(f"**#{position:02d}**  {name} – **{format_money(balance)}** 💰")
        embed = discord.Embed(
            title=f"🏆 Top {len(top)} Wallets",
            description="\n".join(lines),
            colour=discord.Colour.gold(),
        )
        rank = await economy.get_user_rank(ctx.user_id, ctx.guild_id)
        if rank is not None:
            embed.set_footer(text=f"Your rank: #{rank}")
        await ctx.reply(embed=embed)
        return Ok()


class GuildStatsCommand(BaseCommand):
    """Server-wide totals plus recent activity from the history log.

    Either half may fail on its own; the embed then shows what is left with a
    notice. Only when both fail does the error reach the dispatcher.
    """

    name = "guildstats"
    description = "Show economy statistics for this server."
    category = Category.ECONOMY
    usage = "guildstats"
    aliases = ("serverstats", "guildstat")
    cooldown = COOLDOWNS["STATS"]

    async def execute(self, ctx: CommandContext):
        stats, activity = await asyncio.gather(
            economy.get_guild_stats(ctx.guild_id),
            economy.get_guild_activity(ctx.guild_id),
            return_exceptions=True,
        )
        if isinstance(stats, Exception) and isinstance(activity, Exception):
            raise stats

        embed = make_embed(f"📊 Economy Stats for {ctx.guild.name}", color="INFO")
        notices = []
        if isinstance(stats, Exception):
            logger.warning("Economy stats failed for guild %s", ctx.guild_id, exc_info=stats)
            notices.append("Economy stats are temporarily unavailable.")
        else:
            embed.add_field(
                name="💼 Economy Overview",
                value=(
                    f"Users: {format_money(stats.users)}\n"
                    f"Wallets: {_money(stats.wallets)}\n"
                    f"Banks: {_money(stats.banks)}\n"
                    f"Average Wallet: {stats.average_wallet:,.2f}\n"
                    f"Richest Wallet: {_money(stats.richest)}\n"
                    f"Rich Users: {stats.rich_users}"
                ),
                inline=True,
            )
        if isinstance(activity, Exception):
            logger.warning("Activity stats failed for guild %s", ctx.guild_id, exc_info=activity)
            notices.append("Activity stats are temporarily unavailable.")
        else:
            embed.add_field(
                name=f"📈 Activity ({GUILD_STATS_DAYS}d)",
                value=(
                    f"Active Users: {activity.active_users}\n"
                    f"Games Played: {format_money(activity.games)}\n"
                    f"Money Gambled: {_money(activity.gambled)}\n"
                    f"Daily Claims: {activity.daily_claims}"
                ),
                inline=True,
            )
            embed.add_field(
                name=f"💸 Money Flow ({GUILD_STATS_DAYS}d)",
                value=(
                    f"Generated: {_money(activity.gained)}\n"
                    f"Lost: {_money(activity.lost)}\n"
                    f"Net Change: {_money(activity.net_change)}"
                ),
                inline=True,
            )
        if notices:
            embed.add_field(name="⚠️ Data Notice", value="\n".join(notices), inline=False)
        embed.set_footer(text=f"Requested by {ctx.author.display_name}")
        await ctx.reply(embed=embed)
        return Ok()


class ProfileCommand(BaseCommand):
    name = "profile"
    description = "Show level, money and inventory worth."
    category = Category.ECONOMY
    usage = "profile [@user]"
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        member = ctx.author
        if ctx.args:
            member = ctx.member_from_arg(ctx.args[0])
            if member is None:
                return UsageError("Please mention a valid user.")

        data = await economy.get_user_data(member.id, ctx.guild_id)
        progression = await level_service.get_level_data(member.id, ctx.guild_id)
        inventory = await inventory_service.get_inventory(member.id, ctx.guild_id)
        rank = await economy.get_user_rank(member.id, ctx.guild_id)
        worth = sum(entry.worth for entry in inventory)

        embed = make_embed(f"👤 {member.display_name}", color="INFO")
        embed.set_thumbnail(url=member.display_avatar.url)
        embed.add_field(
            name="Level",
            value=f"{progression.level} ({progression.current_xp}/{progression.xp_to_next} XP)",
            inline=True,
        )
        embed.add_field(name="Rank", value=f"#{rank}" if rank else "-", inline=True)
        embed.add_field(name="Wallet", value=_money(data.wallet), inline=True)
        embed.add_field(name="Bank", value=_money(data.bank), inline=True)
        embed.add_field(
            name="Inventory",
            value=f"{sum(e.quantity for e in inventory)} item(s), worth {_money(worth)}",
            inline=True,
        )
        embed.add_field(name="Net worth", value=_money(data.total + worth), inline=True)
        await ctx.reply(embed=embed)
        return Ok()


class LoanCommand(BaseCommand):
    name = "loan"
    description = "Check, take or pay off a loan. Overdue loans eat your earnings."
    category = Category.ECONOMY
    usage = "loan [take <option>|pay <amount|all>]"
    aliases = ("debt",)
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        action = ctx.args[0].lower() if ctx.args else "status"
        if action in ("status", "info"):
            return await self._status(ctx)
        if action == "take":
            if len(ctx.args) != 2:
                return UsageError("Choose a loan option to take.")
            return await self._take(ctx, ctx.args[1])
        if action in ("pay", "repay"):
            raw = ctx.args[1] if len(ctx.args) > 1 else "all"
            try:
                amount = _parse_optional_amount(raw, "Payment")
            except ValueError as error:
                return UsageError(str(error))
            return await self._pay(ctx, amount)
        return UsageError("Use `take`, `pay` or no argument for your status.")

    async def _status(self, ctx: CommandContext):
        state = await economy.get_loan_state(ctx.user_id, ctx.guild_id)
        embed = make_embed("🏦 Loans", color="INFO")
        if state.loan is None:
            embed.description = "You don't have a loan."
            for option in economy.get_loan_options():
                embed.add_field(
                    name=option.id.title(),
                    value=(
                        f"Borrow {_money(option.amount)}\n"
                        f"Repay {_money(option.repayment)} within {option.duration_days} days"
                    ),
                    inline=True,
                )
        else:
            loan = state.loan
            status = "🔴 Overdue" if loan.status == "delinquent" else "🟢 Active"
            embed.description = f"{status}: you owe **{_money(loan.debt)}**."
            embed.add_field(name="Borrowed", value=_money(loan.principal), inline=True)
            embed.add_field(
                name="Due", value=discord.utils.format_dt(loan.due_at, "R"), inline=True
            )
            if loan.status == "delinquent":
                embed.set_footer(text="Your earnings go toward the debt and transfers are locked.")
        await ctx.reply(embed=embed)
        return Ok()

    async def _take(self, ctx: CommandContext, token: str):
        option = economy.find_loan_option(token)
        if option is None:
            names = ", ".join(f"`{o.id}`" for o in economy.get_loan_options())
            return UsageError(f"Unknown loan option. Choose one of {names}.")
        try:
            state = await economy.take_loan(ctx.user_id, ctx.guild_id, option.id)
        except economy.EconomyError as error:
            return Failure(f"❌ {error}", waive_cooldown=True)
        await ctx.reply(
            f"✅ You borrowed **{_money(option.amount)}**. Repay **{_money(option.repayment)}** "
            f"{discord.utils.format_dt(state.loan.due_at, 'R')}. Wallet: **{_money(state.wallet)}**."
        )
        return Ok()

    async def _pay(self, ctx: CommandContext, amount):
        try:
            payment = await economy.pay_loan(ctx.user_id, ctx.guild_id, amount)
        except economy.EconomyError as error:
            return Failure(f"❌ {error}", waive_cooldown=True)
        if payment.state.loan is None:
            text = f"✅ Paid **{_money(payment.paid)}**. Your loan is fully repaid!"
        else:
            text = (
                f"✅ Paid **{_money(payment.paid)}**. "
                f"Remaining debt: **{_money(payment.state.loan.debt)}**."
            )
        await ctx.reply(text)
        return Ok()


def setup(handler):
    for command_cls in (
        BalanceCommand,
        BankCommand,
        TransferCommand,
        DailyCommand,
        LeaderboardCommand,
        GuildStatsCommand,
        ProfileCommand,
        LoanCommand,
    ):
        handler.register(command_cls(handler.bot))
