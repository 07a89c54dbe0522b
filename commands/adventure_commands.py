"""Rob, dig, hunt, crime and work: the commands that earn (or lose) money outside the casino."""

import asyncio
import logging
import math
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ClassVar, Optional, Sequence

import discord
from discord import ui

from commands.base import (
    BaseCommand,
    Category,
    CommandContext,
    Failure,
    Ok,
    UsageError,
    make_embed,
)
from config import (
    COOLDOWNS,
    CRIME,
    CRIME_SCALING,
    CRIMES,
    CURRENCY,
    DIG,
    DIG_ACTIONS,
    DIG_BREAK_MESSAGES,
    DIG_DEATH_MESSAGES,
    DIG_FIND_MESSAGES,
    DIG_SCALING,
    DIG_SITES,
    HUNT,
    HUNT_ACTIONS,
    HUNT_BREAK_MESSAGES,
    HUNT_DEATH_MESSAGES,
    HUNT_ENCOUNTERS,
    HUNT_LOOT_MESSAGES,
    HUNT_SCALING,
    ROB,
    ROB_FINE_TIERS,
    ROB_STEAL_TIERS,
    WORK_JOBS,
    WORK_LOCK_KEY,
    WORK_LOCK_SECONDS,
    WORK_STATE_KEY,
    WORKS_REQUIRED_FOR_JOB_CHANGE,
)
from services import economy, inventory_service, items_service, jsonb_service, level_service
from services.session_service import CoordinatorUnavailable
from utils import (
    BPS,
    clamp,
    compute_scaled_reward,
    floor_percent_of,
    format_money,
    format_percent,
    format_remaining,
    pick_weighted_percent,
    roll_chance_bps,
)

logger = logging.getLogger(__name__)


async def _pause(seconds: float):
    await asyncio.sleep(seconds)


def _money(amount: int) -> str:
    return f"{format_money(amount)} {CURRENCY}"


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------- rob ----------


def rob_success_chance(robber_balance: int, victim_balance: int) -> float:
    """Closer wallets make for better odds; big gaps push toward the floor."""
    largest = max(robber_balance, victim_balance)
    relative = abs(robber_balance - victim_balance) / max(largest, 1) if largest else 0.0
    return clamp(
        ROB["CHANCE_BASE"] - relative * ROB["CHANCE_DECAY"], ROB["CHANCE_MIN"], ROB["CHANCE_BASE"]
    )


def rob_stolen_amount(victim_balance: int, robber_balance: int, percent: float) -> int:
    stolen = min(max(1, floor_percent_of(victim_balance, percent)), victim_balance)
    cap = robber_balance * ROB["MAX_STEAL_OF_ROBBER_BALANCE_BPS"] // BPS
    if cap > 0:
        stolen = min(stolen, cap)
    return stolen


def rob_fine_amount(robber_balance: int, percent: float) -> int:
    return min(max(1, floor_percent_of(robber_balance, percent)), robber_balance)


class RobCommand(BaseCommand):
    name = "rob"
    description = "Attempt to rob another user."
    category = Category.ECONOMY
    usage = "rob <@user>"
    aliases = ("steal", "mug")
    cooldown = COOLDOWNS["ECONOMY"]

    async def execute(self, ctx: CommandContext):
        if len(ctx.args) != 1:
            return UsageError("Please mention exactly one user.")
        victim = ctx.member_from_arg(ctx.args[0])
        if victim is None:
            return UsageError("Please mention a valid user to rob.")
        if victim.id == ctx.user_id:
            return Failure("You cannot rob yourself.", waive_cooldown=True)
        if victim.bot:
            return Failure("You cannot rob a bot.", waive_cooldown=True)

        robber_balance = await economy.get_balance(ctx.user_id, ctx.guild_id)
        victim_balance = await economy.get_balance(victim.id, ctx.guild_id)
        min_balance = ROB["MIN_BALANCE_TO_ROB"]
        if robber_balance < min_balance:
            return Failure(
                f"You need at least {_money(min_balance)} to attempt a robbery.",
                waive_cooldown=True,
            )
        if victim_balance <= 0:
            return Failure(f"{victim.display_name} has no wallet money to steal.", waive_cooldown=True)
        required = max(min_balance, victim_balance * ROB["MIN_BALANCE_RATIO_BPS"] // BPS)
        if robber_balance < required:
            return Failure(
                f"You need at least {_money(required)} in your wallet to rob {victim.display_name}.",
                waive_cooldown=True,
            )

        now = _now_ms()
        protected_until = _as_timestamp(
            await jsonb_service.get_key(victim.id, ctx.guild_id, ROB["PROTECTION_KEY"])
        )
        if protected_until > now:
            embed = make_embed(
                "🛡️ Target Protected",
                f"{victim.display_name} was recently robbed and is protected for "
                f"{format_remaining((protected_until - now) / 1000)}.",
                "INFO",
            )
            await ctx.reply(embed=embed)
            return Failure(waive_cooldown=True)

        lock = await jsonb_service.acquire_timed_key(
            victim.id,
            ctx.guild_id,
            ROB["ATTEMPT_LOCK_KEY"],
            now + ROB["ATTEMPT_LOCK_SECONDS"] * 1000,
            now,
        )
        if not lock.acquired:
            embed = make_embed(
                "⏳ Target Already Being Robbed",
                f"{victim.display_name} is currently involved in another robbery attempt. "
                f"Try again in {format_remaining((lock.value - now) / 1000)}.",
                "INFO",
            )
            await ctx.reply(embed=embed)
            return Failure(waive_cooldown=True)

        chance = rob_success_chance(robber_balance, victim_balance)
        if random.random() < chance:
            return await self._succeed(ctx, victim, robber_balance, victim_balance, chance)
        return await self._fail(ctx, victim, robber_balance, chance)

    async def _succeed(self, ctx, victim, robber_balance, victim_balance, chance):
        percent = pick_weighted_percent(ROB_STEAL_TIERS)
        stolen = rob_stolen_amount(victim_balance, robber_balance, percent)
        try:
            transfer = await economy.transfer_balance(
                victim.id, ctx.user_id, ctx.guild_id, stolen, "rob-success", check_debt=False
            )
        except economy.InsufficientFunds:
            return Failure(f"{victim.display_name} slipped away with their wallet.")
        await jsonb_service.set_key(
            victim.id, ctx.guild_id, ROB["PROTECTION_KEY"], _now_ms() + ROB["PROTECTION_SECONDS"] * 1000
        )
        await self._notify_victim(victim, ctx, -stolen)

        embed = make_embed(
            "🦹 Robbery Success",
            f"You robbed {victim.display_name} and stole **{_money(stolen)}**.",
            "SUCCESS",
        )
        embed.add_field(name="Success Chance", value=format_percent(chance), inline=True)
        embed.add_field(name="Stolen %", value=format_percent(percent), inline=True)
        embed.add_field(name="Your New Wallet", value=_money(transfer.to_balance), inline=True)
        embed.add_field(
            name=f"{victim.display_name}'s Wallet", value=_money(transfer.from_balance), inline=True
        )
        embed.add_field(
            name="Target Protection",
            value=f"{victim.display_name} cannot be robbed for "
            f"{format_remaining(ROB['PROTECTION_SECONDS'])}.",
            inline=False,
        )
        await ctx.reply(embed=embed)
        return Ok()

    async def _fail(self, ctx, victim, robber_balance, chance):
        percent = pick_weighted_percent(ROB_FINE_TIERS)
        fine = rob_fine_amount(robber_balance, percent)
        try:
            transfer = await economy.transfer_balance(
                ctx.user_id, victim.id, ctx.guild_id, fine, "rob-fail", check_debt=False
            )
        except economy.InsufficientFunds:
            return Failure("You were caught, but your wallet was already empty.")
        await self._notify_victim(victim, ctx, fine)

        embed = make_embed(
            "🚨 Robbery Failed",
            f"You were caught. You paid **{_money(fine)}** to {victim.display_name}.",
            "ERROR",
        )
        embed.add_field(name="Success Chance", value=format_percent(chance), inline=True)
        embed.add_field(name="Fine %", value=format_percent(percent), inline=True)
        embed.add_field(name="Your New Wallet", value=_money(transfer.from_balance), inline=True)
        embed.add_field(
            name=f"{victim.display_name}'s Wallet", value=_money(transfer.to_balance), inline=True
        )
        await ctx.reply(embed=embed)
        return Ok()

    async def _notify_victim(self, victim: discord.Member, ctx: CommandContext, delta: int):
        lost = delta < 0
        embed = make_embed(
            "Robbery Update",
            f"{'💸' if lost else '💰'} You were involved in a robbery with "
            f"**{ctx.author.display_name}** in **{ctx.guild.name}**.\n"
            f"You **{'lost' if lost else 'gained'} {_money(abs(delta))}**.",
            "ERROR" if lost else "SUCCESS",
        )
        try:
            await victim.send(embed=embed)
        except discord.HTTPException as error:
            logger.debug("Could not DM robbery update to %s: %s", victim.id, error)


def _as_timestamp(raw) -> int:
    try:
        return int(raw or 0)
    except (TypeError, ValueError):
        return 0


# ---------- dig & hunt ----------


async def _death_loss(
    user_id: int, guild_id: int, cfg: dict, wallet: int, reason: str
) -> tuple[int, int, int]:
    """Take a random share of *wallet*; returns ``(percent, lost, wallet left)``.

    The debit is clamped in the same transaction that applies it, so a wallet
    that shrank since *wallet* was read loses what is left instead of failing.
    """

    percent = random.randint(cfg["DEATH_LOSS_MIN_PERCENT"], cfg["DEATH_LOSS_MAX_PERCENT"])
    lost = wallet * percent // 100
    if lost <= 0:
        return percent, 0, wallet
    update = await economy.update_balance(user_id, guild_id, -lost, reason, clamp=True)
    return percent, -update.change, update.balance


class ToolAdventureCommand(BaseCommand):
    """An outing that needs a tool from the shop.

    The tool may break, the user may die and lose part of the wallet, and
    otherwise the reward scales with wealth and level. Each subclass has its
    own action cooldown stored on the user row, separate from the command
    cooldown.
    """

    category = Category.ECONOMY
    cooldown = COOLDOWNS["ECONOMY"]

    settings: ClassVar[dict] = {}
    scaling: ClassVar[dict] = {}
    tool_title: ClassVar[str] = ""
    emoji: ClassVar[str] = ""
    verb: ClassVar[str] = ""
    death_title: ClassVar[str] = ""
    broke_text: ClassVar[str] = ""
    sites: ClassVar[Sequence[str]] = ()
    actions: ClassVar[Sequence[str]] = ()
    find_messages: ClassVar[Sequence[str]] = ()
    death_messages: ClassVar[Sequence[str]] = ()
    break_messages: ClassVar[Sequence[str]] = ()

    @property
    def tool_short(self) -> str:
        return self.tool_title.split()[-1]

    async def execute(self, ctx: CommandContext):
        if ctx.args:
            return UsageError(f"`{self.name}` takes no arguments.")

        tool = await items_service.get_item_by_name(self.settings["TOOL_ITEM_NAME"])
        if tool is None:
            return Failure(f"{self.tool_title} item is missing. Ask an admin to reload items.")
        if not await inventory_service.has_item(ctx.user_id, ctx.guild_id, tool.id):
            return Failure(
                f"You need a **{self.tool_title}** to {self.verb}. Buy one from `shop`.",
                waive_cooldown=True,
            )
        if await economy.get_balance(ctx.user_id, ctx.guild_id) <= 0:
            return Failure(f"You need money in your wallet to {self.verb}.", waive_cooldown=True)

        now = _now_ms()
        lock = await jsonb_service.acquire_timed_key(
            ctx.user_id,
            ctx.guild_id,
            self.settings["COOLDOWN_KEY"],
            now + self.settings["ACTION_COOLDOWN_SECONDS"] * 1000,
            now,
        )
        if not lock.acquired:
            embed = make_embed(
                f"⏰ {self.name.title()} Cooldown Active",
                f"You can {self.verb} again <t:{lock.value // 1000}:R> "
                f"({format_remaining((lock.value - now) / 1000)}).",
                "ERROR",
            )
            await ctx.reply(embed=embed)
            return Failure()

        bank = await economy.get_bank_data(ctx.user_id, ctx.guild_id)
        progression = await level_service.get_level_data(ctx.user_id, ctx.guild_id)
        site = random.choice(self.sites)
        action = random.choice(self.actions)
        died = roll_chance_bps(self.settings["DEATH_CHANCE_BPS"])
        broke_tool = roll_chance_bps(self.settings["BREAK_CHANCE_BPS"])

        if broke_tool:
            try:
                await inventory_service.remove_item(ctx.user_id, ctx.guild_id, tool.id)
            except inventory_service.InventoryError:
                logger.warning(
                    "Broken %s of %s in %s was already gone", tool.name, ctx.user_id, ctx.guild_id
                )
        status_field = f"{self.tool_short} Status"

        if died:
            percent, lost, wallet = await _death_loss(
                ctx.user_id, ctx.guild_id, self.settings, bank.wallet, f"{self.name}-death-loss"
            )
            embed = make_embed(
                self.death_title,
                f"{random.choice(self.death_messages)} You died and lost **{percent}%** of your wallet.",
                "ERROR",
            )
            embed.add_field(name="Wallet Lost", value=_money(lost), inline=True)
            embed.add_field(name="Wallet Left", value=_money(wallet), inline=True)
            status = (
                f"💥 {random.choice(self.break_messages)}"
                if broke_tool
                else f"✅ {self.tool_short} survived"
            )
            embed.add_field(name=status_field, value=status, inline=False)
        else:
            reward = 0
            if not broke_tool:
                base = random.randint(self.settings["REWARD_MIN"], self.settings["REWARD_MAX"])
                reward = compute_scaled_reward(base, bank.total, progression.level, self.scaling)
            update = None
            if reward > 0:
                update = await economy.update_balance(
                    ctx.user_id, ctx.guild_id, reward, f"{self.name}-reward", garnish=True
                )
            wallet = update.balance if update else bank.wallet
            text = self.broke_text if broke_tool else random.choice(self.find_messages)
            if update and update.garnished:
                text += f"\n⚠️ {_money(update.garnished)} went toward your overdue loan."
            embed = make_embed(
                f"{self.emoji} {self.name.title()} Result", text, "DEFAULT" if broke_tool else "SUCCESS"
            )
            embed.add_field(name="Reward", value=f"+{_money(reward)}", inline=True)
            embed.add_field(name="New Wallet", value=_money(wallet), inline=True)
            status = (
                f"💥 {random.choice(self.break_messages)}"
                if broke_tool
                else f"✅ {self.tool_short} held up"
            )
            embed.add_field(name=status_field, value=status, inline=False)

        await self._animate(ctx, site, action, embed)
        return Ok()

    async def _animate(self, ctx: CommandContext, site: str, action: str, final: discord.Embed):
        stage = make_embed(f"{self.emoji} {self.name.title()}", site)
        message = await ctx.reply(embed=stage)
        await _pause(0.85)
        stage.description = f"{site}\n{action}"
        await message.edit(embed=stage)
        await _pause(0.95)
        await message.edit(embed=final)


class DigCommand(ToolAdventureCommand):
    name = "dig"
    description = "Dig for valuables (requires a shovel)."
    usage = "dig"
    aliases = ("excavate",)

    settings = DIG
    scaling = DIG_SCALING
    tool_title = "Shovel"
    emoji = "⛏️"
    verb = "dig"
    death_title = "☠️ Digging Disaster"
    broke_text = "Your shovel broke before you found anything valuable."
    sites = DIG_SITES
    actions = DIG_ACTIONS
    find_messages = DIG_FIND_MESSAGES
    death_messages = DIG_DEATH_MESSAGES
    break_messages = DIG_BREAK_MESSAGES


class HuntCommand(ToolAdventureCommand):
    name = "hunt"
    description = "Go hunting for money (requires a hunting rifle)."
    usage = "hunt"
    aliases = ("hunting",)

    settings = HUNT
    scaling = HUNT_SCALING
    tool_title = "Hunting Rifle"
    emoji = "🏹"
    verb = "hunt"
    death_title = "☠️ Hunting Accident"
    broke_text = "Your rifle broke before you secured anything. You came back empty-handed."
    sites = HUNT_ENCOUNTERS
    actions = HUNT_ACTIONS
    find_messages = HUNT_LOOT_MESSAGES
    death_messages = HUNT_DEATH_MESSAGES
    break_messages = HUNT_BREAK_MESSAGES


# ---------- crime ----------

CRIME_SESSION = "crime"


@dataclass(frozen=True)
class Crime:
    id: str
    label: str
    emoji: str
    reward_min: int
    reward_max: int
    fail_chance_bps: int
    death_chance_bps: int
    fine_min_percent: int
    fine_max_percent: int
    site_text: str
    action_text: str
    success_text: str
    fail_text: str
    death_text: str


CRIME_LIST = [Crime(**spec) for spec in CRIMES]
CRIMES_BY_ID = {crime.id: crime for crime in CRIME_LIST}


def crime_severity(crime: Crime) -> float:
    """0..1, weighing the payout a little less than the risk."""
    low, high = CRIME["SEVERITY_REWARD_MIN"], CRIME["SEVERITY_REWARD_MAX"]
    reward_part = clamp((crime.reward_max - low) / (high - low), 0, 1)
    risk = clamp(crime.fail_chance_bps, 0, BPS) + clamp(crime.death_chance_bps, 0, BPS)
    risk_part = clamp(risk / 12_000, 0, 1)
    return clamp(reward_part * 0.45 + risk_part * 0.55, 0, 1)


def jail_chance_bps(crime: Crime) -> int:
    low, high = CRIME["JAIL_CHANCE_MIN_BPS"], CRIME["JAIL_CHANCE_MAX_BPS"]
    return low + math.floor((high - low) * crime_severity(crime))


def jail_minutes(crime: Crime, roll: float) -> int:
    """Map a uniform *roll* onto the jail range; worse crimes skew longer."""
    low, high = CRIME["JAIL_MIN_MINUTES"], CRIME["JAIL_MAX_MINUTES"]
    weight_low, weight_high = CRIME["JAIL_WEIGHT_MIN"], CRIME["JAIL_WEIGHT_MAX"]
    weight = weight_low + (weight_high - weight_low) * crime_severity(crime)
    picked = low + math.floor(roll ** (1 / weight) * (high - low + 1))
    return int(clamp(picked, low, high))


async def _jailed_until(user_id: int, guild_id: int) -> int:
    until = _as_timestamp(await jsonb_service.get_key(user_id, guild_id, CRIME["JAIL_UNTIL_KEY"]))
    return until if until > _now_ms() else 0


def _jail_embed(until_ms: int) -> discord.Embed:
    return make_embed(
        "🚔 You Are in Jail",
        f"You can't do that from a cell. You get out <t:{until_ms // 1000}:R>.",
        "ERROR",
    )


class CrimeView(ui.View):
    def __init__(self, choices: Sequence[Crime]):
        super().__init__(timeout=CRIME["SELECTION_TIMEOUT_SECONDS"])
        for crime in choices:
            self.add_item(
                ui.Button(
                    label=f"{crime.emoji} {crime.label}"[:80],
                    style=discord.ButtonStyle.danger,
                    custom_id=f"{CRIME_SESSION}:{crime.id}",
                )
            )


class CrimeCommand(BaseCommand):
    """Pick one of three random crimes; each has its own odds and payout.

    Runs in an exclusive session held until the user clicks a button or the
    offer expires. The choice itself is stored in the session store under the
    message id, so it can be resolved exactly once by any instance.
    """

    name = "crime"
    description = "Commit a risky crime for money."
    category = Category.ECONOMY
    usage = "crime"
    aliases = ("crimes",)
    cooldown = COOLDOWNS["ECONOMY"]
    exclusive_session = True
    session_ttl = CRIME["SELECTION_TIMEOUT_SECONDS"] + 20
    interaction_prefix = CRIME_SESSION

    def __init__(self, bot):
        super().__init__(bot)
        self._expiry_tasks: set[asyncio.Task] = set()

    async def execute(self, ctx: CommandContext):
        if ctx.args:
            return UsageError("`crime` takes no arguments.")

        jailed = await _jailed_until(ctx.user_id, ctx.guild_id)
        if jailed:
            await ctx.reply(embed=_jail_embed(jailed))
            return Failure(waive_cooldown=True)
        if await economy.get_balance(ctx.user_id, ctx.guild_id) <= 0:
            return Failure("You need money in your wallet to commit a crime.", waive_cooldown=True)

        now = _now_ms()
        lock = await jsonb_service.acquire_timed_key(
            ctx.user_id,
            ctx.guild_id,
            CRIME["COOLDOWN_KEY"],
            now + CRIME["ACTION_COOLDOWN_SECONDS"] * 1000,
            now,
        )
        if not lock.acquired:
            embed = make_embed(
                "⏰ Crime Cooldown Active",
                f"You can commit another crime <t:{lock.value // 1000}:R> "
                f"({format_remaining((lock.value - now) / 1000)}).",
                "ERROR",
            )
            await ctx.reply(embed=embed)
            return Failure()

        count = min(max(1, CRIME["CHOICES_PER_RUN"]), len(CRIME_LIST))
        choices = random.sample(CRIME_LIST, count)
        lines = [
            f"**{position}. {crime.emoji} {crime.label}**\n"
            f"Reward: {format_money(crime.reward_min)}-{_money(crime.reward_max)}\n"
            f"Caught: {format_percent(crime.fail_chance_bps / BPS)} | "
            f"Death: {format_percent(crime.death_chance_bps / BPS)}"
            for position, crime in enumerate(choices, start=1)
        ]
        embed = make_embed(
            "🚨 Choose Your Crime",
            "Pick **1** option below. You only get one attempt this round.\n\n" + "\n\n".join(lines),
        )
        embed.set_footer(text="Select one button to commit that crime")
        offer = await ctx.reply(embed=embed, view=CrimeView(choices))

        data = {
            "user": ctx.user_id,
            "guild": ctx.guild_id,
            "choices": [crime.id for crime in choices],
            "token": ctx.session_token,
        }
        await ctx.coordinator.set_session(
            CRIME_SESSION, offer.id, data, CRIME["SELECTION_TIMEOUT_SECONDS"] + 5
        )
        task = asyncio.create_task(self._expire(ctx.handler, offer, data))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)
        return Ok(keep_session=True)

    async def _expire(self, handler, offer: discord.Message, data: dict):
        await asyncio.sleep(CRIME["SELECTION_TIMEOUT_SECONDS"])
        try:
            claimed = await handler.coordinator.claim_session(CRIME_SESSION, offer.id)
            if claimed is None:
                return
            await offer.edit(
                embed=make_embed(
                    "⌛ Crime Cancelled", "You took too long to choose. The opportunity is gone."
                ),
                view=None,
            )
        except CoordinatorUnavailable as error:
            logger.warning("Could not expire crime %s, session store unavailable: %s", offer.id, error)
        except discord.HTTPException as error:
            logger.warning("Could not mark crime %s as expired: %s", offer.id, error)
        finally:
            await handler.release_session(data["user"], data["guild"], data["token"])

    async def handle_interaction(self, interaction: discord.Interaction, handler) -> None:
        crime_id = (interaction.data or {}).get("custom_id", "").split(":", 1)[-1]
        message = interaction.message
        data = await handler.coordinator.get_session(CRIME_SESSION, message.id)
        if data is None:
            await interaction.response.send_message(
                "That crime option is no longer valid. Run `crime` again.", ephemeral=True
            )
            return
        if interaction.user.id != data["user"]:
            await interaction.response.send_message("This crime isn't yours.", ephemeral=True)
            return
        crime = CRIMES_BY_ID.get(crime_id)
        if crime is None or crime_id not in data["choices"]:
            await interaction.response.send_message(
                "That crime option is no longer valid. Run `crime` again.", ephemeral=True
            )
            return

        claimed = await handler.coordinator.claim_session(CRIME_SESSION, message.id)
        if claimed is None:
            await interaction.response.send_message(
                "That crime option is no longer valid. Run `crime` again.", ephemeral=True
            )
            return

        try:
            stage = make_embed(f"🚨 Crime: {crime.label}", crime.site_text)
            await interaction.response.edit_message(embed=stage, view=None)
            final = await self._commit(claimed["user"], claimed["guild"], crime)
            await _pause(0.85)
            stage.description = f"{crime.site_text}\n{crime.action_text}"
            await message.edit(embed=stage)
            await _pause(0.95)
            await message.edit(embed=final)
        finally:
            await handler.release_session(claimed["user"], claimed["guild"], claimed["token"])

    async def _commit(self, user_id: int, guild_id: int, crime: Crime) -> discord.Embed:
        wallet = await economy.get_balance(user_id, guild_id)

        if roll_chance_bps(crime.death_chance_bps):
            percent, lost, left = await _death_loss(
                user_id, guild_id, CRIME, wallet, f"crime-{crime.id}-death-loss"
            )
            embed = make_embed(f"☠️ {crime.label} Failed", crime.death_text, "ERROR")
            embed.add_field(name="Loss", value=_money(lost), inline=True)
            embed.add_field(name="Wallet Left", value=_money(left), inline=True)
            embed.add_field(name="Outcome", value=f"Fatal ({percent}% wallet loss)", inline=False)
            return embed

        if roll_chance_bps(crime.fail_chance_bps):
            return await self._caught(user_id, guild_id, crime, wallet)

        bank = await economy.get_bank_data(user_id, guild_id)
        progression = await level_service.get_level_data(user_id, guild_id)
        base = random.randint(crime.reward_min, crime.reward_max)
        reward = compute_scaled_reward(base, bank.total, progression.level, CRIME_SCALING)
        update = await economy.update_balance(
            user_id, guild_id, reward, f"crime-{crime.id}-reward", garnish=True
        )
        text = crime.success_text
        if update.garnished:
            text += f"\n⚠️ {_money(update.garnished)} went toward your overdue loan."
        embed = make_embed(f"💸 {crime.label} Success", text, "SUCCESS")
        embed.add_field(name="Reward", value=f"+{_money(reward)}", inline=True)
        embed.add_field(name="New Wallet", value=_money(update.balance), inline=True)
        embed.add_field(name="Outcome", value="Clean getaway", inline=False)
        return embed

    async def _caught(self, user_id: int, guild_id: int, crime: Crime, wallet: int) -> discord.Embed:
        percent = random.randint(crime.fine_min_percent, crime.fine_max_percent)
        fine = wallet * percent // 100
        left = wallet
        if fine > 0:
            update = await economy.update_balance(
                user_id, guild_id, -fine, f"crime-{crime.id}-fine", clamp=True
            )
            fine, left = -update.change, update.balance

        jail_text = "You dodged jail this time."
        if roll_chance_bps(jail_chance_bps(crime)):
            minutes = jail_minutes(crime, random.random())
            until = _now_ms() + minutes * 60_000
            await jsonb_service.set_key(user_id, guild_id, CRIME["JAIL_UNTIL_KEY"], until)
            jail_text = f"You were jailed for {minutes}m. Out <t:{until // 1000}:R>."
            logger.info("User %s in %s jailed for %sm after %s", user_id, guild_id, minutes, crime.id)

        embed = make_embed(f"🚓 {crime.label} Busted", crime.fail_text, "WARNING")
        embed.add_field(name="Fine Paid", value=_money(fine), inline=True)
        embed.add_field(name="Wallet Left", value=_money(left), inline=True)
        embed.add_field(name="Outcome", value=f"Caught ({percent}% wallet fine)", inline=False)
        embed.add_field(name="Jail", value=jail_text, inline=False)
        return embed


# ---------- work ----------


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    aliases: tuple[str, ...]
    entry_fee: int
    cooldown_minutes: int
    acceptance: float
    pay: tuple[int, int]


JOBS = [Job(job_id, *spec) for job_id, spec in WORK_JOBS.items()]
DEFAULT_JOB = JOBS[0]

_JOB_LOOKUP: dict[str, Job] = {}
for _job in JOBS:
    _JOB_LOOKUP[_job.id] = _job
    _JOB_LOOKUP[_job.name.lower().replace(" ", "")] = _job
    for _alias in _job.aliases:
        _JOB_LOOKUP[_alias] = _job


def find_job(raw: str) -> Optional[Job]:
    return _JOB_LOOKUP.get(re.sub(r"[^a-z0-9]", "", raw.lower()))


def _format_minutes(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h" if rest == 0 else f"{hours}h {rest}m"


@dataclass
class WorkState:
    current_job: Job = DEFAULT_JOB
    last_work_at: Optional[datetime] = None
    works_since_change: int = 0

    @classmethod
    def from_raw(cls, raw) -> "WorkState":
        if not isinstance(raw, dict):
            return cls()
        job = find_job(str(raw.get("currentJob") or "")) or DEFAULT_JOB
        last = None
        if isinstance(raw.get("lastWorkAt"), str):
            try:
                last = datetime.fromisoformat(raw["lastWorkAt"])
            except ValueError:
                last = None
        try:
            works = max(0, int(raw.get("worksSinceJobChange", 0)))
        except (TypeError, ValueError):
            works = 0
        return cls(job, last, works)

    def to_raw(self) -> dict:
        return {
            "currentJob": self.current_job.id,
            "lastWorkAt": self.last_work_at.isoformat() if self.last_work_at else None,
            "worksSinceJobChange": self.works_since_change,
        }


class WorkCommand(BaseCommand):
    name = "work"
    description = "Work shifts, earn money and apply for better jobs."
    category = Category.ECONOMY
    usage = "work [jobs|<job>]"
    aliases = ("job",)
    # shifts have their own per-job cooldown
    cooldown = 0

    async def execute(self, ctx: CommandContext):
        text = " ".join(ctx.args).strip()
        if text.lower() in ("jobs", "list"):
            return await self._show_jobs(ctx)

        target = None
        if text:
            target = find_job(text)
            if target is None:
                return UsageError("Invalid job. Use `work jobs` to view options.")

        now = _now_ms()
        lock = await jsonb_service.acquire_timed_key(
            ctx.user_id, ctx.guild_id, WORK_LOCK_KEY, now + WORK_LOCK_SECONDS * 1000, now
        )
        if not lock.acquired:
            return Failure("Your previous work action is still processing. Try again in a moment.")
        try:
            state = WorkState.from_raw(
                await jsonb_service.get_key(ctx.user_id, ctx.guild_id, WORK_STATE_KEY)
            )
            if target is None:
                return await self._shift(ctx, state)
            return await self._apply(ctx, state, target)
        finally:
            await jsonb_service.set_key(ctx.user_id, ctx.guild_id, WORK_LOCK_KEY, 0)

    async def _show_jobs(self, ctx: CommandContext):
        state = WorkState.from_raw(
            await jsonb_service.get_key(ctx.user_id, ctx.guild_id, WORK_STATE_KEY)
        )
        lines = []
        for position, job in enumerate(JOBS, start=1):
            current = " (Current)" if job is state.current_job else ""
            acceptance = "Always" if job.acceptance >= 1 else f"{round(job.acceptance * 100)}%"
            lines.append(
                f"{position}. **{job.name}** (`{job.id}`){current}\n"
                f"Entry: {_money(job.entry_fee)} | Cooldown: {_format_minutes(job.cooldown_minutes)}\n"
                f"Acceptance: {acceptance} | Pay: {format_money(job.pay[0])}-{_money(job.pay[1])}"
            )
        progress = f"{state.works_since_change}/{WORKS_REQUIRED_FOR_JOB_CHANGE}"
        embed = make_embed(
            "💼 Job Board",
            f"Job-change progress: **{progress} works**\n"
            f"Need **{WORKS_REQUIRED_FOR_JOB_CHANGE} works + entry fee** to switch jobs.\n\n"
            + "\n\n".join(lines),
            "INFO",
        )
        embed.set_footer(text="Use work <job> to apply. The entry fee is paid on every application.")
        await ctx.reply(embed=embed)
        return Ok()

    async def _shift(self, ctx: CommandContext, state: WorkState):
        job = state.current_job
        now = datetime.now(timezone.utc)
        if state.last_work_at is not None:
            elapsed = (now - state.last_work_at).total_seconds()
            remaining = job.cooldown_minutes * 60 - elapsed
            if remaining > 0:
                embed = make_embed(
                    "⏰ Work Cooldown Active",
                    f"You are currently working as **{job.name}**.\n"
                    f"Try again <t:{int(now.timestamp() + remaining)}:R> ({format_remaining(remaining)}).",
                    "ERROR",
                )
                await ctx.reply(embed=embed)
                return Failure()

        payout = random.randint(*job.pay)
        update = await economy.update_balance(
            ctx.user_id, ctx.guild_id, payout, f"work-{job.id}", garnish=True
        )
        state.last_work_at = now
        state.works_since_change += 1
        await jsonb_service.set_key(ctx.user_id, ctx.guild_id, WORK_STATE_KEY, state.to_raw())

        text = f"You worked as **{job.name}** and earned **{_money(payout)}**."
        if update.garnished:
            text += f"\n⚠️ {_money(update.garnished)} went toward your overdue loan."
        embed = make_embed("💼 Shift Complete", text, "SUCCESS")
        embed.add_field(name="Job", value=job.name, inline=True)
        embed.add_field(name="New Balance", value=_money(update.balance), inline=True)
        embed.add_field(name="Next Work", value=f"In {_format_minutes(job.cooldown_minutes)}", inline=True)
        embed.add_field(
            name="Job Change Progress",
            value=f"{state.works_since_change}/{WORKS_REQUIRED_FOR_JOB_CHANGE}",
            inline=True,
        )
        await ctx.reply(embed=embed)
        return Ok()

    async def _apply(self, ctx: CommandContext, state: WorkState, target: Job):
        if target is state.current_job:
            return Failure(f"You are already working as a {target.name}.", waive_cooldown=True)

        balance = await economy.get_balance(ctx.user_id, ctx.guild_id)
        missing = []
        if state.works_since_change < WORKS_REQUIRED_FOR_JOB_CHANGE:
            missing.append(
                f"Work requirement: {state.works_since_change}/{WORKS_REQUIRED_FOR_JOB_CHANGE}"
            )
        if balance < target.entry_fee:
            missing.append(
                f"Money requirement: {format_money(balance)}/{_money(target.entry_fee)}"
            )
        if missing:
            return Failure(
                f"You cannot apply for **{target.name}** yet.\n" + "\n".join(missing),
                waive_cooldown=True,
            )

        if target.entry_fee > 0:
            try:
                update = await economy.update_balance(
                    ctx.user_id, ctx.guild_id, -target.entry_fee, "work-job-entry-fee"
                )
            except economy.InsufficientFunds as error:
                return Failure(f"❌ {error}", waive_cooldown=True)
            balance = update.balance

        accepted = random.random() < target.acceptance
        if accepted:
            await jsonb_service.set_key(
                ctx.user_id, ctx.guild_id, WORK_STATE_KEY, WorkState(target).to_raw()
            )
            embed = make_embed(
                "🎉 Application Accepted",
                f"You paid {_money(target.entry_fee)} and got hired as **{target.name}**.\n"
                "Your work cooldown has been reset.",
                "SUCCESS",
            )
            progress = 0
        else:
            embed = make_embed(
                "❌ Application Denied",
                f"You paid {_money(target.entry_fee)} to apply for **{target.name}**, but you were denied.\n"
                f"You keep your current job: **{state.current_job.name}**.",
                "WARNING",
            )
            progress = state.works_since_change
        embed.add_field(name="New Balance", value=_money(balance), inline=True)
        embed.add_field(
            name="Job Change Progress", value=f"{progress}/{WORKS_REQUIRED_FOR_JOB_CHANGE}", inline=True
        )
        await ctx.reply(embed=embed)
        return Ok()


def setup(handler):
    for command_cls in (RobCommand, DigCommand, HuntCommand, CrimeCommand, WorkCommand):
        handler.register(command_cls(handler.bot))
