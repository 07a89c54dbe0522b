import asyncio
import logging
import math
import random
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

import discord
from discord import ui

from commands.base import (
    BaseCommand,
    Category,
    CommandContext,
    CommandResult,
    Failure,
    Ok,
    UsageError,
    make_embed,
)
from config import (
    BLACKJACK,
    COINFLIP_PAYOUT,
    COOLDOWNS,
    CURRENCY,
    DICE_PAYOUT,
    ROULETTE_COLOR_PAYOUT,
    ROULETTE_NUMBER_PAYOUT,
    ROULETTE_RED_NUMBERS,
    SLOT_PAIR_PAYOUT,
    SLOT_REELS,
    SLOT_SPECIAL_TRIPLES,
    SLOT_TRIPLE_PAYOUT,
    WAGER_TIMEOUT_SECONDS,
)
from services import economy
from services.session_service import CoordinatorUnavailable
from utils import format_money, is_number, parse_positive_amount

logger = logging.getLogger(__name__)

WAGER_SESSION = "wager"


async def _pause(seconds: float):
    await asyncio.sleep(seconds)


def _money(amount: int) -> str:
    return f"{format_money(amount)} {CURRENCY}"


@dataclass
class RoundOutcome:
    payout: int
    embed: discord.Embed
    message: Optional[discord.Message] = None


class BetCommand(BaseCommand):
    """Shared bet flow: validate, take the bet, play, pay out.

    The bet is taken before the round is played. If anything goes wrong
    between taking the bet and paying out, the bet is refunded before the
    error propagates.
    """

    category = Category.GAMBLING
    cooldown = COOLDOWNS["GAMBLING"]
    exclusive_session = True
    reason: ClassVar[str] = ""

    @abstractmethod
    def parse_bet(self, args: list[str]) -> Union[tuple[Any, int], UsageError]:
        ...

    @abstractmethod
    async def play(self, ctx: CommandContext, pick: Any, bet: int) -> RoundOutcome:
        ...

    async def execute(self, ctx: CommandContext) -> CommandResult:
        parsed = self.parse_bet(ctx.args)
        if isinstance(parsed, UsageError):
            return parsed
        pick, bet = parsed

        balance = await economy.get_balance(ctx.user_id, ctx.guild_id)
        if balance < bet:
            return Failure(
                f"❌ Insufficient balance: you have {_money(balance)} but the bet is {_money(bet)}.",
                waive_cooldown=True,
            )
        try:
            await economy.update_balance(ctx.user_id, ctx.guild_id, -bet, f"{self.reason}-bet")
        except economy.InsufficientFunds as error:
            return Failure(f"❌ {error}", waive_cooldown=True)

        try:
            outcome = await self.play(ctx, pick, bet)
            if outcome.payout > 0:
                await economy.update_balance(
                    ctx.user_id, ctx.guild_id, outcome.payout, f"{self.reason}-win"
                )
        except (Exception, asyncio.CancelledError):
            await self._refund(ctx, bet)
            raise

        if outcome.message is not None:
            await outcome.message.edit(content=None, embed=outcome.embed)
        else:
            await ctx.reply(embed=outcome.embed)
        return Ok()

    async def _refund(self, ctx: CommandContext, bet: int):
        try:
            await economy.update_balance(ctx.user_id, ctx.guild_id, bet, f"{self.reason}-refund")
        except Exception:
            logger.exception(
                "Refund of %s for %s in %s (%s) failed",
                bet,
                ctx.user_id,
                ctx.guild_id,
                self.name,
            )
            raise
        logger.info("Refunded %s bet of %s to %s in %s", self.name, bet, ctx.user_id, ctx.guild_id)


def _parse_amount(raw: str) -> Union[int, UsageError]:
    try:
        return parse_positive_amount(raw, "Bet amount")
    except ValueError as error:
        return UsageError(str(error))


# ---------- dice ----------


class DiceCommand(BetCommand):
    name = "dice"
    description = f"Pick a number from 1 to 6. Hit it and win {DICE_PAYOUT}x your bet."
    usage = "dice <1-6> <bet>"
    aliases = ("d6", "dicebet")
    reason = "dice"

    def parse_bet(self, args):
        if len(args) != 2:
            return UsageError("Pick a number from 1 to 6 and a bet.")
        if not is_number(args[0]) or not 1 <= int(args[0]) <= 6:
            return UsageError("Your number must be between 1 and 6.")
        bet = _parse_amount(args[1])
        if isinstance(bet, UsageError):
            return bet
        return int(args[0]), bet

    async def play(self, ctx, pick, bet):
        message = await ctx.reply("🎲 Rolling the dice...")
        await _pause(1.0)
        roll = random.randint(1, 6)
        if roll == pick:
            payout = bet * DICE_PAYOUT
            embed = make_embed(
                "🎲 You hit it!",
                f"The die shows **{roll}**. You won **{_money(payout)}**!",
                "SUCCESS",
            )
        else:
            payout = 0
            embed = make_embed(
                "🎲 No luck",
                f"You picked **{pick}** but the die shows **{roll}**. You lost **{_money(bet)}**.",
                "ERROR",
            )
        return RoundOutcome(payout, embed, message)


# ---------- coinflip ----------

_COIN_SIDES = {"h": "heads", "heads": "heads", "t": "tails", "tails": "tails"}


class CoinflipCommand(BetCommand):
    name = "coinflip"
    description = "Call heads or tails and double your bet."
    usage = "coinflip <heads|tails> <bet>"
    aliases = ("cf", "flip")
    reason = "coinflip"

    def parse_bet(self, args):
        if len(args) != 2:
            return UsageError("Call heads or tails and place a bet.")
        side = _COIN_SIDES.get(args[0].lower())
        if side is None:
            return UsageError("Choose `heads` or `tails`.")
        bet = _parse_amount(args[1])
        if isinstance(bet, UsageError):
            return bet
        return side, bet

    async def play(self, ctx, pick, bet):
        message = await ctx.reply("🪙 Flipping the coin...")
        await _pause(1.0)
        side = random.choice(("heads", "tails"))
        if side == pick:
            payout = bet * COINFLIP_PAYOUT
            embed = make_embed(
                "🪙 Coinflip", f"It landed on **{side}**. You won **{_money(payout)}**!", "SUCCESS"
            )
        else:
            payout = 0
            embed = make_embed(
                "🪙 Coinflip", f"It landed on **{side}**. You lost **{_money(bet)}**.", "ERROR"
            )
        return RoundOutcome(payout, embed, message)


# ---------- roulette ----------


def roulette_color(number: int) -> str:
    if number == 0:
        return "green"
    return "red" if number in ROULETTE_RED_NUMBERS else "black"


def roulette_payout(bet_type: str, number: int, bet: int) -> int:
    """Return the total payout (stake included) for a finished spin."""

    if is_number(bet_type):
        return bet * ROULETTE_NUMBER_PAYOUT if int(bet_type) == number else 0
    if number == 0:
        return 0
    if bet_type in ("red", "black"):
        won = roulette_color(number) == bet_type
    elif bet_type == "even":
        won = number % 2 == 0
    elif bet_type == "odd":
        won = number % 2 == 1
    else:
        won = False
    return bet * ROULETTE_COLOR_PAYOUT if won else 0


_COLOR_EMOJI = {"red": "🔴", "black": "⚫", "green": "🟢"}


class RouletteCommand(BetCommand):
    name = "roulette"
    description = "Bet on red, black, even, odd or a single number (0-36)."
    usage = "roulette <red|black|even|odd|0-36> <bet>"
    aliases = ("roul",)
    reason = "roulette"

    def parse_bet(self, args):
        if len(args) != 2:
            return UsageError("Choose a bet type and an amount.")
        bet_type = args[0].lower()
        if is_number(bet_type):
            if not 0 <= int(bet_type) <= 36:
                return UsageError("Number bets must be between 0 and 36.")
            bet_type = str(int(bet_type))
        elif bet_type not in ("red", "black", "even", "odd"):
            return UsageError("Valid bets: `red`, `black`, `even`, `odd` or a number 0-36.")
        bet = _parse_amount(args[1])
        if isinstance(bet, UsageError):
            return bet
        return bet_type, bet

    async def play(self, ctx, pick, bet):
        message = await ctx.reply("🎡 The wheel is spinning...")
        for delay in (0.7, 0.7):
            await _pause(delay)
            teaser = random.randint(0, 36)
            await message.edit(
                content=f"🎡 Spinning... {_COLOR_EMOJI[roulette_color(teaser)]} {teaser}"
            )
        await _pause(0.5)

        number = random.randint(0, 36)
        color = roulette_color(number)
        payout = roulette_payout(pick, number, bet)
        landed = f"The ball landed on {_COLOR_EMOJI[color]} **{number}** ({color})."
        if payout:
            embed = make_embed(
                "🎡 Roulette", f"{landed}\nYour `{pick}` bet won **{_money(payout)}**!", "SUCCESS"
            )
        else:
            embed = make_embed(
                "🎡 Roulette", f"{landed}\nYour `{pick}` bet lost **{_money(bet)}**.", "ERROR"
            )
        return RoundOutcome(payout, embed, message)


# ---------- slots ----------


def slot_multiplier(reels: list[str]) -> float:
    first, second, third = reels
    if first == second == third:
        return SLOT_SPECIAL_TRIPLES.get(first, SLOT_TRIPLE_PAYOUT)
    if first == second or second == third or first == third:
        return SLOT_PAIR_PAYOUT
    return 0.0


class SlotsCommand(BetCommand):
    name = "slots"
    description = "Spin three reels. Pairs and triples pay out."
    usage = "slots <bet>"
    reason = "slots"

    def parse_bet(self, args):
        if len(args) != 1:
            return UsageError("Place a bet to spin the reels.")
        bet = _parse_amount(args[0])
        if isinstance(bet, UsageError):
            return bet
        return None, bet

    async def play(self, ctx, pick, bet):
        message = await ctx.reply("🎰 | ❓ | ❓ | ❓")
        reels = [random.choice(SLOT_REELS) for _ in range(3)]
        for shown in (1, 2):
            await _pause(0.6)
            hidden = ["❓"] * (3 - shown)
            await message.edit(content="🎰 | " + " | ".join(reels[:shown] + hidden))

        multiplier = slot_multiplier(reels)
        payout = math.floor(bet * multiplier)
        line = " | ".join(reels)
        if payout:
            embed = make_embed(
                "🎰 Slots", f"{line}\n\n**{multiplier:g}x**! You won **{_money(payout)}**.", "SUCCESS"
            )
        else:
            embed = make_embed("🎰 Slots", f"{line}\n\nNo match. You lost **{_money(bet)}**.", "ERROR")
        return RoundOutcome(payout, embed, message)


# ---------- wager ----------


class WagerView(ui.View):
    def __init__(self):
        super().__init__(timeout=WAGER_TIMEOUT_SECONDS)
        self.add_item(
            ui.Button(
                label="Accept",
                emoji="✅",
                style=discord.ButtonStyle.success,
                custom_id=f"{WAGER_SESSION}:accept",
            )
        )
        self.add_item(
            ui.Button(
                label="Decline",
                emoji="❌",
                style=discord.ButtonStyle.danger,
                custom_id=f"{WAGER_SESSION}:decline",
            )
        )


class WagerCommand(BaseCommand):
    """Challenge another member to a coin toss for the same stake.

    The challenger keeps an exclusive session until the target answers or
    the offer times out. The offer itself lives in the session store keyed by
    the message id, so whichever instance receives the button click can
    resolve it, and claiming the offer is atomic.
    """

    name = "wager"
    description = "Wager against another user. Winner takes the stake."
    category = Category.GAMBLING
    usage = "wager <@user> <amount>"
    aliases = ("bet", "gamble")
    cooldown = COOLDOWNS["ECONOMY"]
    exclusive_session = True
    session_ttl = WAGER_TIMEOUT_SECONDS + 15
    interaction_prefix = WAGER_SESSION

    def __init__(self, bot):
        super().__init__(bot)
        self._expiry_tasks: set[asyncio.Task] = set()

    async def execute(self, ctx: CommandContext) -> CommandResult:
        if len(ctx.args) != 2:
            return UsageError("Mention a user and an amount to wager.")
        target = ctx.member_from_arg(ctx.args[0])
        if target is None:
            return UsageError("Please mention a valid user to wager with.")
        try:
            amount = parse_positive_amount(ctx.args[1], "Wager amount")
        except ValueError as error:
            return UsageError(str(error))
        if target.id == ctx.user_id:
            return Failure("❌ You can't wager with yourself!", waive_cooldown=True)
        if target.bot:
            return Failure("❌ Bots don't gamble.", waive_cooldown=True)

        challenger_balance = await economy.get_balance(ctx.user_id, ctx.guild_id)
        if challenger_balance < amount:
            return Failure(
                f"❌ You don't have enough! Balance: {_money(challenger_balance)}, required: {_money(amount)}.",
                waive_cooldown=True,
            )
        target_balance = await economy.get_balance(target.id, ctx.guild_id)
        if target_balance < amount:
            return Failure(
                f"❌ {target.display_name} doesn't have enough! Balance: {_money(target_balance)}.",
                waive_cooldown=True,
            )

        embed = make_embed(
            "🎲 Wager Request",
            f"{target.mention}, do you accept the wager of **{_money(amount)}** from {ctx.author.mention}?",
        )
        embed.add_field(name="Amount", value=_money(amount), inline=True)
        embed.add_field(name="Challenger", value=ctx.author.display_name, inline=True)
        embed.set_footer(text=f"Expires in {WAGER_TIMEOUT_SECONDS} seconds")
        offer = await ctx.reply(embed=embed, view=WagerView())

        data = {
            "challenger": ctx.user_id,
            "target": target.id,
            "guild": ctx.guild_id,
            "amount": amount,
            "token": ctx.session_token,
        }
        await ctx.coordinator.set_session(
            WAGER_SESSION, offer.id, data, WAGER_TIMEOUT_SECONDS + 5
        )
        task = asyncio.create_task(self._expire(ctx.handler, offer, data))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)
        return Ok(keep_session=True)

    async def _expire(self, handler, offer: discord.Message, data: dict):
        await asyncio.sleep(WAGER_TIMEOUT_SECONDS)
        try:
            claimed = await handler.coordinator.claim_session(WAGER_SESSION, offer.id)
            if claimed is None:
                return
            await offer.edit(
                embed=make_embed("⏰ Wager Timed Out", "The wager request has expired.", "ERROR"),
                view=None,
            )
        except CoordinatorUnavailable as error:
            logger.warning("Could not expire wager %s, session store unavailable: %s", offer.id, error)
        except discord.HTTPException as error:
            logger.warning("Could not mark wager %s as expired: %s", offer.id, error)
        finally:
            await handler.release_session(data["challenger"], data["guild"], data["token"])

    async def handle_interaction(self, interaction: discord.Interaction, handler) -> None:
        action = (interaction.data or {}).get("custom_id", "").split(":", 1)[-1]
        message_id = interaction.message.id
        data = await handler.coordinator.get_session(WAGER_SESSION, message_id)
        if data is None:
            await interaction.response.send_message(
                "This wager is no longer active.", ephemeral=True
            )
            return
        if interaction.user.id != data["target"]:
            await interaction.response.send_message("This wager isn't for you.", ephemeral=True)
            return

        claimed = await handler.coordinator.claim_session(WAGER_SESSION, message_id)
        if claimed is None:
            await interaction.response.send_message(
                "This wager is no longer active.", ephemeral=True
            )
            return

        try:
            if action == "decline":
                embed = make_embed(
                    "❌ Wager Declined", f"<@{claimed['target']}> declined the wager.", "ERROR"
                )
            else:
                embed = await self._settle(claimed)
            await interaction.response.edit_message(embed=embed, view=None)
        finally:
            await handler.release_session(claimed["challenger"], claimed["guild"], claimed["token"])

    async def _settle(self, data: dict) -> discord.Embed:
        challenger, target, amount = data["challenger"], data["target"], data["amount"]
        if random.random() < 0.5:
            winner, loser = challenger, target
        else:
            winner, loser = target, challenger
        try:
            await economy.transfer_balance(
                loser, winner, data["guild"], amount, "wager", check_debt=False
            )
        except economy.InsufficientFunds:
            return make_embed(
                "❌ Wager Cancelled",
                f"<@{loser}> can no longer cover the stake of **{_money(amount)}**.",
                "ERROR",
            )
        embed = make_embed(
            "🎉 Wager Result", f"<@{winner}> won **{_money(amount)}** from <@{loser}>!", "SUCCESS"
        )
        embed.add_field(name="Amount Won", value=_money(amount), inline=True)
        return embed


# ---------- blackjack ----------

BLACKJACK_SESSION = "blackjack"

Hand = list[list[str]]


def draw_card() -> list[str]:
    return [random.choice(BLACKJACK["RANKS"]), random.choice(BLACKJACK["SUITS"])]


def hand_value(hand: Hand) -> int:
    """Best total for *hand*; aces count 11 until that would bust."""
    value = 0
    aces = 0
    for rank, _ in hand:
        if rank == "A":
            aces += 1
            value += 11
        elif rank in ("J", "Q", "K"):
            value += 10
        else:
            value += int(rank)
    while value > 21 and aces:
        value -= 10
        aces -= 1
    return value


def format_hand(hand: Hand, hide_hole: bool = False) -> str:
    if hide_hole:
        rank, suit = hand[0]
        return f"{rank}{suit} 🂠"
    return " ".join(f"{rank}{suit}" for rank, suit in hand) + f" ({hand_value(hand)})"


def stand_result(player_value: int, dealer_value: int) -> str:
    if dealer_value > 21 or player_value > dealer_value:
        return "win"
    if dealer_value > player_value:
        return "loss"
    return "push"


class BlackjackView(ui.View):
    def __init__(self):
        super().__init__(timeout=BLACKJACK["TIMEOUT_SECONDS"])
        self.add_item(
            ui.Button(
                label="Hit",
                emoji="🃏",
                style=discord.ButtonStyle.primary,
                custom_id=f"{BLACKJACK_SESSION}:hit",
            )
        )
        self.add_item(
            ui.Button(
                label="Stand",
                emoji="✋",
                style=discord.ButtonStyle.danger,
                custom_id=f"{BLACKJACK_SESSION}:stand",
            )
        )


def _table_embed(game: dict, text: str, color: str = "DEFAULT", reveal: bool = True) -> discord.Embed:
    embed = make_embed("🃏 Blackjack", f"💰 Bet: {_money(game['bet'])}\n{text}".rstrip(), color)
    embed.add_field(name="👤 Your Hand", value=format_hand(game["player"]), inline=True)
    embed.add_field(
        name="🎩 Dealer's Hand", value=format_hand(game["dealer"], hide_hole=not reveal), inline=True
    )
    return embed


class BlackjackCommand(BaseCommand):
    """Blackjack against the dealer with Hit and Stand buttons.

    The bet is taken when the hand is dealt. The game lives in the session
    store under the message id; every click claims it, so two clicks can
    never both act on the same state. A game nobody finishes stands
    automatically when the timer runs out.
    """

    name = "blackjack"
    description = "Play blackjack against the dealer."
    category = Category.GAMBLING
    usage = "blackjack <bet>"
    aliases = ("bj", "21")
    cooldown = COOLDOWNS["GAMBLING"]
    exclusive_session = True
    session_ttl = BLACKJACK["TIMEOUT_SECONDS"] + 20
    interaction_prefix = BLACKJACK_SESSION

    def __init__(self, bot):
        super().__init__(bot)
        self._expiry_tasks: set[asyncio.Task] = set()

    async def execute(self, ctx: CommandContext) -> CommandResult:
        if len(ctx.args) != 1:
            return UsageError("Please provide an amount to bet.")
        bet = _parse_amount(ctx.args[0])
        if isinstance(bet, UsageError):
            return bet

        balance = await economy.get_balance(ctx.user_id, ctx.guild_id)
        if balance < bet:
            return Failure(
                f"❌ Insufficient balance: you have {_money(balance)} but the bet is {_money(bet)}.",
                waive_cooldown=True,
            )
        try:
            await economy.update_balance(ctx.user_id, ctx.guild_id, -bet, "blackjack-bet")
        except economy.InsufficientFunds as error:
            return Failure(f"❌ {error}", waive_cooldown=True)

        game = {
            "user": ctx.user_id,
            "guild": ctx.guild_id,
            "bet": bet,
            "player": [draw_card(), draw_card()],
            "dealer": [draw_card(), draw_card()],
            "token": ctx.session_token,
        }
        if hand_value(game["player"]) == 21:
            await ctx.reply(embed=await self._natural(game))
            return Ok()
        try:
            table = await ctx.reply(
                embed=_table_embed(game, "Hit or stand?", reveal=False), view=BlackjackView()
            )
            await ctx.coordinator.set_session(
                BLACKJACK_SESSION, table.id, game, BLACKJACK["TIMEOUT_SECONDS"] + 5
            )
        except (Exception, asyncio.CancelledError):
            await economy.update_balance(ctx.user_id, ctx.guild_id, bet, "blackjack-refund")
            logger.info("Refunded blackjack bet of %s to %s in %s", bet, ctx.user_id, ctx.guild_id)
            raise

        task = asyncio.create_task(self._expire(ctx.handler, table, game))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)
        return Ok(keep_session=True)

    async def _natural(self, game: dict) -> discord.Embed:
        bet = game["bet"]
        if hand_value(game["dealer"]) == 21:
            await economy.update_balance(game["user"], game["guild"], bet, "blackjack-push")
            return _table_embed(game, "🤝 Blackjack! Push, your bet is returned.", "WARNING")
        winnings = math.floor(bet * BLACKJACK["NATURAL_PAYOUT"])
        await economy.update_balance(game["user"], game["guild"], bet + winnings, "blackjack-win")
        return _table_embed(game, f"🎉 Blackjack! You win **{_money(winnings)}**!", "SUCCESS")

    async def _finish(self, game: dict) -> discord.Embed:
        """Dealer draws to the stand value, then the bet is settled."""
        dealer = game["dealer"]
        while hand_value(dealer) < BLACKJACK["DEALER_STAND_VALUE"]:
            dealer.append(draw_card())

        player_value, dealer_value = hand_value(game["player"]), hand_value(dealer)
        bet = game["bet"]
        result = stand_result(player_value, dealer_value)
        if result == "win":
            await economy.update_balance(game["user"], game["guild"], bet * 2, "blackjack-win")
            text = "🎉 Dealer busts!" if dealer_value > 21 else "🎉 You beat the dealer!"
            return _table_embed(game, f"{text} You win **{_money(bet)}**!", "SUCCESS")
        if result == "push":
            await economy.update_balance(game["user"], game["guild"], bet, "blackjack-push")
            return _table_embed(game, "🤝 Push, your bet is returned.", "WARNING")
        return _table_embed(game, f"💀 Dealer wins! You lose **{_money(bet)}**.", "ERROR")

    async def _expire(self, handler, table: discord.Message, game: dict):
        await asyncio.sleep(BLACKJACK["TIMEOUT_SECONDS"])
        try:
            claimed = await handler.coordinator.claim_session(BLACKJACK_SESSION, table.id)
            if claimed is None:
                # a hit may be writing the game back right now
                await asyncio.sleep(BLACKJACK["CLAIM_GRACE_SECONDS"])
                claimed = await handler.coordinator.claim_session(BLACKJACK_SESSION, table.id)
            if claimed is None:
                return
            embed = await self._finish(claimed)
            embed.set_footer(text="⏰ Time ran out, you stood automatically")
            await table.edit(embed=embed, view=None)
        except CoordinatorUnavailable as error:
            logger.warning("Could not expire blackjack %s, session store unavailable: %s", table.id, error)
        except discord.HTTPException as error:
            logger.warning("Could not show blackjack %s result: %s", table.id, error)
        finally:
            await handler.release_session(game["user"], game["guild"], game["token"])

    async def handle_interaction(self, interaction: discord.Interaction, handler) -> None:
        action = (interaction.data or {}).get("custom_id", "").split(":", 1)[-1]
        message_id = interaction.message.id
        game = await handler.coordinator.get_session(BLACKJACK_SESSION, message_id)
        if game is None:
            await interaction.response.send_message("This game is no longer active.", ephemeral=True)
            return
        if interaction.user.id != game["user"]:
            await interaction.response.send_message("This isn't your game.", ephemeral=True)
            return

        claimed = await handler.coordinator.claim_session(BLACKJACK_SESSION, message_id)
        if claimed is None:
            await interaction.response.send_message("This game is no longer active.", ephemeral=True)
            return

        if action == "hit":
            card = draw_card()
            claimed["player"].append(card)
            drew = f"🃏 You drew {card[0]}{card[1]}."
            if hand_value(claimed["player"]) <= 21:
                try:
                    await handler.coordinator.set_session(
                        BLACKJACK_SESSION, message_id, claimed, BLACKJACK["TIMEOUT_SECONDS"] + 5
                    )
                except CoordinatorUnavailable:
                    await economy.update_balance(
                        claimed["user"], claimed["guild"], claimed["bet"], "blackjack-refund"
                    )
                    await handler.release_session(claimed["user"], claimed["guild"], claimed["token"])
                    raise
                await interaction.response.edit_message(
                    embed=_table_embed(claimed, f"{drew}\nHit or stand?", reveal=False)
                )
                return
            try:
                embed = _table_embed(
                    claimed, f"{drew}\n💥 Bust! You lose **{_money(claimed['bet'])}**.", "ERROR"
                )
                await interaction.response.edit_message(embed=embed, view=None)
            finally:
                await handler.release_session(claimed["user"], claimed["guild"], claimed["token"])
            return

        try:
            embed = await self._finish(claimed)
            await interaction.response.edit_message(embed=embed, view=None)
        finally:
            await handler.release_session(claimed["user"], claimed["guild"], claimed["token"])


def setup(handler):
    for command_cls in (
        DiceCommand,
        CoinflipCommand,
        RouletteCommand,
        SlotsCommand,
        BlackjackCommand,
        WagerCommand,
    ):
        handler.register(command_cls(handler.bot))
