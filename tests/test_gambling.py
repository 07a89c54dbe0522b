"""
Bet flow tests for the single player games.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from command_handler import CommandHandler
from commands import gambling_commands
from commands.base import CommandContext, Failure, Ok, UsageError
from commands.gambling_commands import (
    CoinflipCommand,
    DiceCommand,
    RouletteCommand,
    roulette_color,
    roulette_payout,
    slot_multiplier,
)

from conftest import GUILD_ID, USER_ID, make_message, make_sent_message, reply_texts


@pytest.fixture
def dice(handler, bot):
    return handler.register(DiceCommand(bot))


@pytest.fixture
def no_pause(monkeypatch):
    pause = AsyncMock()
    monkeypatch.setattr(gambling_commands, "_pause", pause)
    return pause


def fixed_roll(monkeypatch, value):
    monkeypatch.setattr(gambling_commands.random, "randint", lambda low, high: value)


def bet_message(handler, author, text):
    message = make_message(f"{handler.prefix}{text}", author)
    sent = make_sent_message()
    message.reply = AsyncMock(return_value=sent)
    return message, sent


class TestDice:
    """The dice game through the dispatcher."""

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_rejected_without_charge(
        self, handler, dice, author, fake_economy, coordinator
    ):
        fake_economy.set(USER_ID, 50)
        message = make_message(f"{handler.prefix}dice 3 100", author)
        result = await handler.handle_message(message)

        assert isinstance(result, Failure)
        assert reply_texts(message) == [
            "❌ Insufficient balance: you have 50 cm but the bet is 100 cm."
        ]
        assert fake_economy.ledger == []
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "dice", 5)).reserved

    @pytest.mark.asyncio
    async def test_win_pays_six_times(self, handler, dice, author, fake_economy, no_pause, monkeypatch):
        fake_economy.set(USER_ID, 1_000)
        fixed_roll(monkeypatch, 3)
        message, sent = bet_message(handler, author, "dice 3 100")

        assert isinstance(await handler.handle_message(message), Ok)
        assert fake_economy.balance(USER_ID) == 1_500
        assert fake_economy.reasons() == ["dice-bet", "dice-win"]
        assert sent.edit.await_args.kwargs["embed"].title == "🎲 You hit it!"

    @pytest.mark.asyncio
    async def test_loss_keeps_the_bet(self, handler, dice, author, fake_economy, no_pause, monkeypatch):
        fake_economy.set(USER_ID, 1_000)
        fixed_roll(monkeypatch, 5)
        message, sent = bet_message(handler, author, "dice 3 100")

        await handler.handle_message(message)
        assert fake_economy.balance(USER_ID) == 900
        assert fake_economy.reasons() == ["dice-bet"]
        assert sent.edit.await_args.kwargs["embed"].title == "🎲 No luck"

    @pytest.mark.asyncio
    async def test_failure_mid_round_refunds_and_releases(
        self, handler, dice, author, fake_economy, coordinator, monkeypatch
    ):
        fake_economy.set(USER_ID, 1_000)
        monkeypatch.setattr(gambling_commands, "_pause", AsyncMock(side_effect=RuntimeError("gateway")))
        message, _ = bet_message(handler, author, "dice 3 100")

        result = await handler.handle_message(message)

        assert isinstance(result, Failure)
        assert fake_economy.balance(USER_ID) == 1_000
        assert fake_economy.reasons() == ["dice-bet", "dice-refund"]
        assert await coordinator.get_exclusive_session(USER_ID, GUILD_ID) is None
        assert message.reply.await_args.kwargs["embed"].title == "❌ Error"

    @pytest.mark.asyncio
    async def test_cancellation_mid_round_refunds(self, handler, dice, author, fake_economy, monkeypatch):
        fake_economy.set(USER_ID, 1_000)
        monkeypatch.setattr(
            gambling_commands, "_pause", AsyncMock(side_effect=asyncio.CancelledError())
        )
        message, _ = bet_message(handler, author, "dice 3 100")
        ctx = CommandContext(message, ["3", "100"], handler, "dice")

        with pytest.raises(asyncio.CancelledError):
            await dice.execute(ctx)
        assert fake_economy.balance(USER_ID) == 1_000
        assert fake_economy.reasons() == ["dice-bet", "dice-refund"]

    @pytest.mark.parametrize(
        "args",
        [["7", "100"], ["0", "100"], ["x", "100"], ["3", "-5"], ["3", "abc"], ["3"], ["²", "100"], ["3", "²"]],
    )
    def test_bad_arguments_are_usage_errors(self, bot, args):
        assert isinstance(DiceCommand(bot).parse_bet(args), UsageError)

    def test_amounts_accept_separators(self, bot):
        assert DiceCommand(bot).parse_bet(["6", "1,000"]) == (6, 1_000)

    @pytest.mark.asyncio
    async def test_superscript_digit_is_a_usage_error(
        self, handler, dice, author, fake_economy, coordinator
    ):
        fake_economy.set(USER_ID, 1_000)
        message = make_message(f"{handler.prefix}dice ² 100", author)

        result = await handler.handle_message(message)

        assert isinstance(result, UsageError)
        assert fake_economy.ledger == []
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "dice", 5)).reserved


class TestCoinflip:
    """Coinflip argument handling and payout."""

    def test_short_sides(self, bot):
        command = CoinflipCommand(bot)
        assert command.parse_bet(["h", "10"]) == ("heads", 10)
        assert command.parse_bet(["TAILS", "10"]) == ("tails", 10)
        assert isinstance(command.parse_bet(["edge", "10"]), UsageError)

    @pytest.mark.asyncio
    async def test_win_doubles_bet(self, bot, coordinator, author, fake_economy, no_pause, monkeypatch):
        handler = CommandHandler(bot, coordinator, award_xp=False)
        handler.register(CoinflipCommand(bot))
        fake_economy.set(USER_ID, 100)
        monkeypatch.setattr(gambling_commands.random, "choice", lambda options: "heads")
        message, _ = bet_message(handler, author, "cf h 40")

        await handler.handle_message(message)
        assert fake_economy.balance(USER_ID) == 140


class TestRouletteMath:
    """Roulette payouts include the stake."""

    def test_colors(self):
        assert roulette_color(0) == "green"
        assert roulette_color(1) == "red"
        assert roulette_color(2) == "black"

    def test_number_bet(self):
        assert roulette_payout("17", 17, 10) == 360
        assert roulette_payout("17", 18, 10) == 0

    def test_even_money_bets(self):
        assert roulette_payout("red", 1, 10) == 20
        assert roulette_payout("black", 1, 10) == 0
        assert roulette_payout("even", 2, 10) == 20
        assert roulette_payout("odd", 2, 10) == 0

    def test_zero_loses_outside_bets(self):
        for bet_type in ("red", "black", "even", "odd"):
            assert roulette_payout(bet_type, 0, 10) == 0
        assert roulette_payout("0", 0, 10) == 360

    def test_superscript_digits_are_not_number_bets(self, bot):
        command = RouletteCommand(bot)
        assert isinstance(command.parse_bet(["²", "100"]), UsageError)
        assert isinstance(command.parse_bet(["1²", "100"]), UsageError)
        assert command.parse_bet(["07", "100"]) == ("7", 100)
        assert roulette_payout("²", 2, 10) == 0

    @pytest.mark.asyncio
    async def test_superscript_roulette_bet_is_a_usage_error(
        self, handler, bot, author, fake_economy, coordinator
    ):
        handler.register(RouletteCommand(bot))
        fake_economy.set(USER_ID, 1_000)
        message = make_message(f"{handler.prefix}roulette ² 100", author)

        result = await handler.handle_message(message)

        assert isinstance(result, UsageError)
        assert fake_economy.ledger == []
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "roulette", 5)).reserved


class TestSlotMath:
    """Reel multipliers."""

    def test_special_triples(self):
        assert slot_multiplier(["💎", "💎", "💎"]) == 5.0
        assert slot_multiplier(["⭐", "⭐", "⭐"]) == 3.0

    def test_plain_triple_and_pairs(self):
        assert slot_multiplier(["🍒", "🍒", "🍒"]) == 2.0
        assert slot_multiplier(["🍒", "🍋", "🍒"]) == 1.5
        assert slot_multiplier(["🍒", "🍋", "🍇"]) == 0.0
