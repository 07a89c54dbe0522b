"""
Wallet commands and the admin tools that adjust them.
"""

from unittest.mock import AsyncMock

import discord
import pytest

from commands import admin_commands, economy_commands
from commands.base import Failure, Ok
from services import economy

from conftest import GUILD_ID, OTHER_ID, USER_ID, make_message, reply_texts


@pytest.fixture
def wallet(handler):
    economy_commands.setup(handler)
    admin_commands.setup(handler)
    return handler


class TestTransfer:
    """Sending money to another member."""

    @pytest.mark.asyncio
    async def test_moves_money(self, wallet, author, other, fake_economy):
        fake_economy.set(USER_ID, 500)
        message = make_message(f"{wallet.prefix}give {other.mention} 100", author, mentions=[other])
        assert isinstance(await wallet.handle_message(message), Ok)

        assert fake_economy.balance(USER_ID) == 400
        assert fake_economy.balance(OTHER_ID) == 100
        assert reply_texts(message) == [
            f"✅ Sent **100 cm** to {other.mention}. Your wallet: **400 cm**."
        ]

    @pytest.mark.asyncio
    async def test_insufficient_funds_waives_cooldown(self, wallet, author, other, fake_economy, coordinator):
        fake_economy.set(USER_ID, 5)
        message = make_message(f"{wallet.prefix}pay {other.mention} 100", author, mentions=[other])
        result = await wallet.handle_message(message)

        assert result == Failure("❌ Insufficient funds.", waive_cooldown=True)
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "transfer", 3)).reserved

    @pytest.mark.asyncio
    async def test_rejects_self(self, wallet, author, fake_economy):
        message = make_message(f"{wallet.prefix}transfer {author.mention} 1", author, mentions=[author])
        await wallet.handle_message(message)
        assert reply_texts(message) == ["❌ You can't transfer money to yourself."]


class TestDaily:
    """The daily reward."""

    @pytest.mark.asyncio
    async def test_already_claimed(self, wallet, author, monkeypatch):
        async def claimed_recently(user_id, guild_id, now_ms):
            return economy.DailyClaim(False, available_at_ms=now_ms + 3_600_000)

        monkeypatch.setattr(economy, "claim_daily", claimed_recently)
        message = make_message(f"{wallet.prefix}daily", author)
        await wallet.handle_message(message)
        assert reply_texts(message) == ["⏳ You can claim again in **1h 0m**."]

    @pytest.mark.asyncio
    async def test_claim_mentions_garnish(self, wallet, author, monkeypatch):
        monkeypatch.setattr(
            economy, "claim_daily", AsyncMock(return_value=economy.DailyClaim(True, 20, garnished=5))
        )
        message = make_message(f"{wallet.prefix}daily", author)
        await wallet.handle_message(message)
        text = reply_texts(message)[0]
        assert "You now have **20 cm**" in text
        assert "5 cm went toward your overdue loan" in text


class TestAdminCommands:
    """Manage Guild tools."""

    @pytest.mark.asyncio
    async def test_addmoney_requires_manage_guild(self, wallet, author, other, fake_economy):
        message = make_message(f"{wallet.prefix}addmoney {other.mention} 100", author, mentions=[other])
        await wallet.handle_message(message)
        assert reply_texts(message) == [
            "You need the following permissions to use this command: Manage Guild"
        ]
        assert fake_economy.ledger == []

    @pytest.mark.asyncio
    async def test_addmoney_and_remove(self, wallet, author, other, fake_economy, coordinator):
        author.guild_permissions = discord.Permissions(manage_guild=True)
        add = make_message(f"{wallet.prefix}addmoney {other.mention} 100", author, mentions=[other])
        await wallet.handle_message(add)
        await coordinator.clear_cooldown(USER_ID, GUILD_ID, "addmoney")
        remove = make_message(f"{wallet.prefix}addmoney {other.mention} -40", author, mentions=[other])
        await wallet.handle_message(remove)

        assert fake_economy.balance(OTHER_ID) == 60
        assert fake_economy.reasons() == [f"admin-adjust:{USER_ID}"] * 2

    @pytest.mark.asyncio
    async def test_resetcooldown_clears_target(self, wallet, author, other, coordinator):
        author.guild_permissions = discord.Permissions(manage_guild=True)
        await coordinator.reserve_cooldown(OTHER_ID, GUILD_ID, "daily", 60)

        message = make_message(f"{wallet.prefix}resetcooldown {other.mention} daily", author, mentions=[other])
        await wallet.handle_message(message)

        assert (await coordinator.reserve_cooldown(OTHER_ID, GUILD_ID, "daily", 60)).reserved
        assert "Cleared `daily` cooldown(s)" in reply_texts(message)[0]

    @pytest.mark.asyncio
    async def test_endsession_frees_stuck_user(self, wallet, author, other, coordinator):
        author.guild_permissions = discord.Permissions(manage_guild=True)
        await coordinator.acquire_exclusive_session(OTHER_ID, GUILD_ID, "wager", 60)

        message = make_message(f"{wallet.prefix}endsession {other.mention}", author, mentions=[other])
        await wallet.handle_message(message)

        assert await coordinator.get_exclusive_session(OTHER_ID, GUILD_ID) is None
        assert "Ended the `wager` session" in reply_texts(message)[0]


class TestBank:
    """Deposits and withdrawals report what actually moved."""

    @pytest.mark.asyncio
    async def test_deposit_all_reports_moved_amount(self, wallet, author, monkeypatch):
        deposit = AsyncMock(
            return_value=economy.BankMove(300, economy.BankData(wallet=200, bank=800, bank_max=1_000))
        )
        monkeypatch.setattr(economy, "deposit_to_bank", deposit)
        monkeypatch.setattr(economy, "get_bank_data", AsyncMock())
        message = make_message(f"{wallet.prefix}bank deposit all", author)

        assert isinstance(await wallet.handle_message(message), Ok)

        deposit.assert_awaited_once_with(USER_ID, GUILD_ID, None)
        economy.get_bank_data.assert_not_awaited()
        embed = message.reply.await_args.kwargs["embed"]
        assert embed.description == "Deposited **300 cm** into your bank."
        assert [field.value for field in embed.fields] == ["200 cm", "800 cm / 1,000"]

    @pytest.mark.asyncio
    async def test_withdraw_reports_moved_amount(self, wallet, author, monkeypatch):
        withdraw = AsyncMock(
            return_value=economy.BankMove(50, economy.BankData(wallet=550, bank=0, bank_max=1_000))
        )
        monkeypatch.setattr(economy, "withdraw_from_bank", withdraw)
        message = make_message(f"{wallet.prefix}bank w 50", author)

        await wallet.handle_message(message)

        withdraw.assert_awaited_once_with(USER_ID, GUILD_ID, 50)
        assert message.reply.await_args.kwargs["embed"].description == "Withdrew **50 cm** from your bank."

    @pytest.mark.asyncio
    async def test_bank_errors_waive_cooldown(self, wallet, author, monkeypatch, coordinator):
        monkeypatch.setattr(
            economy, "withdraw_from_bank", AsyncMock(side_effect=economy.BankError("Your bank is empty."))
        )
        message = make_message(f"{wallet.prefix}bank withdraw", author)

        result = await wallet.handle_message(message)

        assert result == Failure("❌ Your bank is empty.", waive_cooldown=True)
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "bank", 5)).reserved


class TestGuildStats:
    """Server-wide economy statistics."""

    @pytest.fixture
    def stats(self, monkeypatch):
        monkeypatch.setattr(
            economy,
            "get_guild_stats",
            AsyncMock(return_value=economy.GuildStats(4, 10_000, 5_000, 6_000, 0)),
        )
        monkeypatch.setattr(
            economy,
            "get_guild_activity",
            AsyncMock(return_value=economy.GuildActivity(3, 12, 1_200, 2_000, -1_500, 5)),
        )

    @pytest.mark.asyncio
    async def test_overview_and_activity(self, wallet, author, stats):
        message = make_message(f"{wallet.prefix}guildstats", author)
        assert isinstance(await wallet.handle_message(message), Ok)

        embed = message.reply.await_args.kwargs["embed"]
        assert embed.title == "📊 Economy Stats for Test Guild"
        fields = {field.name: field.value for field in embed.fields}
        assert "Average Wallet: 2,500.00" in fields["💼 Economy Overview"]
        assert "Richest Wallet: 6,000 cm" in fields["💼 Economy Overview"]
        assert "Games Played: 12" in fields["📈 Activity (30d)"]
        assert "Money Gambled: 1,200 cm" in fields["📈 Activity (30d)"]
        assert "Net Change: 500 cm" in fields["💸 Money Flow (30d)"]
        assert "⚠️ Data Notice" not in fields
        assert embed.footer.text == f"Requested by {author.display_name}"

    @pytest.mark.asyncio
    async def test_one_failing_half_shows_notice(self, wallet, author, stats, monkeypatch):
        monkeypatch.setattr(economy, "get_guild_activity", AsyncMock(side_effect=ConnectionError("db")))
        message = make_message(f"{wallet.prefix}serverstats", author)

        assert isinstance(await wallet.handle_message(message), Ok)

        fields = {field.name: field.value for field in message.reply.await_args.kwargs["embed"].fields}
        assert "💼 Economy Overview" in fields
        assert "📈 Activity (30d)" not in fields
        assert fields["⚠️ Data Notice"] == "Activity stats are temporarily unavailable."

    @pytest.mark.asyncio
    async def test_both_failing_is_an_error(self, wallet, author, monkeypatch):
        monkeypatch.setattr(economy, "get_guild_stats", AsyncMock(side_effect=RuntimeError("db")))
        monkeypatch.setattr(economy, "get_guild_activity", AsyncMock(side_effect=RuntimeError("db")))
        message = make_message(f"{wallet.prefix}guildstats", author)

        assert isinstance(await wallet.handle_message(message), Failure)
        assert message.reply.await_args.kwargs["embed"].title == "❌ Error"
