"""
Dispatcher tests: parsing, the registry and the dispatch pipeline.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from discord.ext import commands

from command_handler import UNAVAILABLE_MESSAGE, CommandHandler, parse_arguments
from commands.base import BaseCommand, Category, Failure, Ok, UsageError
from services import level_service
from services.session_service import (
    CoordinatorUnavailable,
    MemorySessionStore,
    SessionCoordinator,
)

from conftest import GUILD_ID, USER_ID, make_message, reply_texts


class EchoCommand(BaseCommand):
    name = "echo"
    description = "Records its calls and returns a preset result."
    category = Category.INFO
    usage = "echo <x>"
    aliases = ("ec",)
    cooldown = 5

    def __init__(self, bot, result=None, error=None):
        super().__init__(bot)
        self.result = result if result is not None else Ok()
        self.error = error
        self.calls = []

    async def execute(self, ctx):
        self.calls.append(ctx.args)
        if self.error is not None:
            raise self.error
        await ctx.reply("echoed")
        return self.result


class GatedCommand(BaseCommand):
    name = "gated"
    description = "Holds an exclusive session until released."
    category = Category.GAMBLING
    usage = "gated"
    cooldown = 0
    exclusive_session = True

    def __init__(self, bot):
        super().__init__(bot)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, ctx):
        self.started.set()
        await self.release.wait()
        return Ok()


class OtherExclusiveCommand(BaseCommand):
    name = "other"
    description = "Another exclusive command."
    category = Category.GAMBLING
    usage = "other"
    cooldown = 5
    exclusive_session = True

    async def execute(self, ctx):
        return Ok()


class KeepSessionCommand(OtherExclusiveCommand):
    name = "keeper"
    usage = "keeper"

    async def execute(self, ctx):
        return Ok(keep_session=True)


class AdminOnlyCommand(BaseCommand):
    name = "adminonly"
    description = "Needs Manage Guild."
    category = Category.ADMIN
    usage = "adminonly"
    permissions = frozenset({"manage_guild"})

    async def execute(self, ctx):
        return Ok()


class DisabledCommand(BaseCommand):
    name = "off"
    description = "Switched off."
    category = Category.INFO
    usage = "off"
    enabled = False

    async def execute(self, ctx):
        raise AssertionError("disabled commands never run")


class ButtonCommand(BaseCommand):
    name = "button"
    description = "Handles component clicks."
    category = Category.INFO
    usage = "button"
    interaction_prefix = "echo"

    def __init__(self, bot, error=None):
        super().__init__(bot)
        self.error = error
        self.clicks = []

    async def execute(self, ctx):
        return Ok()

    async def handle_interaction(self, interaction, handler):
        if self.error is not None:
            raise self.error
        self.clicks.append(interaction.data["custom_id"])


class BrokenStore(MemorySessionStore):
    async def set_if_absent(self, key, value, ttl_seconds):
        raise CoordinatorUnavailable("redis is down")


def command_text(handler, text):
    return f"{handler.prefix}{text}"


def make_interaction(custom_id):
    interaction = MagicMock()
    interaction.type = discord.InteractionType.component
    interaction.data = {"custom_id": custom_id}
    interaction.response.is_done = MagicMock(return_value=False)
    interaction.response.send_message = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


class TestParsing:
    """Splitting message content into a command and its arguments."""

    def test_parse_lowercases_name(self, handler):
        name, rest = handler.parse(command_text(handler, "DiCe 3 100"))
        assert name == "dice"
        assert parse_arguments(rest) == ["3", "100"]

    def test_parse_ignores_unprefixed_content(self, handler):
        assert handler.parse("dice 3 100") is None
        assert handler.parse(handler.prefix) is None

    def test_arguments_respect_quotes(self):
        assert parse_arguments('buy "bank note" 2') == ["buy", "bank note", "2"]

    def test_empty_arguments(self):
        assert parse_arguments("   ") == []

    def test_unclosed_quote_raises(self):
        with pytest.raises(commands.ArgumentParsingError):
            parse_arguments('buy "bank note')


class TestRegistry:
    """Registering and looking up commands."""

    def test_lookup_by_alias(self, handler, bot):
        echo = handler.register(EchoCommand(bot))
        assert handler.get("EC") is echo
        assert handler.get("echo") is echo
        assert handler.get("nope") is None

    def test_duplicate_alias_is_rejected(self, handler, bot):
        handler.register(EchoCommand(bot))

        class Clash(EchoCommand):
            name = "clash"
            aliases = ("ec",)

        with pytest.raises(ValueError):
            handler.register(Clash(bot))

    def test_missing_metadata_is_rejected(self):
        with pytest.raises(TypeError):

            class Nameless(BaseCommand):
                description = "no name"
                category = Category.INFO
                usage = "x"

                async def execute(self, ctx):
                    return Ok()

    def test_categories_skip_disabled_commands(self, handler, bot):
        handler.register(EchoCommand(bot))
        handler.register(DisabledCommand(bot))
        grouped = handler.commands_by_category()
        assert [c.name for c in grouped[Category.INFO]] == ["echo"]


class TestMessageFiltering:
    """Messages the dispatcher must ignore."""

    @pytest.mark.asyncio
    async def test_ignores_bots_dms_and_unknown_commands(self, handler, bot, author):
        echo = handler.register(EchoCommand(bot))

        author.bot = True
        assert await handler.handle_message(make_message(command_text(handler, "echo"), author)) is None
        author.bot = False

        dm = make_message(command_text(handler, "echo"), author)
        dm.guild = None
        assert await handler.handle_message(dm) is None

        unknown = make_message(command_text(handler, "nothing"), author)
        assert await handler.handle_message(unknown) is None
        unknown.reply.assert_not_awaited()
        assert echo.calls == []

    @pytest.mark.asyncio
    async def test_same_message_runs_once_across_instances(self, bot, coordinator, author):
        first = CommandHandler(bot, coordinator, award_xp=False)
        second = CommandHandler(bot, coordinator, award_xp=False)
        echo_a = first.register(EchoCommand(bot))
        echo_b = second.register(EchoCommand(bot))

        message = make_message(command_text(first, "echo 1"), author)
        await asyncio.gather(first.handle_message(message), second.handle_message(message))

        assert len(echo_a.calls) + len(echo_b.calls) == 1

    @pytest.mark.asyncio
    async def test_store_outage_fails_closed(self, bot, clock, author):
        handler = CommandHandler(bot, SessionCoordinator(BrokenStore(clock=clock), clock=clock), award_xp=False)
        echo = handler.register(EchoCommand(bot))
        message = make_message(command_text(handler, "echo"), author)

        assert await handler.handle_message(message) is None
        assert echo.calls == []
        assert reply_texts(message) == [UNAVAILABLE_MESSAGE]


class TestDispatch:
    """The cooldown, session and result pipeline."""

    @pytest.mark.asyncio
    async def test_cooldown_rejects_second_use(self, handler, bot, author):
        echo = handler.register(EchoCommand(bot))
        await handler.handle_message(make_message(command_text(handler, "echo"), author))
        second = make_message(command_text(handler, "ec"), author)
        assert await handler.handle_message(second) is None

        assert len(echo.calls) == 1
        assert reply_texts(second) == [
            "Please wait 5.0 more second(s) before using the `echo` command."
        ]

    @pytest.mark.asyncio
    async def test_usage_error_does_not_consume_cooldown(self, handler, bot, author, coordinator):
        handler.register(EchoCommand(bot, result=UsageError("Give me an x.")))
        message = make_message(command_text(handler, "echo"), author)
        result = await handler.handle_message(message)

        assert result == UsageError("Give me an x.")
        embed = message.reply.await_args.kwargs["embed"]
        assert embed.title == "❌ Invalid Usage"
        assert embed.description == "Give me an x."
        assert "echo <x>" in embed.fields[0].value
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "echo", 5)).reserved

    @pytest.mark.asyncio
    async def test_unclosed_quote_is_a_usage_error(self, handler, bot, author):
        echo = handler.register(EchoCommand(bot))
        message = make_message(command_text(handler, 'echo "oops'), author)
        result = await handler.handle_message(message)

        assert isinstance(result, UsageError)
        assert echo.calls == []
        assert message.reply.await_args.kwargs["embed"].title == "❌ Invalid Usage"

    @pytest.mark.asyncio
    async def test_waived_failure_clears_cooldown(self, handler, bot, author):
        echo = handler.register(EchoCommand(bot, result=Failure("Not enough cm.", waive_cooldown=True)))
        first = make_message(command_text(handler, "echo"), author)
        await handler.handle_message(first)
        await handler.handle_message(make_message(command_text(handler, "echo"), author))

        assert len(echo.calls) == 2
        assert "Not enough cm." in reply_texts(first)

    @pytest.mark.asyncio
    async def test_plain_failure_keeps_cooldown(self, handler, bot, author, coordinator):
        handler.register(EchoCommand(bot, result=Failure("Nope.")))
        await handler.handle_message(make_message(command_text(handler, "echo"), author))
        assert not (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "echo", 5)).reserved

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_error_id(self, handler, bot, author, coordinator):
        handler.register(EchoCommand(bot, error=RuntimeError("boom")))
        message = make_message(command_text(handler, "echo"), author)
        result = await handler.handle_message(message)

        assert isinstance(result, Failure)
        embed = message.reply.await_args.kwargs["embed"]
        assert embed.title == "❌ Error"
        assert "Error ID" in embed.description
        assert not (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "echo", 5)).reserved

    @pytest.mark.asyncio
    async def test_transient_error_clears_cooldown(self, handler, bot, author, coordinator):
        handler.register(EchoCommand(bot, error=ConnectionError("connection reset by peer")))
        message = make_message(command_text(handler, "echo"), author)
        await handler.handle_message(message)

        assert reply_texts(message) == [UNAVAILABLE_MESSAGE]
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "echo", 5)).reserved

    @pytest.mark.asyncio
    async def test_exclusive_session_blocks_concurrent_commands(self, handler, bot, author, coordinator):
        gated = handler.register(GatedCommand(bot))
        handler.register(OtherExclusiveCommand(bot))

        running = asyncio.create_task(
            handler.handle_message(make_message(command_text(handler, "gated"), author))
        )
        await gated.started.wait()

        blocked = make_message(command_text(handler, "other"), author)
        assert await handler.handle_message(blocked) is None
        assert reply_texts(blocked) == [
            "You already have a `gated` command in progress. Please finish your current session first."
        ]
        # rejected by the session check, so the cooldown was handed back
        assert (await coordinator.reserve_cooldown(USER_ID, GUILD_ID, "other", 5)).reserved
        await coordinator.clear_cooldown(USER_ID, GUILD_ID, "other")

        gated.release.set()
        await running
        assert await coordinator.get_exclusive_session(USER_ID, GUILD_ID) is None
        assert isinstance(
            await handler.handle_message(make_message(command_text(handler, "other"), author)), Ok
        )

    @pytest.mark.asyncio
    async def test_keep_session_leaves_session_open(self, handler, bot, author, coordinator):
        handler.register(KeepSessionCommand(bot))
        await handler.handle_message(make_message(command_text(handler, "keeper"), author))

        session = await coordinator.get_exclusive_session(USER_ID, GUILD_ID)
        assert session is not None
        assert session.command_name == "keeper"

    @pytest.mark.asyncio
    async def test_missing_permissions(self, handler, bot, author):
        handler.register(AdminOnlyCommand(bot))
        message = make_message(command_text(handler, "adminonly"), author)
        assert await handler.handle_message(message) is None
        assert reply_texts(message) == [
            "You need the following permissions to use this command: Manage Guild"
        ]

    @pytest.mark.asyncio
    async def test_administrators_pass_permission_checks(self, handler, bot, author):
        handler.register(AdminOnlyCommand(bot))
        author.guild_permissions = discord.Permissions(administrator=True)
        result = await handler.handle_message(make_message(command_text(handler, "adminonly"), author))
        assert isinstance(result, Ok)

    @pytest.mark.asyncio
    async def test_disabled_command(self, handler, bot, author):
        handler.register(DisabledCommand(bot))
        message = make_message(command_text(handler, "off"), author)
        await handler.handle_message(message)
        assert reply_texts(message) == ["This command is currently disabled."]

    @pytest.mark.asyncio
    async def test_xp_failure_does_not_fail_command(self, bot, coordinator, author, monkeypatch):
        monkeypatch.setattr(
            level_service, "award_command_xp", AsyncMock(side_effect=ConnectionError("db down"))
        )
        handler = CommandHandler(bot, coordinator)
        handler.register(EchoCommand(bot))
        message = make_message(command_text(handler, "echo"), author)

        assert isinstance(await handler.handle_message(message), Ok)
        assert reply_texts(message) == ["echoed"]
        level_service.award_command_xp.assert_awaited_once_with(USER_ID, GUILD_ID, "echo")


class TestInteractions:
    """Routing component clicks by custom id prefix."""

    @pytest.mark.asyncio
    async def test_routes_by_prefix(self, handler, bot):
        button = handler.register(ButtonCommand(bot))
        await handler.handle_interaction(make_interaction("echo:go"))
        await handler.handle_interaction(make_interaction("elsewhere:go"))
        assert button.clicks == ["echo:go"]

    @pytest.mark.asyncio
    async def test_handler_errors_reply_ephemerally(self, handler, bot):
        handler.register(ButtonCommand(bot, error=RuntimeError("boom")))
        interaction = make_interaction("echo:go")
        await handler.handle_interaction(interaction)

        text = interaction.response.send_message.await_args.args[0]
        assert "Error ID" in text
        assert interaction.response.send_message.await_args.kwargs["ephemeral"] is True
