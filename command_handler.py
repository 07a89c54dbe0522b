"""Prefix command dispatcher.

A message goes through: deploy dedupe, enabled/permission checks, cooldown
reservation, exclusive session acquisition, execution and finally result
handling. Cooldowns and sessions live in the shared session store so every
running instance of the bot agrees on them.
"""

import logging
import uuid
from collections import defaultdict
from typing import Optional

import discord
from discord.ext import commands
from discord.ext.commands.view import StringView

from commands.base import (
    BaseCommand,
    CommandContext,
    CommandResult,
    Failure,
    Ok,
    UsageError,
    make_embed,
)
from config import COMMAND_PREFIX
from db.DBHelper import is_transient_database_error
from permissions import get_permission_rule, missing_permissions
from services import level_service
from services.deploy_lock import acquire_lock
from services.session_service import CoordinatorUnavailable, SessionCoordinator

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "⚠️ The bot is having trouble reaching its storage. Please try again in a moment."

# Discord API error codes with a friendlier explanation
DISCORD_ERROR_MESSAGES = {
    50013: "I don't have permission to do that here.",
    50001: "I don't have access to that channel.",
    50005: "I can't edit a message that someone else sent.",
}


def parse_arguments(text: str) -> list[str]:
    """Split *text* into words, honouring double quotes.

    Raises ``commands.ArgumentParsingError`` for an unclosed quote.
    """

    view = StringView(text)
    args: list[str] = []
    while True:
        view.skip_ws()
        if view.eof:
            return args
        word = view.get_quoted_word()
        if word is None:
            return args
        args.append(word)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, CoordinatorUnavailable) or is_transient_database_error(error)


class CommandHandler:
    def __init__(
        self,
        bot: discord.Client,
        coordinator: SessionCoordinator,
        *,
        prefix: str = COMMAND_PREFIX,
        dedupe_messages: bool = True,
        award_xp: bool = True,
    ):
        self.bot = bot
        self.coordinator = coordinator
        self.prefix = prefix
        self.dedupe_messages = dedupe_messages
        self.award_xp = award_xp
        self.commands: dict[str, BaseCommand] = {}
        self.aliases: dict[str, str] = {}
        self._interaction_routes: dict[str, BaseCommand] = {}

    # ---------- registry ----------

    def register(self, command: BaseCommand) -> BaseCommand:
        names = [command.name, *command.aliases]
        for name in names:
            if name in self.commands or name in self.aliases:
                raise ValueError(f"Command name or alias '{name}' is already registered")
        self.commands[command.name] = command
        for alias in command.aliases:
            self.aliases[alias] = command.name
        if command.interaction_prefix:
            if command.interaction_prefix in self._interaction_routes:
                raise ValueError(f"Interaction prefix '{command.interaction_prefix}' is already registered")
            self._interaction_routes[command.interaction_prefix] = command
        logger.debug("Registered command %s (aliases: %s)", command.name, command.aliases)
        return command

    def get(self, name: str) -> Optional[BaseCommand]:
        name = name.lower()
        return self.commands.get(name) or self.commands.get(self.aliases.get(name, ""))

    def commands_by_category(self) -> dict[str, list[BaseCommand]]:
        grouped: dict[str, list[BaseCommand]] = defaultdict(list)
        for command in sorted(self.commands.values(), key=lambda c: c.name):
            if command.enabled:
                grouped[command.category].append(command)
        return dict(grouped)

    def parse(self, content: str) -> Optional[tuple[str, str]]:
        """Return ``(command name, raw argument text)`` for prefixed content."""
        if not content.startswith(self.prefix):
            return None
        view = StringView(content[len(self.prefix):])
        view.skip_ws()
        name = view.get_word()
        if not name:
            return None
        return name.lower(), view.read_rest()

    # ---------- messages ----------

    async def handle_message(self, message: discord.Message) -> Optional[CommandResult]:
        if message.author.bot or message.guild is None or message.webhook_id:
            return None
        if message.type not in (discord.MessageType.default, discord.MessageType.reply):
            return None
        parsed = self.parse(message.content or "")
        if parsed is None:
            return None
        invoked_with, rest = parsed
        command = self.get(invoked_with)
        if command is None:
            return None

        if self.dedupe_messages:
            try:
                claimed = await acquire_lock(self.coordinator.store, f"message:{message.id}")
            except CoordinatorUnavailable:
                await self._reply(message, UNAVAILABLE_MESSAGE)
                return None
            if not claimed:
                logger.debug("Message %s already handled by another instance", message.id)
                return None

        return await self.dispatch(message, command, invoked_with, rest)

    async def dispatch(
        self, message: discord.Message, command: BaseCommand, invoked_with: str, rest: str
    ) -> Optional[CommandResult]:
        user_id, guild_id = message.author.id, message.guild.id

        if not command.enabled:
            await self._reply(message, "This command is currently disabled.")
            return None

        missing = missing_permissions(
            message.author, get_permission_rule(command.name, command.permissions)
        )
        if missing:
            await self._reply(
                message,
                f"You need the following permissions to use this command: {', '.join(missing)}",
            )
            return None

        try:
            args = parse_arguments(rest)
        except commands.ArgumentParsingError as error:
            result = UsageError(str(error))
            await self._reply_usage(message, command, result)
            return result

        try:
            reservation = await self.coordinator.reserve_cooldown(
                user_id, guild_id, command.name, command.cooldown
            )
        except CoordinatorUnavailable:
            await self._reply(message, UNAVAILABLE_MESSAGE)
            return None
        if not reservation.reserved:
            await self._reply(
                message,
                f"Please wait {reservation.remaining:.1f} more second(s) before using the "
                f"`{command.name}` command.",
            )
            return None

        ctx = CommandContext(message, args, self, invoked_with)

        if command.exclusive_session:
            try:
                acquisition = await self.coordinator.acquire_exclusive_session(
                    user_id, guild_id, command.name, command.session_ttl
                )
            except CoordinatorUnavailable:
                await self._clear_cooldown(user_id, guild_id, command.name)
                await self._reply(message, UNAVAILABLE_MESSAGE)
                return None
            if not acquisition.acquired:
                await self._clear_cooldown(user_id, guild_id, command.name)
                blocking = acquisition.blocking_command or "another"
                await self._reply(
                    message,
                    f"You already have a `{blocking}` command in progress. "
                    "Please finish your current session first.",
                )
                return None
            ctx.session_token = acquisition.token

        result: CommandResult = Failure()
        keep_session = False
        try:
            result = await command.execute(ctx) or Ok()
            keep_session = isinstance(result, Ok) and result.keep_session
            await self._apply_result(ctx, command, result)
        except Exception as error:
            await self._report_error(ctx, command, error)
        finally:
            if ctx.session_token is not None and not keep_session:
                await self.release_session(user_id, guild_id, ctx.session_token)

        if isinstance(result, Ok) and self.award_xp:
            await self._award_xp(user_id, guild_id, command.name)
        return result

    async def _apply_result(self, ctx: CommandContext, command: BaseCommand, result: CommandResult):
        if isinstance(result, UsageError):
            await self._clear_cooldown(ctx.user_id, ctx.guild_id, command.name)
            await self._reply_usage(ctx.message, command, result)
        elif isinstance(result, Failure):
            if result.waive_cooldown:
                await self._clear_cooldown(ctx.user_id, ctx.guild_id, command.name)
            if result.message:
                await self._reply(ctx.message, result.message)

    async def _report_error(self, ctx: CommandContext, command: BaseCommand, error: Exception):
        if _is_transient(error):
            logger.warning("Command %s hit a transient failure: %s", command.name, error)
            await self._clear_cooldown(ctx.user_id, ctx.guild_id, command.name)
            await self._reply(ctx.message, UNAVAILABLE_MESSAGE)
            return

        if isinstance(error, discord.HTTPException) and error.code in DISCORD_ERROR_MESSAGES:
            logger.warning("Command %s failed with Discord error %s", command.name, error.code)
            await self._reply(ctx.message, DISCORD_ERROR_MESSAGES[error.code])
            return

        error_id = uuid.uuid4().hex[:8]
        logger.error(
            "Command error %s in %s (guild %s, user %s, args %s)",
            error_id,
            command.name,
            ctx.guild_id,
            ctx.user_id,
            ctx.args,
            exc_info=error,
        )
        embed = make_embed(
            "❌ Error",
            f"Oops, something went wrong 😵 (Error ID: `{error_id}`)",
            "ERROR",
        )
        await self._reply(ctx.message, embed=embed)

    # ---------- coordination helpers ----------

    async def release_session(self, user_id: int, guild_id: int, token: str) -> bool:
        try:
            return await self.coordinator.release_exclusive_session(user_id, guild_id, token)
        except CoordinatorUnavailable:
            logger.warning(
                "Could not release session for %s in %s; it will expire on its own",
                user_id,
                guild_id,
            )
            return False

    async def _clear_cooldown(self, user_id: int, guild_id: int, command_name: str):
        try:
            await self.coordinator.clear_cooldown(user_id, guild_id, command_name)
        except CoordinatorUnavailable:
            logger.warning("Could not clear %s cooldown for %s in %s", command_name, user_id, guild_id)

    async def _award_xp(self, user_id: int, guild_id: int, command_name: str):
        try:
            await level_service.award_command_xp(user_id, guild_id, command_name)
        except Exception:
            logger.warning("Could not award XP for %s to %s", command_name, user_id, exc_info=True)

    # ---------- replies ----------

    async def _reply(self, message: discord.Message, content: Optional[str] = None, **kwargs):
        try:
            await message.reply(content, mention_author=False, **kwargs)
        except discord.HTTPException as error:
            logger.warning("Could not reply in channel %s: %s", message.channel.id, error)

    async def _reply_usage(self, message: discord.Message, command: BaseCommand, result: UsageError):
        embed = make_embed("❌ Invalid Usage", result.message, "ERROR")
        embed.add_field(name="Usage", value=f"`{command.usage_text}`", inline=False)
        await self._reply(message, embed=embed)

    # ---------- interactions ----------

    async def handle_interaction(self, interaction: discord.Interaction):
        if interaction.type is not discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get("custom_id", "")
        command = self._interaction_routes.get(custom_id.split(":", 1)[0])
        if command is None:
            return
        try:
            await command.handle_interaction(interaction, self)
        except Exception as error:
            error_id = uuid.uuid4().hex[:8]
            logger.error(
                "Interaction error %s for %s (%s)", error_id, command.name, custom_id, exc_info=error
            )
            text = f"Oops, something went wrong 😵 (Error ID: `{error_id}`)"
            if _is_transient(error):
                text = UNAVAILABLE_MESSAGE
            try:
                if interaction.response.is_done():
                    await interaction.followup.send(text, ephemeral=True)
                else:
                    await interaction.response.send_message(text, ephemeral=True)
            except discord.HTTPException:
                logger.warning("Could not report interaction error %s", error_id)
