import logging
import uuid

import discord
from discord.ext import commands

from command_handler import CommandHandler

logger = logging.getLogger(__name__)


async def on_ready(bot: commands.Bot, handler: CommandHandler):
    logger.info(
        "Bot is online as %s in %s guild(s) with %s commands",
        bot.user,
        len(bot.guilds),
        len(handler.commands),
    )


async def on_message(handler: CommandHandler, message: discord.Message):
    try:
        await handler.handle_message(message)
    except Exception as error:
        # the dispatcher reports command failures itself; this only catches
        # failures around it so one bad message never kills the listener
        error_id = uuid.uuid4().hex[:8]
        logger.error(
            "Message handling error %s for message %s in %s",
            error_id,
            message.id,
            getattr(message.guild, "id", None),
            exc_info=error,
        )


async def on_interaction(handler: CommandHandler, interaction: discord.Interaction):
    await handler.handle_interaction(interaction)


async def on_guild_join(guild: discord.Guild):
    logger.info("Joined guild %s (%s)", guild.name, guild.id)


async def on_guild_remove(guild: discord.Guild):
    logger.info("Removed from guild %s (%s)", guild.name, guild.id)


def setup(bot: commands.Bot, handler: CommandHandler):
    async def ready_wrapper():
        await on_ready(bot, handler)

    async def message_wrapper(message: discord.Message):
        await on_message(handler, message)

    async def interaction_wrapper(interaction: discord.Interaction):
        await on_interaction(handler, interaction)

    bot.add_listener(ready_wrapper, name="on_ready")
    bot.add_listener(message_wrapper, name="on_message")
    bot.add_listener(interaction_wrapper, name="on_interaction")
    bot.add_listener(on_guild_join, name="on_guild_join")
    bot.add_listener(on_guild_remove, name="on_guild_remove")
