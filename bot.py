import logging
import sys

import discord
from discord.ext import commands

from config import (
    COMMAND_PREFIX,
    DISCORD_TOKEN,
    LOG_FORMAT,
    LOG_LEVEL,
    POSTGRES_URI,
)
from command_handler import CommandHandler
from commands.adventure_commands import setup as setup_adventure
from commands.admin_commands import setup as setup_admin
from commands.economy_commands import setup as setup_economy
from commands.gambling_commands import setup as setup_gambling
from commands.info_commands import setup as setup_info
from commands.item_commands import setup as setup_items
from db import DBHelper
from db.initializeDB import init_db
from services.deploy_lock import StartupLock
from services.items_service import sync_items
from services.session_service import SessionCoordinator, SessionStore, create_session_store
import events

logger = logging.getLogger("bot")


class EconomyBot(commands.Bot):
    def __init__(self, store: SessionStore):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.members = True
        super().__init__(command_prefix=COMMAND_PREFIX, intents=intents, help_command=None)

        self.store = store
        self.coordinator = SessionCoordinator(store)
        self.handler = CommandHandler(self, self.coordinator)
        self.startup_lock = StartupLock(store)

        setup_economy(self.handler)
        setup_gambling(self.handler)
        setup_adventure(self.handler)
        setup_items(self.handler)
        setup_info(self.handler)
        setup_admin(self.handler)
        events.setup(self, self.handler)

    async def setup_hook(self):
        await DBHelper.connect(POSTGRES_URI)
        await init_db()
        await sync_items()
        await self.store.connect()
        await self.startup_lock.acquire()
        logger.info("Startup complete, %s commands registered", len(self.handler.commands))

    async def on_message(self, message: discord.Message):
        # prefix commands go through CommandHandler, not discord.ext.commands
        pass

    async def close(self):
        try:
            await super().close()
        finally:
            try:
                await self.startup_lock.release()
            except Exception:
                logger.warning("Could not release startup lock", exc_info=True)
            await self.coordinator.close()
            await DBHelper.close()
            logger.info("Shutdown complete")


def main() -> int:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    logging.getLogger("discord.http").setLevel(logging.WARNING)

    missing = [name for name, value in (("DISCORD_TOKEN", DISCORD_TOKEN), ("POSTGRES_URI", POSTGRES_URI)) if not value]
    if missing:
        logger.critical("Missing required environment variables: %s", ", ".join(missing))
        return 1
    try:
        store = create_session_store()
    except RuntimeError as error:
        logger.critical("%s", error)
        return 1

    bot = EconomyBot(store)
    try:
        bot.run(DISCORD_TOKEN, log_handler=None)
    except Exception:
        logger.critical("Bot stopped after a startup failure", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
