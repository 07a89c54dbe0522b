"""Command interface and the results a command hands back to the dispatcher."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar, Optional, Union

import discord

from config import COLORS, COMMAND_PREFIX, COOLDOWNS, EXCLUSIVE_SESSION_TTL
from utils import parse_user_id

if TYPE_CHECKING:
    from command_handler import CommandHandler
    from services.session_service import SessionCoordinator


class Category:
    ECONOMY = "Economy"
    GAMBLING = "Gambling"
    ITEMS = "Items"
    INFO = "Info"
    ADMIN = "Admin"


@dataclass(frozen=True)
class Ok:
    # keep the exclusive session alive, e.g. while waiting for a button
    keep_session: bool = False


@dataclass(frozen=True)
class UsageError:
    message: str = ""


@dataclass(frozen=True)
class Failure:
    message: str = ""
    # the failure was detected before any state changed
    waive_cooldown: bool = False


CommandResult = Union[Ok, UsageError, Failure]


@dataclass
class CommandContext:
    message: discord.Message
    args: list[str]
    handler: "CommandHandler"
    invoked_with: str
    session_token: Optional[str] = field(default=None, repr=False)

    @property
    def author(self) -> discord.Member:
        return self.message.author

    @property
    def guild(self) -> discord.Guild:
        return self.message.guild

    @property
    def user_id(self) -> int:
        return self.message.author.id

    @property
    def guild_id(self) -> int:
        return self.message.guild.id

    @property
    def coordinator(self) -> "SessionCoordinator":
        return self.handler.coordinator

    def member_from_arg(self, raw: str) -> Optional[discord.Member]:
        """Resolve ``<@id>`` or a bare id to a member of this guild."""
        user_id = parse_user_id(raw)
        if user_id is None:
            return None
        for member in self.message.mentions:
            if member.id == user_id:
                return member
        return self.message.guild.get_member(user_id)

    async def reply(self, content: Optional[str] = None, **kwargs) -> discord.Message:
        kwargs.setdefault("mention_author", False)
        return await self.message.reply(content, **kwargs)


def make_embed(
    title: str, description: str = "", color: str = "DEFAULT"
) -> discord.Embed:
    embed = discord.Embed(title=title, description=description, color=COLORS[color])
    embed.timestamp = discord.utils.utcnow()
    return embed


class BaseCommand(ABC):
    """A prefix command.

    Subclasses must set ``name``, ``description``, ``category`` and ``usage``.
    Everything else is an optional capability with a sensible default.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    category: ClassVar[str] = ""
    usage: ClassVar[str] = ""

    aliases: ClassVar[tuple[str, ...]] = ()
    cooldown: ClassVar[float] = COOLDOWNS["DEFAULT"]
    enabled: ClassVar[bool] = True
    permissions: ClassVar[frozenset[str]] = frozenset()
    exclusive_session: ClassVar[bool] = False
    session_ttl: ClassVar[float] = EXCLUSIVE_SESSION_TTL
    interaction_prefix: ClassVar[Optional[str]] = None

    _REQUIRED: ClassVar[tuple[str, ...]] = ("name", "description", "category", "usage")

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if inspect.isabstract(cls):
            return
        missing = [attr for attr in cls._REQUIRED if not getattr(cls, attr)]
        if missing:
            raise TypeError(f"{cls.__name__} must define {', '.join(missing)}")

    def __init__(self, bot: discord.Client):
        self.bot = bot

    @property
    def usage_text(self) -> str:
        return f"{COMMAND_PREFIX}{self.usage}"

    @abstractmethod
    async def execute(self, ctx: CommandContext) -> CommandResult:
        ...

    async def handle_interaction(
        self, interaction: discord.Interaction, handler: "CommandHandler"
    ) -> None:
        raise NotImplementedError(f"{self.name} does not handle interactions")
