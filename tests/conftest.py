"""
Shared fixtures.

Discord objects are built from ``unittest.mock``; the in-memory session store
stands in for Redis and ``FakeEconomy`` replaces the Postgres backed wallet
functions.
"""

import itertools
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import discord
import fakeredis
import pytest

from command_handler import CommandHandler
from services import economy
from services.session_service import MemorySessionStore, RedisSessionStore, SessionCoordinator

GUILD_ID = 100000000000000001
OWNER_ID = 100000000000000002
USER_ID = 200000000000000001
OTHER_ID = 200000000000000002

_ids = itertools.count(900000000000000000)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeEconomy:
    """Wallet balances kept in a dict with the same errors as the real service."""

    def __init__(self):
        self.balances: dict[tuple[int, int], int] = {}
        self.ledger: list[tuple[int, int, str]] = []

    def set(self, user_id: int, amount: int, guild_id: int = GUILD_ID):
        self.balances[(user_id, guild_id)] = amount

    def balance(self, user_id: int, guild_id: int = GUILD_ID) -> int:
        return self.balances.get((user_id, guild_id), 0)

    def reasons(self) -> list[str]:
        return [reason for _, _, reason in self.ledger]

    async def get_balance(self, user_id, guild_id):
        return self.balance(user_id, guild_id)

    async def update_balance(self, user_id, guild_id, delta, reason, *, garnish=False, clamp=False):
        new_balance = self.balance(user_id, guild_id) + delta
        if new_balance < 0:
            if not clamp:
                raise economy.InsufficientFunds("Insufficient funds.")
            delta = min(0, -self.balance(user_id, guild_id))
            new_balance = 0
        self.set(user_id, new_balance, guild_id)
        self.ledger.append((user_id, delta, reason))
        return economy.BalanceUpdate(new_balance, 0, delta)

    async def transfer_balance(self, from_user_id, to_user_id, guild_id, amount, reason, *, check_debt=True):
        if self.balance(from_user_id, guild_id) < amount:
            raise economy.InsufficientFunds("Insufficient funds.")
        self.set(from_user_id, self.balance(from_user_id, guild_id) - amount, guild_id)
        self.set(to_user_id, self.balance(to_user_id, guild_id) + amount, guild_id)
        self.ledger.append((from_user_id, -amount, f"{reason}-out"))
        self.ledger.append((to_user_id, amount, f"{reason}-in"))
        return economy.TransferResult(
            self.balance(from_user_id, guild_id), self.balance(to_user_id, guild_id)
        )


# ---------- discord fakes ----------


def make_sent_message():
    sent = MagicMock()
    sent.id = next(_ids)
    sent.created_at = discord.utils.utcnow()
    sent.edit = AsyncMock()
    return sent


def make_guild(guild_id: int = GUILD_ID):
    guild = MagicMock()
    guild.id = guild_id
    guild.owner_id = OWNER_ID
    guild.name = "Test Guild"
    guild.members_by_id = {}
    guild.get_member = lambda user_id: guild.members_by_id.get(user_id)
    return guild


def make_member(guild, user_id: int = USER_ID, *, bot: bool = False, permissions: Optional[discord.Permissions] = None):
    member = MagicMock()
    member.id = user_id
    member.bot = bot
    member.guild = guild
    member.display_name = f"user{str(user_id)[-2:]}"
    member.mention = f"<@{user_id}>"
    member.guild_permissions = permissions or discord.Permissions.none()
    member.send = AsyncMock()
    guild.members_by_id[user_id] = member
    return member


def make_message(content: str, author, guild=None, mentions=()):
    message = MagicMock()
    message.id = next(_ids)
    message.content = content
    message.author = author
    message.guild = author.guild if guild is None else guild
    message.webhook_id = None
    message.type = discord.MessageType.default
    message.mentions = list(mentions)
    message.channel.id = 42
    message.created_at = discord.utils.utcnow()
    message.reply = AsyncMock(side_effect=lambda *args, **kwargs: make_sent_message())
    return message


def reply_texts(message) -> list[str]:
    """Flatten reply content and embed text so tests can search it."""

    texts = []
    for call in message.reply.await_args_list:
        parts = []
        if call.args and call.args[0]:
            parts.append(call.args[0])
        if call.kwargs.get("content"):
            parts.append(call.kwargs["content"])
        embed = call.kwargs.get("embed")
        if embed is not None:
            parts.extend(filter(None, [embed.title, embed.description]))
            parts.extend(f"{field.name} {field.value}" for field in embed.fields)
        texts.append("\n".join(parts))
    return texts


# ---------- fixtures ----------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemorySessionStore(clock=clock)


@pytest.fixture
def redis_store():
    """A `RedisSessionStore` on an isolated fakeredis server, Lua scripts included."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisSessionStore(client=client)


@pytest.fixture(params=["memory", "redis"])
def shared_store(request, clock):
    """Each store implementation in turn, for tests of the shared contract."""
    if request.param == "redis":
        return request.getfixturevalue("redis_store")
    return MemorySessionStore(clock=clock)


@pytest.fixture
def coordinator(store, clock):
    return SessionCoordinator(store, clock=clock)


@pytest.fixture
def bot():
    fake = MagicMock()
    fake.latency = 0.05
    return fake


@pytest.fixture
def handler(bot, coordinator):
    return CommandHandler(bot, coordinator, award_xp=False)


@pytest.fixture
def guild():
    return make_guild()


@pytest.fixture
def author(guild):
    return make_member(guild, USER_ID)


@pytest.fixture
def other(guild):
    return make_member(guild, OTHER_ID)


@pytest.fixture
def fake_economy(monkeypatch):
    fake = FakeEconomy()
    monkeypatch.setattr(economy, "get_balance", fake.get_balance)
    monkeypatch.setattr(economy, "update_balance", fake.update_balance)
    monkeypatch.setattr(economy, "transfer_balance", fake.transfer_balance)
    return fake
