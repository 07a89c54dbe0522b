"""
Shop purchases and item use.
"""

from unittest.mock import AsyncMock

import pytest

from commands import item_commands
from commands.base import Failure, Ok, UsageError
from services import inventory_service, items_service
from services.items_service import ItemUseResult, StoredItem

from conftest import GUILD_ID, USER_ID, make_message, reply_texts

SHOVEL = StoredItem(1, "shovel", "Shovel", "tool", 750, "Needed for `dig`.")
BANK_NOTE = StoredItem(2, "bank_note", "Bank Note", "consumable", 1_000, "")


@pytest.fixture
def shop(handler, monkeypatch):
    catalogue = {item.name: item for item in (SHOVEL, BANK_NOTE)}

    async def get_item_by_name(name):
        return catalogue.get(items_service.normalize_item_name(name))

    monkeypatch.setattr(items_service, "get_item_by_name", get_item_by_name)
    item_commands.setup(handler)
    return handler


class TestQuantities:
    """Trailing quantities on item commands."""

    def test_split(self):
        assert item_commands._split_quantity(["bank", "note", "3"]) == ("bank note", "3")
        assert item_commands._split_quantity(["shovel"]) == ("shovel", "1")

    def test_limits(self):
        assert item_commands._parse_quantity("5") == 5
        assert isinstance(item_commands._parse_quantity("0"), UsageError)
        assert isinstance(item_commands._parse_quantity("101"), UsageError)

    def test_split_ignores_superscript_quantity(self):
        assert item_commands._split_quantity(["snack", "pack", "²"]) == ("snack pack ²", "1")


class TestBuy:
    """Buying from the shop."""

    @pytest.mark.asyncio
    async def test_buy_charges_and_stores(self, shop, author, fake_economy, monkeypatch):
        fake_economy.set(USER_ID, 3_000)
        add_item = AsyncMock(return_value=2)
        monkeypatch.setattr(inventory_service, "add_item", add_item)

        message = make_message(f'{shop.prefix}shop buy "bank note" 2', author)
        assert isinstance(await shop.handle_message(message), Ok)

        assert fake_economy.balance(USER_ID) == 1_000
        add_item.assert_awaited_once_with(USER_ID, author.guild.id, BANK_NOTE.id, 2)
        assert "✅ Purchase Successful" in reply_texts(message)[0]

    @pytest.mark.asyncio
    async def test_failed_insert_refunds(self, shop, author, fake_economy, monkeypatch):
        fake_economy.set(USER_ID, 1_000)
        monkeypatch.setattr(inventory_service, "add_item", AsyncMock(side_effect=RuntimeError("constraint")))

        message = make_message(f"{shop.prefix}shop buy shovel", author)
        result = await shop.handle_message(message)

        assert isinstance(result, Failure)
        assert fake_economy.balance(USER_ID) == 1_000
        assert fake_economy.reasons() == ["shop-purchase", "shop-purchase-refund"]

    @pytest.mark.asyncio
    async def test_cannot_afford(self, shop, author, fake_economy):
        fake_economy.set(USER_ID, 10)
        message = make_message(f"{shop.prefix}shop buy shovel", author)
        result = await shop.handle_message(message)

        assert result.waive_cooldown
        assert "Cost: 750 cm | Your balance: 10 cm" in reply_texts(message)[0]
        assert fake_economy.ledger == []

    @pytest.mark.asyncio
    async def test_unknown_item(self, shop, author, fake_economy):
        message = make_message(f"{shop.prefix}shop buy unicorn", author)
        await shop.handle_message(message)
        assert reply_texts(message) == ['Item "unicorn" was not found in the shop.']


class TestUse:
    """Using an owned item."""

    @pytest.mark.asyncio
    async def test_use_reports_effect(self, shop, author, monkeypatch):
        use_item = AsyncMock(return_value=ItemUseResult(True, "You opened 1 payday box(es)."))
        monkeypatch.setattr(inventory_service, "use_item", use_item)

        message = make_message(f"{shop.prefix}use bank note", author)
        await shop.handle_message(message)

        use_item.assert_awaited_once_with(USER_ID, author.guild.id, BANK_NOTE, 1)
        assert "You opened 1 payday box(es)." in reply_texts(message)[0]

    @pytest.mark.asyncio
    async def test_use_without_item_waives_cooldown(self, shop, author, monkeypatch):
        monkeypatch.setattr(
            inventory_service,
            "use_item",
            AsyncMock(return_value=ItemUseResult(False, "You don't have enough Shovel.")),
        )
        message = make_message(f"{shop.prefix}use shovel", author)
        result = await shop.handle_message(message)

        assert result == Failure("❌ You don't have enough Shovel.", waive_cooldown=True)


class TestCashItems:
    """Consumables that pay out straight into the wallet."""

    @pytest.mark.asyncio
    async def test_dih_coin_pays_fixed_amount(self, fake_economy):
        definition = items_service.get_definition("Dih Coin")
        result = await definition.use(USER_ID, GUILD_ID, 3)

        assert result.success
        assert result.message == "You traded in 3 Dih Coin(s) and got 30 cm."
        assert fake_economy.ledger == [(USER_ID, 30, "dih-coin-reward")]

    @pytest.mark.parametrize(
        "name, low, high, reason",
        [
            ("snack_pack", 15, 40, "snack-pack-reward"),
            ("coffee_thermos", 70, 180, "coffee-thermos-reward"),
        ],
    )
    @pytest.mark.asyncio
    async def test_reward_range(self, fake_economy, name, low, high, reason):
        result = await items_service.get_definition(name).use(USER_ID, GUILD_ID, 2)

        assert result.success
        [(user_id, amount, recorded)] = fake_economy.ledger
        assert user_id == USER_ID
        assert 2 * low <= amount <= 2 * high
        assert recorded == reason

    def test_hunting_rifle_is_a_tool(self):
        rifle = items_service.get_definition("Hunting Rifle")
        assert rifle.type == "tool"
        assert rifle.use is None
