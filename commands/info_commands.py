import math

import discord
from discord import ui

from commands.base import BaseCommand, Category, CommandContext, Ok, make_embed
from config import COMMAND_PREFIX, COOLDOWNS, HELP_PAGE_SIZE, HELP_SESSION_TTL
from permissions import describe_permission, get_permission_rule

HELP_SESSION = "help"


# ---------- help pages ----------


def build_pages(handler) -> list[discord.Embed]:
    categories = handler.commands_by_category()
    overview = make_embed(
        "Bot Help",
        f"Use `{COMMAND_PREFIX}help <command>` for detailed command info.\n"
        "Use the buttons below to browse all categories.",
    )
    overview.add_field(
        name="Categories",
        value="\n".join(
            f"• **{category}**: {len(commands)} command(s)"
            for category, commands in sorted(categories.items())
        )
        or "No commands available.",
        inline=False,
    )
    pages = [overview]

    for category, commands in sorted(categories.items()):
        chunks = [commands[i : i + HELP_PAGE_SIZE] for i in range(0, len(commands), HELP_PAGE_SIZE)]
        for index, chunk in enumerate(chunks, start=1):
            suffix = f" ({index}/{len(chunks)})" if len(chunks) > 1 else ""
            embed = make_embed(f"{category} Commands{suffix}")
            for command in chunk:
                aliases = ", ".join(f"`{COMMAND_PREFIX}{a}`" for a in command.aliases) or "None"
                embed.add_field(
                    name=f"{COMMAND_PREFIX}{command.name}",
                    value=f"{command.description}\nUsage: `{command.usage_text}`\nAliases: {aliases}",
                    inline=False,
                )
            pages.append(embed)
    return pages


def command_detail(command: BaseCommand) -> discord.Embed:
    embed = make_embed(f"{COMMAND_PREFIX}{command.name}", command.description, "INFO")
    embed.add_field(name="Category", value=command.category, inline=True)
    embed.add_field(name="Cooldown", value=f"{command.cooldown} second(s)", inline=True)
    embed.add_field(name="Usage", value=f"`{command.usage_text}`", inline=False)
    if command.aliases:
        embed.add_field(
            name="Aliases",
            value=", ".join(f"`{COMMAND_PREFIX}{alias}`" for alias in command.aliases),
            inline=False,
        )
    rule = get_permission_rule(command.name, command.permissions)
    if rule.permissions or rule.owner_only:
        embed.add_field(name="Required Permissions", value=describe_permission(rule), inline=False)
    if command.exclusive_session:
        embed.add_field(
            name="Session Mode",
            value="Exclusive (blocks other exclusive commands until finished)",
            inline=False,
        )
    return embed


class HelpNavigation(ui.View):
    def __init__(self, page: int, total: int):
        super().__init__(timeout=HELP_SESSION_TTL)
        at_start = page == 0
        at_end = page >= total - 1
        for action, label, disabled in (
            ("first", "⏮️", at_start),
            ("prev", "◀️", at_start),
            ("page", f"{page + 1}/{total}", True),
            ("next", "▶️", at_end),
            ("last", "⏭️", at_end),
        ):
            self.add_item(
                ui.Button(
                    label=label,
                    custom_id=f"{HELP_SESSION}:{action}",
                    style=discord.ButtonStyle.primary if action == "page" else discord.ButtonStyle.secondary,
                    disabled=disabled,
                )
            )


def next_page(action: str, current: int, total: int) -> int:
    if action == "first":
        return 0
    if action == "prev":
        return max(0, current - 1)
    if action == "next":
        return min(total - 1, current + 1)
    if action == "last":
        return total - 1
    return max(0, min(current, total - 1))


class HelpCommand(BaseCommand):
    name = "help"
    description = "Shows all available commands."
    category = Category.INFO
    usage = "help [command]"
    aliases = ("h", "commands")
    interaction_prefix = HELP_SESSION

    async def execute(self, ctx: CommandContext):
        if ctx.args:
            command = ctx.handler.get(ctx.args[0])
            if command is None or not command.enabled:
                await ctx.reply(f"Command `{ctx.args[0].lower()}` not found.")
                return Ok()
            await ctx.reply(embed=command_detail(command))
            return Ok()

        pages = build_pages(ctx.handler)
        if len(pages) == 1:
            await ctx.reply(embed=pages[0])
            return Ok()
        message = await ctx.reply(embed=pages[0], view=HelpNavigation(0, len(pages)))
        await ctx.coordinator.set_session(
            HELP_SESSION, message.id, {"userId": ctx.user_id, "currentPage": 0}, HELP_SESSION_TTL
        )
        return Ok()

    async def handle_interaction(self, interaction: discord.Interaction, handler) -> None:
        action = (interaction.data or {}).get("custom_id", "").split(":", 1)[-1]
        if action == "page":
            await interaction.response.defer()
            return

        session = await handler.coordinator.get_session(HELP_SESSION, interaction.message.id)
        if session is None:
            await interaction.response.send_message(
                "This help menu has expired. Run `help` again.", ephemeral=True
            )
            return
        if session["userId"] != interaction.user.id:
            await interaction.response.send_message("These buttons are not for you!", ephemeral=True)
            return

        pages = build_pages(handler)
        page = next_page(action, int(session.get("currentPage", 0)), len(pages))
        await interaction.response.edit_message(embed=pages[page], view=HelpNavigation(page, len(pages)))
        await handler.coordinator.set_session(
            HELP_SESSION,
            interaction.message.id,
            {"userId": session["userId"], "currentPage": page},
            HELP_SESSION_TTL,
        )


class PingCommand(BaseCommand):
    name = "ping"
    description = "Check the bot's latency."
    category = Category.INFO
    usage = "ping"
    aliases = ("latency",)

    async def execute(self, ctx: CommandContext):
        sent = await ctx.reply("Pinging...")
        latency = (sent.created_at - ctx.message.created_at).total_seconds() * 1000
        api_latency = self.bot.latency * 1000
        api_text = f"{round(api_latency)}ms" if math.isfinite(api_latency) else "n/a"
        await sent.edit(content=f"🏓 Pong!\nBot Latency: {round(latency)}ms\nAPI Latency: {api_text}")
        return Ok()


def setup(handler):
    handler.register(HelpCommand(handler.bot))
    handler.register(PingCommand(handler.bot))
