"""Static command permission configuration.

Commands declare the Discord guild permissions they need by name (for example
``manage_guild``). This module resolves those names against a member and keeps
an optional override table so server operators can tighten a command without
touching its definition. The rules live in version control so they are easy
to audit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

import discord


@dataclass(frozen=True)
class PermissionRule:
    permissions: frozenset[str] = frozenset()
    owner_only: bool = False


ALLOW_EVERYONE = PermissionRule()

# Extra requirements on top of what a command declares itself.
COMMAND_PERMISSION_OVERRIDES: Mapping[str, PermissionRule] = {
    "endsession": PermissionRule(permissions=frozenset({"manage_guild"})),
}


def get_permission_rule(command: str, declared: Iterable[str] = ()) -> PermissionRule:
    override = COMMAND_PERMISSION_OVERRIDES.get(command.lower(), ALLOW_EVERYONE)
    return PermissionRule(
        permissions=override.permissions | frozenset(declared),
        owner_only=override.owner_only,
    )


def _pretty(name: str) -> str:
    return name.replace("_", " ").title()


def missing_permissions(member: discord.Member, rule: PermissionRule) -> list[str]:
    """Return the human readable names of permissions *member* lacks."""

    guild = getattr(member, "guild", None)
    if guild is not None and member.id == guild.owner_id:
        # The server owner always has access to every command.
        return []
    if rule.owner_only:
        return ["Server Owner"]

    granted = member.guild_permissions
    if granted.administrator:
        return []
    return sorted(
        _pretty(name) for name in rule.permissions if not getattr(granted, name, False)
    )


def describe_permission(rule: PermissionRule) -> str:
    if rule.owner_only:
        return "Server owner only"
    if not rule.permissions:
        return "Everyone"
    return ", ".join(sorted(_pretty(name) for name in rule.permissions))
