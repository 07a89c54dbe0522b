"""Levels earned from successful command activity."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Optional

from config import LEVELING
from services import jsonb_service
from utils import BPS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progression:
    level: int
    total_xp: int
    current_xp: int
    xp_to_next: int


@dataclass(frozen=True)
class XpAward:
    awarded: bool
    xp_gain: int = 0
    leveled_up: bool = False
    progression: Optional[Progression] = None


def _growth_bps() -> int:
    return max(BPS + 1, int(LEVELING["XP_GROWTH_BPS"]))


def next_requirement(current: int) -> int:
    scaled = current * _growth_bps() // BPS
    return scaled if scaled > current else current + 1


def calculate_progression(total_xp: int) -> Progression:
    total_xp = max(0, int(total_xp))
    level = 1
    remaining = total_xp
    xp_to_next = int(LEVELING["BASE_XP_TO_LEVEL"])
    while remaining >= xp_to_next:
        remaining -= xp_to_next
        level += 1
        xp_to_next = next_requirement(xp_to_next)
    return Progression(level, total_xp, remaining, xp_to_next)


def _stored_total_xp(raw: Any) -> int:
    if not isinstance(raw, dict):
        return 0
    try:
        return max(0, int(raw.get("totalXp", 0)))
    except (TypeError, ValueError):
        return 0


async def get_level_data(user_id: int, guild_id: int) -> Progression:
    raw = await jsonb_service.get_key(user_id, guild_id, LEVELING["STATE_KEY"])
    return calculate_progression(_stored_total_xp(raw))


async def award_command_xp(user_id: int, guild_id: int, command_name: str) -> XpAward:
    now_ms = int(time.time() * 1000)
    lock = await jsonb_service.acquire_timed_key(
        user_id,
        guild_id,
        LEVELING["XP_COOLDOWN_KEY"],
        now_ms + LEVELING["XP_COOLDOWN_SECONDS"] * 1000,
        now_ms,
    )
    if not lock.acquired:
        return XpAward(False)

    before = await get_level_data(user_id, guild_id)
    xp_gain = random.randint(LEVELING["XP_PER_COMMAND_MIN"], LEVELING["XP_PER_COMMAND_MAX"])
    after = calculate_progression(before.total_xp + xp_gain)
    await jsonb_service.set_key(
        user_id,
        guild_id,
        LEVELING["STATE_KEY"],
        {"totalXp": str(after.total_xp), "level": after.level, "updatedAt": now_ms},
    )
    leveled_up = after.level > before.level
    if leveled_up:
        logger.info(
            "User %s in %s leveled up %s -> %s via %s",
            user_id,
            guild_id,
            before.level,
            after.level,
            command_name,
        )
    return XpAward(True, xp_gain, leveled_up, after)
