import math
import random
import re
from typing import Optional, Sequence

PG_BIGINT_MAX = 9_223_372_036_854_775_807
PG_BIGINT_MIN = -9_223_372_036_854_775_808
BPS = 10_000

_MENTION_RE = re.compile(r"^<@!?([0-9]{15,21})>$")
_AMOUNT_RE = re.compile(r"^[0-9][0-9,_]*$")
_NUMBER_RE = re.compile(r"[0-9]+")


def ensure_bigint_range(value: int, label: str = "Amount") -> int:
    if value > PG_BIGINT_MAX or value < PG_BIGINT_MIN:
        raise ValueError(f"{label} is out of range.")
    return value


def parse_positive_amount(raw: str, label: str = "Amount") -> int:
    """Parse a user supplied amount such as ``500`` or ``1,000``.

    Raises ``ValueError`` with a user-facing message when the value is not a
    positive whole number that fits a Postgres BIGINT.
    """

    text = raw.strip()
    if not _AMOUNT_RE.match(text):
        raise ValueError(f"{label} must be a positive whole number.")
    value = int(text.replace(",", "").replace("_", ""))
    if value <= 0:
        raise ValueError(f"{label} must be greater than zero.")
    return ensure_bigint_range(value, label)


def is_number(raw: str) -> bool:
    """ASCII digits only; ``str.isdigit`` also accepts things like ``²``."""
    return _NUMBER_RE.fullmatch(raw) is not None


def parse_user_id(raw: str) -> Optional[int]:
    """Return the user id from a mention (``<@id>``/``<@!id>``) or a bare id."""
    match = _MENTION_RE.match(raw.strip())
    if match:
        return int(match.group(1))
    if is_number(raw) and 15 <= len(raw) <= 21:
        return int(raw)
    return None


def format_money(amount: int) -> str:
    return f"{amount:,}"


def format_remaining(seconds: float) -> str:
    total = max(0, math.ceil(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_percent(value: float) -> str:
    return f"{value * 100:.1f}%"


def floor_percent_of(amount: int, percent: float) -> int:
    """``floor(amount * percent)`` using basis points to stay in integers."""
    return amount * int(round(percent * BPS)) // BPS


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def roll_chance_bps(chance_bps: int) -> bool:
    return random.randrange(BPS) < chance_bps


def pick_weighted_percent(tiers: Sequence[tuple[float, float, float]]) -> float:
    """Pick a tier by weight and return a uniform percent inside it."""
    weights = [weight for _, _, weight in tiers]
    low, high, _ = random.choices(tiers, weights=weights, k=1)[0]
    if low == high:
        return low
    return random.uniform(low, high)


def compute_scaled_reward(
    base_reward: int, total_balance: int, level: int, scaling: dict
) -> int:
    """Scale an adventure reward by the player's wealth and level.

    Wealth scaling follows ``(bal / (bal + pivot)) ** curve`` mapped onto the
    ``[min, max]`` multiplier range, the level adds a capped bonus on top and
    the product is limited by the global multiplier cap. The final reward is
    at least 1 and never exceeds ``cap_base + bal * cap_bps``.
    """

    if base_reward <= 0:
        return 0
    balance = max(0, total_balance)
    pivot = scaling["BALANCE_PIVOT"]
    ratio = balance / (balance + pivot) if balance + pivot > 0 else 0.0
    curved = ratio ** scaling["BALANCE_CURVE_POWER"]

    min_bps = scaling["BALANCE_MIN_MULT_BPS"]
    max_bps = scaling["BALANCE_MAX_MULT_BPS"]
    balance_bps = min_bps + math.floor((max_bps - min_bps) * curved)

    level_bonus = min(
        scaling["LEVEL_BONUS_MAX_BPS"],
        max(0, level - 1) * scaling["LEVEL_BONUS_BPS_PER_LEVEL"],
    )
    level_bps = BPS + level_bonus

    combined_bps = min(scaling["GLOBAL_MAX_MULT_BPS"], balance_bps * level_bps // BPS)
    reward = max(1, base_reward * combined_bps // BPS)

    cap = scaling["REWARD_CAP_BASE"] + balance * scaling["REWARD_BALANCE_CAP_BPS"] // BPS
    return min(reward, cap)
