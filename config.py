import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ---------- deployment ----------

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")
POSTGRES_URI = os.getenv("POSTGRES_URI", "")
REDIS_URL = os.getenv("REDIS_URL", "")
IS_DEVEL = _env_flag("IS_DEVEL")
PGSSL_REJECT_UNAUTHORIZED = _env_flag("PGSSL_REJECT_UNAUTHORIZED", True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s: %(message)s"

PG_POOL_MIN_SIZE = 1
PG_POOL_MAX_SIZE = int(os.getenv("PG_POOL_MAX_SIZE", "10"))
PG_COMMAND_TIMEOUT = 20
DB_RETRY_ATTEMPTS = 3
DB_RETRY_BASE_DELAY = 0.25

# ---------- commands ----------

COMMAND_PREFIX = os.getenv("COMMAND_PREFIX", "$")
CURRENCY = "cm"

# seconds
COOLDOWNS = {
    "DEFAULT": 5,
    "ECONOMY": 3,
    "GAMBLING": 5,
    "ADMIN": 2,
    "STATS": 10,
}

COLORS = {
    "DEFAULT": 0x5865F2,
    "SUCCESS": 0x57F287,
    "ERROR": 0xED4245,
    "WARNING": 0xFEE75C,
    "INFO": 0x3498DB,
}

# ---------- coordination ----------

EXCLUSIVE_SESSION_TTL = 60
INTERACTION_SESSION_TTL = 30
# how long a rejected cooldown is remembered in-process
LOCAL_COOLDOWN_CACHE_SECONDS = 3.0
DEPLOY_LOCK_TTL = 10
STARTUP_LOCK_NAME = "bot-login"
STARTUP_LOCK_TTL = 30
STARTUP_LOCK_POLL_SECONDS = 1.0

# ---------- economy ----------

MIN_BALANCE = 0
STARTING_BANK_MAX = 5_000
DAILY_REWARD = 25
DAILY_COOLDOWN_SECONDS = 86_400
DAILY_KEY = "dailyClaimUntil"
LEADERBOARD_SIZE = 10
GUILD_STATS_DAYS = 30
# wallets above this count as rich in guild stats
RICH_THRESHOLD = 10_000

# per bank note: max(BANK_NOTE_MIN_INCREASE, bank_max * pct) + level bonus
BANK_NOTE_MIN_INCREASE = 500
BANK_NOTE_INCREASE_BPS = 1_000
BANK_NOTE_LEVEL_BONUS = 100

LOAN_OPTIONS = [
    {"id": "small", "amount": 1_000, "duration_days": 3, "interest_bps": 1_000},
    {"id": "medium", "amount": 5_000, "duration_days": 5, "interest_bps": 1_500},
    {"id": "large", "amount": 20_000, "duration_days": 7, "interest_bps": 2_500},
]

LEVELING = {
    "STATE_KEY": "levelData",
    "XP_COOLDOWN_KEY": "xpCooldownUntil",
    "XP_COOLDOWN_SECONDS": 30,
    "XP_PER_COMMAND_MIN": 5,
    "XP_PER_COMMAND_MAX": 15,
    "BASE_XP_TO_LEVEL": 100,
    "XP_GROWTH_BPS": 11_500,
}

# ---------- gambling ----------

DICE_PAYOUT = 6
COINFLIP_PAYOUT = 2
ROULETTE_COLOR_PAYOUT = 2
ROULETTE_NUMBER_PAYOUT = 36
ROULETTE_RED_NUMBERS = frozenset(
    {1, 3, 5, 7, 9, 12, 14, 16, 18, 19, 21, 23, 25, 27, 30, 32, 34, 36}
)
SLOT_REELS = ["🍒", "🍊", "🍋", "🍇", "🍉", "🍓", "⭐", "💎"]
# triple symbol -> multiplier; any other triple pays SLOT_TRIPLE_PAYOUT
SLOT_SPECIAL_TRIPLES = {"💎": 5.0, "⭐": 3.0}
SLOT_TRIPLE_PAYOUT = 2.0
SLOT_PAIR_PAYOUT = 1.5
WAGER_TIMEOUT_SECONDS = 30

# ---------- rob ----------

ROB = {
    "PROTECTION_KEY": "robProtectionUntil",
    "PROTECTION_SECONDS": 3_600,
    "ATTEMPT_LOCK_KEY": "robAttemptLockUntil",
    "ATTEMPT_LOCK_SECONDS": 10,
    "MIN_BALANCE_TO_ROB": 1,
    "MIN_BALANCE_RATIO_BPS": 1_000,
    "MAX_STEAL_OF_ROBBER_BALANCE_BPS": 30_000,
    "CHANCE_BASE": 0.55,
    "CHANCE_DECAY": 0.45,
    "CHANCE_MIN": 0.08,
}

# (min percent, max percent, weight)
ROB_STEAL_TIERS = [
    (0.05, 0.12, 45),
    (0.12, 0.25, 28),
    (0.25, 0.45, 16),
    (0.45, 0.75, 8),
    (0.75, 0.95, 2.8),
    (1.0, 1.0, 0.2),
]
ROB_FINE_TIERS = [
    (0.06, 0.12, 50),
    (0.12, 0.20, 30),
    (0.20, 0.35, 15),
    (0.35, 0.50, 5),
]

# ---------- dig ----------

DIG = {
    "TOOL_ITEM_NAME": "shovel",
    "COOLDOWN_KEY": "digCooldownUntil",
    "ACTION_COOLDOWN_SECONDS": 300,
    "REWARD_MIN": 30,
    "REWARD_MAX": 110,
    "BREAK_CHANCE_BPS": 1_500,
    "DEATH_CHANCE_BPS": 500,
    "DEATH_LOSS_MIN_PERCENT": 25,
    "DEATH_LOSS_MAX_PERCENT": 75,
}

DIG_SCALING = {
    "BALANCE_PIVOT": 6_000,
    "BALANCE_CURVE_POWER": 0.95,
    "BALANCE_MIN_MULT_BPS": 6_000,
    "BALANCE_MAX_MULT_BPS": 22_000,
    "LEVEL_BONUS_BPS_PER_LEVEL": 90,
    "LEVEL_BONUS_MAX_BPS": 7_000,
    "GLOBAL_MAX_MULT_BPS": 32_000,
    "REWARD_CAP_BASE": 110,
    "REWARD_BALANCE_CAP_BPS": 45,
}

DIG_SITES = [
    "You searched an old construction site.",
    "You dug around a ruined foundation.",
    "You explored a dusty field at dawn.",
    "You wandered a forgotten trail near the hills.",
]
DIG_ACTIONS = [
    "You drive the shovel down and clear packed dirt...",
    "You dig wider and sift through old rubble...",
    "You keep digging as the ground gets unstable...",
    "You pry up heavy soil and push deeper...",
]
DIG_FIND_MESSAGES = [
    "You uncovered valuables and sold them.",
    "You found old coins and traded them fast.",
    "You dug up scrap and antiques worth real money.",
    "You discovered buried trinkets and cashed out.",
]
DIG_DEATH_MESSAGES = [
    "The ground collapsed and trapped you.",
    "A hidden gas pocket ignited underground.",
    "A cave-in hit before you could react.",
    "You fell into a deep sinkhole.",
]
DIG_BREAK_MESSAGES = [
    "Your shovel handle snapped in half.",
    "Your shovel blade bent and broke.",
    "The shovel cracked under heavy rock.",
]

# ---------- hunt ----------

HUNT = {
    "TOOL_ITEM_NAME": "hunting_rifle",
    "COOLDOWN_KEY": "huntCooldownUntil",
    "ACTION_COOLDOWN_SECONDS": 300,
    "REWARD_MIN": 55,
    "REWARD_MAX": 165,
    "BREAK_CHANCE_BPS": 3_200,
    "DEATH_CHANCE_BPS": 800,
    "DEATH_LOSS_MIN_PERCENT": 25,
    "DEATH_LOSS_MAX_PERCENT": 75,
}

HUNT_SCALING = {
    "BALANCE_PIVOT": 7_500,
    "BALANCE_CURVE_POWER": 0.9,
    "BALANCE_MIN_MULT_BPS": 6_500,
    "BALANCE_MAX_MULT_BPS": 26_000,
    "LEVEL_BONUS_BPS_PER_LEVEL": 110,
    "LEVEL_BONUS_MAX_BPS": 9_000,
    "GLOBAL_MAX_MULT_BPS": 38_000,
    "REWARD_CAP_BASE": 180,
    "REWARD_BALANCE_CAP_BPS": 70,
}

HUNT_ENCOUNTERS = [
    "You tracked fresh footprints deep into the trees.",
    "You waited silently near a river crossing.",
    "You followed rustling noises through thick brush.",
    "You climbed to a rocky ridge for a better shot.",
]
HUNT_ACTIONS = [
    "You steady your aim and hold your breath...",
    "You move quietly and line up a careful shot...",
    "You track movement and squeeze the trigger...",
    "You push deeper and prepare for a final attempt...",
]
HUNT_LOOT_MESSAGES = [
    "You came back with valuable game.",
    "You sold your catch to local traders.",
    "You found a premium pelt and got paid well.",
    "You brought home a heavy haul and cashed out.",
]
HUNT_DEATH_MESSAGES = [
    "A wild beast charged you out of nowhere.",
    "Your footing slipped near a steep ravine.",
    "A misfire caused a critical accident.",
    "You got ambushed while tracking in dense fog.",
]
HUNT_BREAK_MESSAGES = [
    "Your rifle stock cracked during the hunt.",
    "Your rifle jammed hard and snapped beyond repair.",
    "Your rifle barrel got damaged and is unusable now.",
]

# ---------- crime ----------

CRIME = {
    "COOLDOWN_KEY": "crimeCooldownUntil",
    "ACTION_COOLDOWN_SECONDS": 420,
    "CHOICES_PER_RUN": 3,
    "SELECTION_TIMEOUT_SECONDS": 25,
    "DEATH_LOSS_MIN_PERCENT": 25,
    "DEATH_LOSS_MAX_PERCENT": 75,
    "JAIL_UNTIL_KEY": "jailUntil",
    "JAIL_CHANCE_MIN_BPS": 300,
    "JAIL_CHANCE_MAX_BPS": 1_800,
    "JAIL_MIN_MINUTES": 5,
    "JAIL_MAX_MINUTES": 15,
    # higher weight pushes the jail time toward the maximum
    "JAIL_WEIGHT_MIN": 1.1,
    "JAIL_WEIGHT_MAX": 3.8,
    # reward range used to rank how serious a crime is
    "SEVERITY_REWARD_MIN": 25,
    "SEVERITY_REWARD_MAX": 1_600,
}

CRIME_SCALING = {
    "BALANCE_PIVOT": 9_000,
    "BALANCE_CURVE_POWER": 0.9,
    "BALANCE_MIN_MULT_BPS": 7_000,
    "BALANCE_MAX_MULT_BPS": 24_000,
    "LEVEL_BONUS_BPS_PER_LEVEL": 100,
    "LEVEL_BONUS_MAX_BPS": 8_000,
    "GLOBAL_MAX_MULT_BPS": 36_000,
    "REWARD_CAP_BASE": 400,
    "REWARD_BALANCE_CAP_BPS": 120,
}

CRIMES = [
    {
        "id": "pickpocket",
        "label": "Pickpocket",
        "emoji": "🤏",
        "reward_min": 25,
        "reward_max": 90,
        "fail_chance_bps": 2_500,
        "death_chance_bps": 100,
        "fine_min_percent": 5,
        "fine_max_percent": 12,
        "site_text": "You drift through a crowded market square.",
        "action_text": "You brush past a distracted tourist...",
        "success_text": "You slipped a fat wallet out unnoticed.",
        "fail_text": "The tourist grabbed your wrist and called a guard.",
        "death_text": "You picked the wrong pocket. It belonged to a very angry bodybuilder.",
    },
    {
        "id": "shoplift",
        "label": "Shoplift",
        "emoji": "🛒",
        "reward_min": 40,
        "reward_max": 140,
        "fail_chance_bps": 3_000,
        "death_chance_bps": 150,
        "fine_min_percent": 6,
        "fine_max_percent": 14,
        "site_text": "You walk into an electronics store with a big coat.",
        "action_text": "You pocket a pair of headphones near the blind spot...",
        "success_text": "You walked out and sold the loot around the corner.",
        "fail_text": "The alarm went off at the door.",
        "death_text": "You ran from security straight into traffic.",
    },
    {
        "id": "car_break_in",
        "label": "Car Break-in",
        "emoji": "🚗",
        "reward_min": 90,
        "reward_max": 280,
        "fail_chance_bps": 3_600,
        "death_chance_bps": 300,
        "fine_min_percent": 8,
        "fine_max_percent": 16,
        "site_text": "You scout a dim parking garage.",
        "action_text": "You pop the lock of a shiny sedan...",
        "success_text": "You grabbed a laptop bag from the back seat and vanished.",
        "fail_text": "The owner came back early and a patrol car was nearby.",
        "death_text": "The car had a guard dog inside. It did not like you.",
    },
    {
        "id": "atm_skimming",
        "label": "ATM Skimming",
        "emoji": "💳",
        "reward_min": 150,
        "reward_max": 450,
        "fail_chance_bps": 4_200,
        "death_chance_bps": 250,
        "fine_min_percent": 10,
        "fine_max_percent": 18,
        "site_text": "You find a quiet ATM at a gas station.",
        "action_text": "You fit the skimmer and wait for card holders...",
        "success_text": "You cloned a handful of cards and cashed out.",
        "fail_text": "The bank flagged the skimmer within the hour.",
        "death_text": "The skimmer shorted out and the ATM fried you.",
    },
    {
        "id": "jewelry_heist",
        "label": "Jewelry Heist",
        "emoji": "💎",
        "reward_min": 400,
        "reward_max": 1_000,
        "fail_chance_bps": 5_200,
        "death_chance_bps": 700,
        "fine_min_percent": 12,
        "fine_max_percent": 22,
        "site_text": "You case a jewelry store after closing time.",
        "action_text": "You cut the glass and reach for the display...",
        "success_text": "You walked away with a bag of rings and a clean getaway.",
        "fail_text": "A silent alarm had already called the police.",
        "death_text": "The night guard was armed and not in the mood.",
    },
    {
        "id": "bank_job",
        "label": "Bank Job",
        "emoji": "🏦",
        "reward_min": 700,
        "reward_max": 1_600,
        "fail_chance_bps": 6_200,
        "death_chance_bps": 1_200,
        "fine_min_percent": 15,
        "fine_max_percent": 25,
        "site_text": "You and a crew gather outside a small bank branch.",
        "action_text": "You storm in and head for the vault...",
        "success_text": "The vault was open and the getaway car was waiting.",
        "fail_text": "The crew panicked and the police surrounded the building.",
        "death_text": "The heist went loud and you did not make it out.",
    },
]

# ---------- blackjack ----------

BLACKJACK = {
    "RANKS": ["A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K"],
    "SUITS": ["♠️", "♥️", "♦️", "♣️"],
    "DEALER_STAND_VALUE": 17,
    # natural blackjack pays stake + 1.5x
    "NATURAL_PAYOUT": 1.5,
    "TIMEOUT_SECONDS": 30,
    # a hit briefly takes the game out of the store before writing it back
    "CLAIM_GRACE_SECONDS": 1.0,
}

# ---------- work ----------

WORK_STATE_KEY = "workState"
WORK_LOCK_KEY = "workStateOperationLockUntil"
WORK_LOCK_SECONDS = 8
WORKS_REQUIRED_FOR_JOB_CHANGE = 20

# id -> (name, aliases, entry fee, cooldown minutes, acceptance chance, (min, max) pay)
WORK_JOBS: dict[str, tuple[str, tuple[str, ...], int, int, float, tuple[int, int]]] = {
    "beggar": ("Beggar", ("beg",), 0, 10, 1.0, (8, 22)),
    "dishwasher": ("Dishwasher", ("dish",), 400, 15, 0.9, (20, 55)),
    "cashier": ("Cashier", ("retail",), 1_500, 25, 0.78, (60, 140)),
    "mechanic": ("Mechanic", ("tech",), 6_000, 40, 0.65, (170, 360)),
    "developer": ("Developer", ("dev",), 20_000, 60, 0.55, (420, 920)),
    "executive": ("Executive", ("ceo",), 75_000, 120, 0.45, (1_200, 2_800)),
}

# ---------- shop ----------

SHOP_PAGE_SIZE = 8
INVENTORY_PAGE_SIZE = 10
MAX_ITEM_QUANTITY = 100

# ---------- help ----------

HELP_PAGE_SIZE = 8
HELP_SESSION_TTL = 300
