"""Wallets, bank accounts and loans.

Every mutation runs inside a transaction that locks the affected ``economy``
rows with ``SELECT ... FOR UPDATE`` so concurrent commands cannot overdraw a
wallet, and writes a ``history`` row next to the balance change.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import asyncpg

from config import (
    BANK_NOTE_INCREASE_BPS,
    BANK_NOTE_LEVEL_BONUS,
    BANK_NOTE_MIN_INCREASE,
    DAILY_COOLDOWN_SECONDS,
    DAILY_KEY,
    DAILY_REWARD,
    GUILD_STATS_DAYS,
    LOAN_OPTIONS,
    MIN_BALANCE,
    RICH_THRESHOLD,
)
from db.DBHelper import fetch, fetchrow, fetchval, transaction
from services import jsonb_service
from utils import BPS, ensure_bigint_range, format_money, is_number

logger = logging.getLogger(__name__)


class EconomyError(Exception):
    """A rule of the economy was violated; the message is shown to the user."""


class InsufficientFunds(EconomyError):
    pass


class DebtLocked(EconomyError):
    pass


class LoanError(EconomyError):
    pass


class BankError(EconomyError):
    pass


@dataclass(frozen=True)
class BankData:
    wallet: int
    bank: int
    bank_max: int

    @property
    def available_space(self) -> int:
        return max(0, self.bank_max - self.bank)

    @property
    def total(self) -> int:
        return self.wallet + self.bank


@dataclass(frozen=True)
class BankMove:
    moved: int
    data: BankData


@dataclass(frozen=True)
class BalanceUpdate:
    balance: int
    garnished: int = 0
    # what actually reached the wallet, after garnishing or clamping
    change: int = 0


@dataclass(frozen=True)
class TransferResult:
    from_balance: int
    to_balance: int


@dataclass(frozen=True)
class GuildStats:
    users: int
    wallets: int
    banks: int
    richest: int
    rich_users: int

    @property
    def average_wallet(self) -> float:
        return self.wallets / self.users if self.users else 0.0


@dataclass(frozen=True)
class GuildActivity:
    active_users: int
    games: int
    gambled: int
    gained: int
    lost: int
    daily_claims: int

    @property
    def net_change(self) -> int:
        return self.gained + self.lost


@dataclass(frozen=True)
class BankUpgrade:
    level: int
    total_increase: int
    bank_max: int


@dataclass(frozen=True)
class LoanOption:
    id: str
    amount: int
    duration_days: int
    interest_bps: int

    @property
    def repayment(self) -> int:
        return self.amount + self.amount * self.interest_bps // BPS


@dataclass(frozen=True)
class Loan:
    option_id: str
    principal: int
    debt: int
    status: str
    taken_at: datetime
    due_at: datetime


@dataclass(frozen=True)
class LoanState:
    loan: Optional[Loan]
    wallet: int
    bank: int

    @property
    def has_loan(self) -> bool:
        return self.loan is not None

    @property
    def total(self) -> int:
        return self.wallet + self.bank


@dataclass(frozen=True)
class LoanPayment:
    paid: int
    state: LoanState


@dataclass(frozen=True)
class DailyClaim:
    claimed: bool
    balance: int = 0
    available_at_ms: int = 0
    garnished: int = 0


# ---------- helpers ----------


def _ids(user_id: int, guild_id: int) -> tuple[str, str]:
    return str(user_id), str(guild_id)


async def _lock_row(conn: asyncpg.Connection, user_id: int, guild_id: int) -> asyncpg.Record:
    uid, gid = _ids(user_id, guild_id)
    await conn.execute(
        "INSERT INTO economy (userid, guildid) VALUES ($1, $2) ON CONFLICT DO NOTHING",
        uid,
        gid,
    )
    return await conn.fetchrow(
        """
        SELECT balance, bank_balance, bank_max FROM economy
        WHERE userid = $1 AND guildid = $2
        FOR UPDATE
        """,
        uid,
        gid,
    )


async def _record_history(
    conn: asyncpg.Connection,
    user_id: int,
    guild_id: int,
    entry_type: str,
    amount: int,
    item_id: Optional[int] = None,
):
    await conn.execute(
        "INSERT INTO history (userid, guildid, type, itemid, amount) VALUES ($1, $2, $3, $4, $5)",
        str(user_id),
        str(guild_id),
        entry_type,
        item_id,
        amount,
    )


def _loan_from_row(row: asyncpg.Record) -> Loan:
    return Loan(
        option_id=row["option_id"],
        principal=row["principal"],
        debt=row["debt"],
        status=row["status"],
        taken_at=row["taken_at"],
        due_at=row["due_at"],
    )


async def _lock_loan(conn: asyncpg.Connection, user_id: int, guild_id: int) -> Optional[Loan]:
    """Lock the user's loan row and flag it delinquent once it is overdue."""
    row = await conn.fetchrow(
        "SELECT * FROM loans WHERE userid = $1 AND guildid = $2 FOR UPDATE",
        *_ids(user_id, guild_id),
    )
    if row is None:
        return None
    loan = _loan_from_row(row)
    if loan.status == "active" and loan.due_at <= datetime.now(timezone.utc):
        await conn.execute(
            "UPDATE loans SET status = 'delinquent' WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
        )
        logger.info("Loan of %s in %s is now delinquent (debt %s)", user_id, guild_id, loan.debt)
        loan = replace(loan, status="delinquent")
    return loan


async def _set_loan_debt(conn: asyncpg.Connection, user_id: int, guild_id: int, debt: int):
    if debt <= 0:
        await conn.execute(
            "DELETE FROM loans WHERE userid = $1 AND guildid = $2", *_ids(user_id, guild_id)
        )
    else:
        await conn.execute(
            "UPDATE loans SET debt = $3 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            debt,
        )


# ---------- wallet ----------


async def get_user_data(user_id: int, guild_id: int) -> BankData:
    async with transaction() as conn:
        uid, gid = _ids(user_id, guild_id)
        await conn.execute(
            "INSERT INTO economy (userid, guildid) VALUES ($1, $2) ON CONFLICT DO NOTHING",
            uid,
            gid,
        )
        row = await conn.fetchrow(
            "SELECT balance, bank_balance, bank_max FROM economy WHERE userid = $1 AND guildid = $2",
            uid,
            gid,
        )
    return BankData(row["balance"], row["bank_balance"], row["bank_max"])


async def get_balance(user_id: int, guild_id: int) -> int:
    balance = await fetchval(
        "SELECT balance FROM economy WHERE userid = $1 AND guildid = $2",
        *_ids(user_id, guild_id),
    )
    return int(balance or 0)


async def update_balance(
    user_id: int,
    guild_id: int,
    delta: int,
    reason: str,
    *,
    garnish: bool = False,
    clamp: bool = False,
) -> BalanceUpdate:
    """Add *delta* (may be negative) to the wallet.

    With ``garnish=True`` positive earnings first pay down a delinquent loan.
    Raises ``InsufficientFunds`` if the wallet would drop below the minimum,
    unless ``clamp=True``, in which case the debit stops at the minimum.
    """

    ensure_bigint_range(delta)
    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        garnished = 0
        if garnish and delta > 0:
            loan = await _lock_loan(conn, user_id, guild_id)
            if loan is not None and loan.status == "delinquent":
                garnished = min(delta, loan.debt)
                await _set_loan_debt(conn, user_id, guild_id, loan.debt - garnished)
                await _record_history(conn, user_id, guild_id, "loan-garnish", garnished)
                delta -= garnished

        new_balance = row["balance"] + delta
        if new_balance < MIN_BALANCE and clamp:
            delta = min(0, MIN_BALANCE - row["balance"])
            new_balance = row["balance"] + delta
        if new_balance < MIN_BALANCE:
            raise InsufficientFunds(
                f"Insufficient funds: you have {format_money(row['balance'])} but need "
                f"{format_money(-delta)}."
            )
        ensure_bigint_range(new_balance, "Balance")
        await conn.execute(
            "UPDATE economy SET balance = $3 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            new_balance,
        )
        await _record_history(conn, user_id, guild_id, reason, delta)

    logger.info(
        "Balance %s/%s %+d (%s) -> %s%s",
        guild_id,
        user_id,
        delta,
        reason,
        new_balance,
        f", garnished {garnished}" if garnished else "",
    )
    return BalanceUpdate(new_balance, garnished, delta)


async def transfer_balance(
    from_user_id: int,
    to_user_id: int,
    guild_id: int,
    amount: int,
    reason: str,
    *,
    check_debt: bool = True,
) -> TransferResult:
    if amount <= 0:
        raise EconomyError("Transfer amount must be positive.")
    if from_user_id == to_user_id:
        raise EconomyError("You cannot transfer to yourself.")
    ensure_bigint_range(amount)

    async with transaction() as conn:
        # Lock in a stable order so two opposite transfers cannot deadlock.
        rows = {}
        for uid in sorted((from_user_id, to_user_id), key=str):
            rows[uid] = await _lock_row(conn, uid, guild_id)

        if check_debt:
            loan = await _lock_loan(conn, from_user_id, guild_id)
            if loan is not None and loan.status == "delinquent":
                raise DebtLocked(
                    "Transfers are disabled until your delinquent debt is cleared."
                )

        sender_balance = rows[from_user_id]["balance"]
        if sender_balance < amount:
            raise InsufficientFunds(
                f"Insufficient funds: you have {format_money(sender_balance)} but need "
                f"{format_money(amount)}."
            )
        from_balance = sender_balance - amount
        to_balance = ensure_bigint_range(rows[to_user_id]["balance"] + amount, "Balance")

        await conn.execute(
            "UPDATE economy SET balance = $3 WHERE userid = $1 AND guildid = $2",
            *_ids(from_user_id, guild_id),
            from_balance,
        )
        await conn.execute(
            "UPDATE economy SET balance = $3 WHERE userid = $1 AND guildid = $2",
            *_ids(to_user_id, guild_id),
            to_balance,
        )
        await _record_history(conn, from_user_id, guild_id, f"{reason}-out", -amount)
        await _record_history(conn, to_user_id, guild_id, f"{reason}-in", amount)

    logger.info(
        "Transfer %s in %s: %s -> %s (%s)", amount, guild_id, from_user_id, to_user_id, reason
    )
    return TransferResult(from_balance, to_balance)


async def get_top_users(guild_id: int, limit: int = 10) -> list[tuple[int, int]]:
    limit = max(1, min(limit, 100))
    rows = await fetch(
        """
        SELECT userid, balance FROM economy
        WHERE guildid = $1 AND balance > 0
        ORDER BY balance DESC, userid
        LIMIT $2
        """,
        str(guild_id),
        limit,
    )
    return [(int(row["userid"]), row["balance"]) for row in rows]


async def get_user_rank(user_id: int, guild_id: int) -> Optional[int]:
    rank = await fetchval(
        """
        SELECT COUNT(*) + 1 FROM economy
        WHERE guildid = $2
          AND balance > (SELECT balance FROM economy WHERE userid = $1 AND guildid = $2)
        """,
        *_ids(user_id, guild_id),
    )
    if rank is None:
        return None
    exists = await fetchval(
        "SELECT 1 FROM economy WHERE userid = $1 AND guildid = $2", *_ids(user_id, guild_id)
    )
    return int(rank) if exists else None


async def get_guild_stats(guild_id: int) -> GuildStats:
    row = await fetchrow(
        """
        SELECT COUNT(*) AS users,
               COALESCE(SUM(balance), 0) AS wallets,
               COALESCE(SUM(bank_balance), 0) AS banks,
               COALESCE(MAX(balance), 0) AS richest,
               COUNT(*) FILTER (WHERE balance > $2) AS rich_users
        FROM economy WHERE guildid = $1
        """,
        str(guild_id),
        RICH_THRESHOLD,
    )
    return GuildStats(
        users=row["users"],
        wallets=int(row["wallets"]),
        banks=int(row["banks"]),
        richest=int(row["richest"]),
        rich_users=row["rich_users"],
    )


async def get_guild_activity(guild_id: int, days: int = GUILD_STATS_DAYS) -> GuildActivity:
    """Totals over the ``history`` rows of the last *days* days."""

    row = await fetchrow(
        """
        SELECT COUNT(DISTINCT userid) AS active_users,
               COUNT(*) FILTER (WHERE type LIKE '%-bet') AS games,
               COALESCE(SUM(-amount) FILTER (WHERE type LIKE '%-bet'), 0) AS gambled,
               COALESCE(SUM(amount) FILTER (WHERE amount > 0), 0) AS gained,
               COALESCE(SUM(amount) FILTER (WHERE amount < 0), 0) AS lost,
               COUNT(*) FILTER (WHERE type = 'daily') AS daily_claims
        FROM history
        WHERE guildid = $1 AND created_at >= NOW() - make_interval(days => $2)
        """,
        str(guild_id),
        days,
    )
    return GuildActivity(
        active_users=row["active_users"],
        games=row["games"],
        gambled=int(row["gambled"]),
        gained=int(row["gained"]),
        lost=int(row["lost"]),
        daily_claims=row["daily_claims"],
    )


# ---------- daily ----------


async def claim_daily(user_id: int, guild_id: int, now_ms: int) -> DailyClaim:
    lock = await jsonb_service.acquire_timed_key(
        user_id, guild_id, DAILY_KEY, now_ms + DAILY_COOLDOWN_SECONDS * 1000, now_ms
    )
    if not lock.acquired:
        return DailyClaim(False, available_at_ms=lock.value)
    update = await update_balance(user_id, guild_id, DAILY_REWARD, "daily", garnish=True)
    return DailyClaim(True, balance=update.balance, garnished=update.garnished)


# ---------- bank ----------


async def get_bank_data(user_id: int, guild_id: int) -> BankData:
    return await get_user_data(user_id, guild_id)


async def deposit_to_bank(user_id: int, guild_id: int, amount: Optional[int] = None) -> BankMove:
    """Move *amount* (or as much as fits when ``None``) from wallet to bank."""

    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        wallet, bank, bank_max = row["balance"], row["bank_balance"], row["bank_max"]
        space = max(0, bank_max - bank)
        if amount is None:
            amount = min(wallet, space)
            if amount <= 0:
                raise BankError(
                    "Your bank is full." if space <= 0 else "You have nothing to deposit."
                )
        if amount > wallet:
            raise InsufficientFunds(
                f"You only have {format_money(wallet)} in your wallet."
            )
        if amount > space:
            raise BankError(f"Your bank can only hold {format_money(space)} more.")

        wallet -= amount
        bank += amount
        await conn.execute(
            "UPDATE economy SET balance = $3, bank_balance = $4 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            wallet,
            bank,
        )
        await _record_history(conn, user_id, guild_id, "bank-deposit", amount)
    return BankMove(amount, BankData(wallet, bank, bank_max))


async def withdraw_from_bank(user_id: int, guild_id: int, amount: Optional[int] = None) -> BankMove:
    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        wallet, bank, bank_max = row["balance"], row["bank_balance"], row["bank_max"]
        if amount is None:
            amount = bank
            if amount <= 0:
                raise BankError("Your bank is empty.")
        if amount > bank:
            raise InsufficientFunds(f"You only have {format_money(bank)} in your bank.")

        wallet = ensure_bigint_range(wallet + amount, "Balance")
        bank -= amount
        await conn.execute(
            "UPDATE economy SET balance = $3, bank_balance = $4 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            wallet,
            bank,
        )
        await _record_history(conn, user_id, guild_id, "bank-withdraw", amount)
    return BankMove(amount, BankData(wallet, bank, bank_max))


def bank_note_increase(bank_max: int, level: int) -> int:
    scaled = bank_max * BANK_NOTE_INCREASE_BPS // BPS
    return max(BANK_NOTE_MIN_INCREASE, scaled) + max(1, level) * BANK_NOTE_LEVEL_BONUS


async def expand_bank_capacity(
    user_id: int, guild_id: int, quantity: int, level: int
) -> BankUpgrade:
    if quantity <= 0:
        raise BankError("Quantity must be positive.")
    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        bank_max = row["bank_max"]
        total_increase = 0
        for _ in range(quantity):
            increase = bank_note_increase(bank_max, level)
            bank_max = ensure_bigint_range(bank_max + increase, "Bank capacity")
            total_increase += increase
        await conn.execute(
            "UPDATE economy SET bank_max = $3 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            bank_max,
        )
        await _record_history(conn, user_id, guild_id, "bank-expand", total_increase)
    return BankUpgrade(level, total_increase, bank_max)


# ---------- loans ----------


def get_loan_options() -> list[LoanOption]:
    return [LoanOption(**option) for option in LOAN_OPTIONS]


def find_loan_option(token: str) -> Optional[LoanOption]:
    normalized = token.strip().lower()
    options = get_loan_options()
    for option in options:
        if option.id == normalized:
            return option
    if is_number(normalized):
        amount = int(normalized)
        for option in options:
            if option.amount == amount:
                return option
    return None


async def get_loan_state(user_id: int, guild_id: int) -> LoanState:
    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        loan = await _lock_loan(conn, user_id, guild_id)
    return LoanState(loan, row["balance"], row["bank_balance"])


async def take_loan(user_id: int, guild_id: int, option_id: str) -> LoanState:
    option = next((o for o in get_loan_options() if o.id == option_id), None)
    if option is None:
        raise LoanError("Unknown loan option.")

    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        if await _lock_loan(conn, user_id, guild_id) is not None:
            raise LoanError("You already have an outstanding loan. Pay it off first.")

        now = datetime.now(timezone.utc)
        due_at = now + timedelta(days=option.duration_days)
        await conn.execute(
            """
            INSERT INTO loans (userid, guildid, option_id, principal, debt, status, taken_at, due_at)
            VALUES ($1, $2, $3, $4, $5, 'active', $6, $7)
            """,
            *_ids(user_id, guild_id),
            option.id,
            option.amount,
            option.repayment,
            now,
            due_at,
        )
        wallet = ensure_bigint_range(row["balance"] + option.amount, "Balance")
        await conn.execute(
            "UPDATE economy SET balance = $3 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            wallet,
        )
        await _record_history(conn, user_id, guild_id, "loan-take", option.amount)

    logger.info("Loan %s taken by %s in %s", option.id, user_id, guild_id)
    loan = Loan(option.id, option.amount, option.repayment, "active", now, due_at)
    return LoanState(loan, wallet, row["bank_balance"])


async def pay_loan(user_id: int, guild_id: int, amount: Optional[int] = None) -> LoanPayment:
    """Pay toward the loan from the wallet first, then the bank.

    ``amount=None`` pays as much of the debt as the user can cover.
    """

    async with transaction() as conn:
        row = await _lock_row(conn, user_id, guild_id)
        loan = await _lock_loan(conn, user_id, guild_id)
        if loan is None:
            raise LoanError("You do not have an active loan.")

        wallet, bank = row["balance"], row["bank_balance"]
        if amount is None:
            payment = min(loan.debt, wallet + bank)
            if payment <= 0:
                raise InsufficientFunds("You have no money to pay with.")
        else:
            payment = min(amount, loan.debt)
            if payment > wallet + bank:
                raise InsufficientFunds(
                    f"You only have {format_money(wallet + bank)} across wallet and bank."
                )

        from_wallet = min(wallet, payment)
        from_bank = payment - from_wallet
        wallet -= from_wallet
        bank -= from_bank
        await conn.execute(
            "UPDATE economy SET balance = $3, bank_balance = $4 WHERE userid = $1 AND guildid = $2",
            *_ids(user_id, guild_id),
            wallet,
            bank,
        )
        remaining = loan.debt - payment
        await _set_loan_debt(conn, user_id, guild_id, remaining)
        await _record_history(conn, user_id, guild_id, "loan-payment", -payment)

    new_loan = replace(loan, debt=remaining) if remaining > 0 else None
    return LoanPayment(payment, LoanState(new_loan, wallet, bank))
