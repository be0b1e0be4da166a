"""
TerraEd Quest Verification — Ledger Engine
==========================================

Append-only wallet log plus a cached per-user counter snapshot
(points, monthly points, streak, last activity).

Every mutation:
  1. takes the user's lock (cross-user updates stay parallel),
  2. reads the snapshot and computes the successor state,
  3. commits snapshot + transaction with a version compare-and-set.

A lost compare-and-set (another writer touched the account) raises
ConcurrentModificationError, which is retried against fresh state up to
LEDGER_MAX_RETRIES times and then re-raised.

Award formula:
    amount = round(quest.points × difficulty_multiplier × streak_multiplier)
Both multipliers are injected policies; the defaults are 1.0 everywhere.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Callable, Optional

from engine.errors import ConcurrentModificationError, InsufficientPointsError, NotFoundError
from engine.models import (
    Difficulty,
    Quest,
    Submission,
    TransactionType,
    UserAccount,
    Wallet,
    WalletTransaction,
    utcnow,
)

logger = logging.getLogger("terra.ledger")

# ── Configuration ──────────────────────────────────────────────────────────────
STREAK_MULTIPLIERS     = os.getenv("STREAK_MULTIPLIERS", "")                       # e.g. "3:1.1,7:1.25"
DIFFICULTY_MULTIPLIERS = os.getenv("DIFFICULTY_MULTIPLIERS", "easy:1,medium:1,hard:1")
LEDGER_MAX_RETRIES     = int(os.getenv("LEDGER_MAX_RETRIES", "5"))


# ---------------------------------------------------------------------------
# Multiplier policies
# ---------------------------------------------------------------------------
def _parse_pairs(raw: str) -> list[tuple[str, float]]:
    pairs = []
    for item in raw.split(","):
        if not item.strip():
            continue
        key, _, value = item.partition(":")
        pairs.append((key.strip(), float(value)))
    return pairs


class StreakMultiplierPolicy:
    """Highest tier whose minimum streak is reached; 1.0 below every tier."""

    def __init__(self, tiers: Optional[list[tuple[int, float]]] = None):
        if tiers is None:
            tiers = [(int(k), v) for k, v in _parse_pairs(STREAK_MULTIPLIERS)]
        self.tiers = sorted(tiers)

    def __call__(self, streak: int) -> float:
        multiplier = 1.0
        for min_streak, value in self.tiers:
            if streak >= min_streak:
                multiplier = value
        return multiplier


class DifficultyMultiplierPolicy:

    def __init__(self, multipliers: Optional[dict[Difficulty, float]] = None):
        if multipliers is None:
            multipliers = {Difficulty(k): v for k, v in _parse_pairs(DIFFICULTY_MULTIPLIERS)}
        self.multipliers = multipliers

    def __call__(self, difficulty: Difficulty) -> float:
        return self.multipliers.get(difficulty, 1.0)


def next_streak(streak: int, last_activity: Optional[datetime], today: date) -> int:
    """Yesterday → +1, today → unchanged, anything else → restart at 1."""
    if last_activity is None:
        return 1
    last_day = last_activity.date()
    if last_day == today:
        return max(streak, 1)
    if (today - last_day).days == 1:
        return streak + 1
    return 1


@dataclass(frozen=True)
class LedgerAudit:
    """Counters re-derived from the transaction log."""
    user_id:        str
    earned:         int
    redeemed:       int
    bonus:          int
    derived_points: int
    cached_points:  int

    @property
    def consistent(self) -> bool:
        return self.derived_points == self.cached_points


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
class LedgerStore:
    """Account snapshots and the append-only transaction log."""

    def __init__(self):
        self._accounts:     dict[str, UserAccount]             = {}
        self._transactions: dict[str, list[WalletTransaction]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, name: str = "", avatar: Optional[str] = None) -> UserAccount:
        with self._lock:
            current = self._accounts.get(user_id)
            if current is None:
                account = UserAccount(user_id=user_id, name=name or user_id, avatar=avatar)
                self._transactions[user_id] = []
            else:
                account = replace(current, name=name or current.name, avatar=avatar or current.avatar,
                                  version=current.version + 1)
            self._accounts[user_id] = account
        return account

    def get_account(self, user_id: str) -> UserAccount:
        account = self._accounts.get(user_id)
        if account is None:
            raise NotFoundError("user", user_id)
        return account

    def accounts(self) -> list[UserAccount]:
        return list(self._accounts.values())

    def transactions(self, user_id: str) -> tuple[WalletTransaction, ...]:
        self.get_account(user_id)
        return tuple(self._transactions.get(user_id, ()))

    def commit(self, account: UserAccount, expected_version: int, transaction: Optional[WalletTransaction] = None) -> UserAccount:
        with self._lock:
            current = self.get_account(account.user_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(account.user_id, expected_version, current.version)
            committed = replace(account, version=expected_version + 1)
            self._accounts[account.user_id] = committed
            if transaction is not None:
                self._transactions[account.user_id].append(transaction)
        return committed


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
Mutation = Callable[[UserAccount], tuple[UserAccount, Optional[WalletTransaction]]]


class LedgerEngine:

    def __init__(
        self,
        store:             Optional[LedgerStore] = None,
        streak_policy:     Optional[Callable[[int], float]] = None,
        difficulty_policy: Optional[Callable[[Difficulty], float]] = None,
        max_retries:       int = LEDGER_MAX_RETRIES,
        id_factory:        Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.store             = store or LedgerStore()
        self.streak_policy     = streak_policy or StreakMultiplierPolicy()
        self.difficulty_policy = difficulty_policy or DifficultyMultiplierPolicy()
        self.max_retries       = max_retries
        self._new_id           = id_factory
        self._user_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def _apply(self, user_id: str, mutate: Mutation) -> tuple[UserAccount, Optional[WalletTransaction]]:
        attempt = 0
        with self._user_lock(user_id):
            while True:
                current = self.store.get_account(user_id)
                updated, txn = mutate(current)
                try:
                    return self.store.commit(updated, current.version, txn), txn
                except ConcurrentModificationError as e:
                    attempt += 1
                    if attempt >= self.max_retries:
                        logger.error(f"[LEDGER] {e} — giving up after {attempt} attempts")
                        raise
                    logger.warning(f"[LEDGER] {e} — retrying against fresh state")

    # ── Quest rewards ─────────────────────────────────────────────────────────
    def credit_submission(self, submission: Submission, quest: Quest, at: Optional[datetime] = None) -> WalletTransaction:
        at = at or utcnow()
        already_credited: list[WalletTransaction] = []

        def mutate(account: UserAccount):
            prior = next(
                (t for t in self.store.transactions(account.user_id) if t.submission_id == submission.id),
                None,
            )
            if prior is not None:
                already_credited.append(prior)
                return account, None
            streak = next_streak(account.streak, account.last_activity, at.date())
            amount = int(round(
                quest.points * self.difficulty_policy(quest.difficulty) * self.streak_policy(streak)
            ))
            txn = WalletTransaction(
                id            = self._new_id(),
                user_id       = account.user_id,
                type          = TransactionType.EARNED,
                amount        = amount,
                description   = f"Quest completed: {quest.title}",
                created_at    = at,
                quest_id      = quest.id,
                submission_id = submission.id,
            )
            return replace(
                account,
                points           = account.points + amount,
                monthly_points   = account.monthly_points + amount,
                streak           = streak,
                last_activity    = at,
                quests_completed = account.quests_completed + 1,
            ), txn

        account, txn = self._apply(submission.user_id, mutate)
        if txn is None:
            logger.info(f"[LEDGER] {submission.id} already credited ({already_credited[0].amount} pts)")
            return already_credited[0]
        logger.info(
            f"[LEDGER] +{txn.amount} pts to {account.user_id} for {submission.id} "
            f"(total={account.points}, streak={account.streak})"
        )
        return txn

    # ── External appends ──────────────────────────────────────────────────────
    def record_redemption(
        self,
        user_id:      str,
        amount:       int,
        voucher_code: str,
        description:  str = "",
        at:           Optional[datetime] = None,
    ) -> WalletTransaction:
        if amount <= 0:
            raise ValueError("Redemption amount must be positive.")
        at = at or utcnow()

        def mutate(account: UserAccount):
            if account.points < amount:
                raise InsufficientPointsError(user_id, account.points, amount)
            txn = WalletTransaction(
                id           = self._new_id(),
                user_id      = user_id,
                type         = TransactionType.REDEEMED,
                amount       = -amount,
                description  = description or f"Voucher {voucher_code}",
                created_at   = at,
                voucher_code = voucher_code,
            )
            return replace(account, points=account.points - amount), txn

        account, txn = self._apply(user_id, mutate)
        logger.info(f"[LEDGER] -{amount} pts redeemed by {user_id} ({voucher_code}); balance={account.points}")
        return txn

    def record_bonus(
        self,
        user_id:     str,
        amount:      int,
        description: str,
        quest_id:    Optional[str] = None,
        at:          Optional[datetime] = None,
    ) -> WalletTransaction:
        if amount <= 0:
            raise ValueError("Bonus amount must be positive.")
        at = at or utcnow()

        def mutate(account: UserAccount):
            txn = WalletTransaction(
                id          = self._new_id(),
                user_id     = user_id,
                type        = TransactionType.BONUS,
                amount      = amount,
                description = description,
                created_at  = at,
                quest_id    = quest_id,
            )
            return replace(
                account,
                points         = account.points + amount,
                monthly_points = account.monthly_points + amount,
            ), txn

        account, txn = self._apply(user_id, mutate)
        logger.info(f"[LEDGER] +{amount} bonus pts to {user_id}: {description}")
        return txn

    def reset_monthly_points(self, user_id: str) -> UserAccount:
        account, _ = self._apply(user_id, lambda a: (replace(a, monthly_points=0), None))
        logger.info(f"[LEDGER] monthly points reset for {user_id}")
        return account

    # ── Reads ─────────────────────────────────────────────────────────────────
    def get_wallet(self, user_id: str) -> Wallet:
        with self._user_lock(user_id):
            account      = self.store.get_account(user_id)
            transactions = self.store.transactions(user_id)
        return Wallet(
            user_id        = user_id,
            transactions   = tuple(sorted(transactions, key=lambda t: t.created_at)),
            points         = account.points,
            monthly_points = account.monthly_points,
            streak         = account.streak,
        )

    def replay_account(self, user_id: str) -> LedgerAudit:
        wallet = self.get_wallet(user_id)
        totals = {t: 0 for t in TransactionType}
        for txn in wallet.transactions:
            totals[txn.type] += txn.amount
        audit = LedgerAudit(
            user_id        = user_id,
            earned         = totals[TransactionType.EARNED],
            redeemed       = totals[TransactionType.REDEEMED],
            bonus          = totals[TransactionType.BONUS],
            derived_points = sum(totals.values()),
            cached_points  = wallet.points,
        )
        if not audit.consistent:
            logger.error(
                f"[LEDGER] snapshot drift for {user_id}: cached={audit.cached_points} "
                f"derived={audit.derived_points}"
            )
        return audit
