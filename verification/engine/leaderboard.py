"""
TerraEd Quest Verification — Leaderboard / Rank Engine

Read-only projection over ledger account snapshots, recomputed per request.
Ordering: points desc, then earlier last activity (never-active users last),
then user id. Ranks are dense on points: equal totals share a rank and the
next distinct total takes the following rank.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from engine.models import LeaderboardEntry, UserAccount

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def _sort_key(account: UserAccount):
    return (-account.points, account.last_activity or _NEVER, account.user_id)


def compute_leaderboard(accounts: Iterable[UserAccount], limit: Optional[int] = None) -> list[LeaderboardEntry]:
    if limit is not None and limit < 0:
        raise ValueError("limit must be non-negative")

    entries: list[LeaderboardEntry] = []
    rank, previous_points = 0, None
    for account in sorted(accounts, key=_sort_key):
        if limit is not None and len(entries) >= limit:
            break
        if account.points != previous_points:
            rank += 1
            previous_points = account.points
        entries.append(LeaderboardEntry(
            user_id          = account.user_id,
            name             = account.name,
            avatar           = account.avatar,
            points           = account.points,
            rank             = rank,
            streak           = account.streak,
            quests_completed = account.quests_completed,
            last_activity    = account.last_activity,
        ))
    return entries
