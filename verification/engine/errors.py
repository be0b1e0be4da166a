"""
TerraEd Quest Verification — error taxonomy
============================================

Every error the engine raises derives from IntegrityEngineError so the API
gateway can map the whole family onto HTTP status codes in one place.
"""

from __future__ import annotations

from typing import Optional


class IntegrityEngineError(RuntimeError):
    """Base class for all engine errors."""


class NotFoundError(IntegrityEngineError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind       = kind
        self.identifier = identifier


class ExpiredQuestError(IntegrityEngineError):
    def __init__(self, quest_id: str, expiry: str):
        super().__init__(f"Quest {quest_id} expired at {expiry}; submissions closed.")
        self.quest_id = quest_id


class UnsupportedProofError(IntegrityEngineError):
    """Proof kind is not accepted by the quest."""


class CapabilityUnavailableError(IntegrityEngineError):
    """Classification / hashing / media service failed or is unreachable."""

    def __init__(self, capability: str, message: str):
        super().__init__(f"{capability} unavailable: {message}")
        self.capability = capability


class InvalidTransitionError(IntegrityEngineError):
    def __init__(self, submission_id: str, current: str, target: Optional[str] = None):
        detail = f" → {target}" if target else ""
        super().__init__(
            f"Invalid status transition for submission {submission_id}: {current}{detail}"
        )
        self.submission_id = submission_id
        self.current       = current
        self.target        = target


class ConcurrentModificationError(IntegrityEngineError):
    """Lost an optimistic-concurrency race on a user account."""

    def __init__(self, user_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Account {user_id} changed concurrently "
            f"(expected v{expected_version}, found v{actual_version})"
        )
        self.user_id = user_id


class InsufficientPointsError(IntegrityEngineError):
    def __init__(self, user_id: str, balance: int, requested: int):
        super().__init__(
            f"User {user_id} has {balance} points; cannot redeem {requested}."
        )
        self.user_id = user_id
