"""
TerraEd Quest Verification — quest catalog and submission repository
=====================================================================

In-process stores guarded by a lock. The submission repository exposes a
single mutation primitive, transition(), a compare-and-set on status: it is
the only way a submission leaves `pending` or `review`, so a second
concurrent verification of the same submission always loses.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable

from engine.errors import InvalidTransitionError, NotFoundError
from engine.models import (
    ALLOWED_TRANSITIONS,
    Quest,
    Submission,
    SubmissionStatus,
    utcnow,
)

logger = logging.getLogger("terra.store")


class QuestCatalog:

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock  = clock
        self._quests: dict[str, Quest] = {}
        self._lock   = threading.Lock()

    def publish(self, quest: Quest) -> Quest:
        if quest.points <= 0:
            raise ValueError(f"Quest {quest.id} must award a positive number of points.")
        if not quest.proof_types:
            raise ValueError(f"Quest {quest.id} must accept at least one proof kind.")
        with self._lock:
            existing = self._quests.get(quest.id)
            if existing is None and quest.expiry <= self._clock():
                raise ValueError(f"Quest {quest.id} expiry {quest.expiry.isoformat()} is not in the future.")
            if existing is not None and existing.created_by != quest.created_by:
                raise PermissionError(f"Quest {quest.id} can only be edited by {existing.created_by}.")
            self._quests[quest.id] = quest
        logger.info(f"[QUEST] published {quest.id} '{quest.title}' ({quest.points} pts)")
        return quest

    def get_quest(self, quest_id: str) -> Quest:
        quest = self._quests.get(quest_id)
        if quest is None:
            raise NotFoundError("quest", quest_id)
        return quest

    def all(self) -> list[Quest]:
        return list(self._quests.values())


class SubmissionRepository:

    def __init__(self):
        self._items: dict[str, Submission] = {}
        self._lock  = threading.Lock()

    def add(self, submission: Submission) -> Submission:
        with self._lock:
            if submission.id in self._items:
                raise ValueError(f"Submission {submission.id} already exists.")
            if submission.status is not SubmissionStatus.PENDING:
                raise ValueError("New submissions must start in 'pending'.")
            self._items[submission.id] = submission
        logger.info(f"[STORE] stored submission {submission.id} (quest={submission.quest_id}, user={submission.user_id})")
        return submission

    def get(self, submission_id: str) -> Submission:
        submission = self._items.get(submission_id)
        if submission is None:
            raise NotFoundError("submission", submission_id)
        return submission

    def transition(
        self,
        submission_id: str,
        expected:      SubmissionStatus,
        target:        SubmissionStatus,
        **changes,
    ) -> Submission:
        """Compare-and-set the status from `expected` to `target`, applying `changes` atomically."""
        with self._lock:
            current = self.get(submission_id)
            if current.status is not expected or target not in ALLOWED_TRANSITIONS.get(current.status, ()):
                logger.warning(
                    f"[STORE] rejected transition {submission_id}: "
                    f"{current.status.value} → {target.value} (expected {expected.value})"
                )
                raise InvalidTransitionError(submission_id, current.status.value, target.value)
            if "verification_report" in changes and current.verification_report is not None:
                raise InvalidTransitionError(submission_id, current.status.value, "report already written")
            updated = replace(current, status=target, **changes)
            self._items[submission_id] = updated
        logger.info(f"[STORE] {submission_id}: {expected.value} → {target.value}")
        return updated

    def for_user(self, user_id: str) -> list[Submission]:
        return sorted(
            (s for s in list(self._items.values()) if s.user_id == user_id),
            key=lambda s: s.submitted_at,
        )

    def by_status(self, status: SubmissionStatus) -> list[Submission]:
        return [s for s in list(self._items.values()) if s.status is status]
