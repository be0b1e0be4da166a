"""
TerraEd Quest Verification — engine facade
==========================================

QuestVerificationEngine wires the stores, capabilities, checkers,
orchestrator, ledger and leaderboard together and exposes the operations
callers use:

    submit_proof            store a pending submission, then verify it
    get_verification_report report, or None while pending
    resolve_review          manual reviewer decision on a `review` submission
    get_wallet              ordered transactions + counters
    get_leaderboard         ranked projection of the ledger
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from engine.capabilities import (
    ContentClassifier,
    DHashHasher,
    ExifMetadataReader,
    HttpContentClassifier,
    MediaFetcher,
    MetadataReader,
    PerceptualHasher,
)
from engine.checkers import ContentLabelChecker, DuplicateChecker, ExifChecker, GPSChecker
from engine.duplicate_index import DuplicateIndex, build_duplicate_index
from engine.errors import ExpiredQuestError, UnsupportedProofError
from engine.leaderboard import compute_leaderboard
from engine.ledger import LedgerEngine
from engine.models import (
    GPSCoordinate,
    LeaderboardEntry,
    ProofKind,
    Quest,
    ReviewDecision,
    Submission,
    UserAccount,
    VerificationReport,
    Wallet,
    WalletTransaction,
    utcnow,
)
from engine.orchestrator import VerificationOrchestrator
from engine.store import QuestCatalog, SubmissionRepository

logger = logging.getLogger("terra.engine")

VIDEO_EXTENSIONS = (".mp4", ".mov", ".m4v", ".webm", ".avi", ".3gp")


def infer_proof_kind(media_ref: Optional[str]) -> ProofKind:
    if not media_ref:
        return ProofKind.TEXT
    path = media_ref.split("?", 1)[0].lower()
    return ProofKind.VIDEO if path.endswith(VIDEO_EXTENSIONS) else ProofKind.PHOTO


class QuestVerificationEngine:

    VERSION = "1.0.0"

    def __init__(
        self,
        quests:          Optional[QuestCatalog]         = None,
        submissions:     Optional[SubmissionRepository] = None,
        ledger:          Optional[LedgerEngine]         = None,
        index:           Optional[DuplicateIndex]       = None,
        hasher:          Optional[PerceptualHasher]     = None,
        metadata_reader: Optional[MetadataReader]       = None,
        classifier:      Optional[ContentClassifier]    = None,
        clock:           Callable[[], datetime]         = utcnow,
        id_factory:      Callable[[], str]              = lambda: str(uuid.uuid4()),
        **orchestrator_options,
    ):
        fetcher = MediaFetcher()
        self.clock       = clock
        self._new_id     = id_factory
        self.quests      = quests or QuestCatalog(clock)
        self.submissions = submissions or SubmissionRepository()
        self.ledger      = ledger or LedgerEngine()
        self.index       = index or build_duplicate_index()
        self.orchestrator = VerificationOrchestrator(
            checkers=[
                ExifChecker(metadata_reader or ExifMetadataReader(fetcher)),
                GPSChecker(),
                DuplicateChecker(hasher or DHashHasher(fetcher), self.index),
                ContentLabelChecker(classifier or HttpContentClassifier()),
            ],
            submissions = self.submissions,
            quests      = self.quests,
            ledger      = self.ledger,
            index       = self.index,
            clock       = clock,
            **orchestrator_options,
        )
        logger.info(f"QuestVerificationEngine v{self.VERSION} initialized ({type(self.index).__name__}).")

    def close(self) -> None:
        self.orchestrator.shutdown()

    # ── Roster / catalog collaborators ────────────────────────────────────────
    def publish_quest(self, quest: Quest) -> Quest:
        return self.quests.publish(quest)

    def register_user(self, user_id: str, name: str = "", avatar: Optional[str] = None) -> UserAccount:
        return self.ledger.store.register(user_id, name, avatar)

    # ── Submissions ───────────────────────────────────────────────────────────
    def submit_proof(
        self,
        user_id:    str,
        quest_id:   str,
        media_ref:  Optional[str],
        caption:    str,
        gps:        Optional[GPSCoordinate] = None,
        proof_kind: Optional[ProofKind]     = None,
    ) -> Submission:
        quest = self.quests.get_quest(quest_id)
        self.ledger.store.get_account(user_id)

        now = self.clock()
        if quest.is_expired(now):
            logger.info(f"[INTAKE] {user_id} → {quest_id} refused: quest expired")
            raise ExpiredQuestError(quest_id, quest.expiry.isoformat())

        kind = proof_kind or infer_proof_kind(media_ref)
        if kind is not ProofKind.TEXT and not media_ref:
            raise UnsupportedProofError(f"A {kind.value} proof needs a media reference.")
        if not quest.accepts(kind):
            accepted = ", ".join(k.value for k in quest.proof_types)
            raise UnsupportedProofError(f"Quest {quest_id} accepts {accepted}; got {kind.value}.")

        submission = self.submissions.add(Submission(
            id           = self._new_id(),
            quest_id     = quest_id,
            user_id      = user_id,
            caption      = caption,
            submitted_at = now,
            image_url    = media_ref if kind is ProofKind.PHOTO else None,
            video_url    = media_ref if kind is ProofKind.VIDEO else None,
            gps          = gps,
        ))
        return self.orchestrator.verify(submission.id)

    def get_submission(self, submission_id: str) -> Submission:
        return self.submissions.get(submission_id)

    def get_verification_report(self, submission_id: str) -> Optional[VerificationReport]:
        return self.submissions.get(submission_id).verification_report

    def resolve_review(
        self,
        submission_id: str,
        decision:      ReviewDecision,
        reviewer_id:   str,
        notes:         str = "",
    ) -> Submission:
        return self.orchestrator.resolve_review(submission_id, decision, reviewer_id, notes)

    # ── Ledger ────────────────────────────────────────────────────────────────
    def get_wallet(self, user_id: str) -> Wallet:
        return self.ledger.get_wallet(user_id)

    def record_redemption(self, user_id: str, amount: int, voucher_code: str, description: str = "") -> WalletTransaction:
        return self.ledger.record_redemption(user_id, amount, voucher_code, description, at=self.clock())

    def record_bonus(self, user_id: str, amount: int, description: str, quest_id: Optional[str] = None) -> WalletTransaction:
        return self.ledger.record_bonus(user_id, amount, description, quest_id, at=self.clock())

    def reset_monthly_points(self, user_id: str) -> UserAccount:
        return self.ledger.reset_monthly_points(user_id)

    def get_leaderboard(self, limit: int = 10) -> list[LeaderboardEntry]:
        return compute_leaderboard(self.ledger.store.accounts(), limit)
