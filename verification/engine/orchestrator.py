"""
TerraEd Quest Verification — Verification Orchestrator
======================================================

Pipeline for one submission:
    1. Run every integrity checker concurrently (thread pool), each wrapped
       in bounded exponential-backoff retries for capability failures.
    2. Join on all of them under one deadline; a checker that misses it
       contributes its fail-closed `unavailable()` result instead.
    3. Apply the decision policy to the complete evidence set and build the
       single immutable VerificationReport.
    4. Commit, serialised per submission: compare-and-set status out of
       `pending`. Acceptances first claim the perceptual hash in the
       duplicate index (atomic check-and-insert), then credit the ledger,
       then flip the status together with the awarded points. A failed
       credit releases the claim and never leaves an awarded status behind.

Decision policy (first match wins):
    1. duplicate found                                         → reject
    2. exif invalid | gps invalid (location required) |
       any checker inconclusive                                → review
    3. confidence ≥ AUTO_PASS_CONFIDENCE and on-topic labels   → pass
    4. confidence <  AUTO_REJECT_CONFIDENCE                    → reject
    5. otherwise                                               → review
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from engine.checkers import (
    AUTO_PASS_CONFIDENCE,
    CheckContext,
    CheckResult,
    IntegrityChecker,
)
from engine.duplicate_index import DuplicateIndex
from engine.errors import CapabilityUnavailableError, InvalidTransitionError
from engine.ledger import LedgerEngine
from engine.models import (
    DECISION_TO_STATUS,
    AutoDecision,
    Quest,
    ReviewDecision,
    Submission,
    SubmissionStatus,
    VerificationReport,
    utcnow,
)
from engine.store import QuestCatalog, SubmissionRepository

logger = logging.getLogger("terra.orchestrator")

# ── Configuration ──────────────────────────────────────────────────────────────
AUTO_REJECT_CONFIDENCE  = float(os.getenv("AUTO_REJECT_CONFIDENCE", "0.30"))
CLASSIFY_TIMEOUT_SEC    = float(os.getenv("CLASSIFY_TIMEOUT_SEC", "10"))
CAPABILITY_MAX_ATTEMPTS = int(os.getenv("CAPABILITY_MAX_ATTEMPTS", "3"))
CAPABILITY_BACKOFF_SEC  = float(os.getenv("CAPABILITY_BACKOFF_SEC", "0.1"))
CHECKER_WORKERS         = int(os.getenv("CHECKER_WORKERS", "4"))     # threads per checker


def decide(
    results:          Sequence[CheckResult],
    pass_threshold:   float = AUTO_PASS_CONFIDENCE,
    reject_threshold: float = AUTO_REJECT_CONFIDENCE,
) -> tuple[AutoDecision, str]:
    """Priority table over the complete evidence set. Returns (decision, rationale)."""
    evidence: dict[str, Any] = {}
    for r in results:
        evidence.update(r.evidence)

    duplicates = [r for r in results if r.duplicate]
    if duplicates:
        return AutoDecision.REJECT, f"duplicate media ({evidence.get('duplicate_of')})"

    flagged = [r.checker for r in results if r.suspicious or r.inconclusive]
    if flagged:
        return AutoDecision.REVIEW, f"integrity checks need a human: {', '.join(flagged)}"

    confidence = float(evidence.get("confidence", 0.0))
    if confidence >= pass_threshold and evidence.get("on_topic"):
        return AutoDecision.PASS, f"confidence {confidence:.0%} ≥ {pass_threshold:.0%} with on-topic labels"
    if confidence < reject_threshold:
        return AutoDecision.REJECT, f"confidence {confidence:.0%} below {reject_threshold:.0%}"
    return AutoDecision.REVIEW, f"ambiguous confidence {confidence:.0%}"


def build_report(
    results:          Sequence[CheckResult],
    created_at:       datetime,
    pass_threshold:   float = AUTO_PASS_CONFIDENCE,
    reject_threshold: float = AUTO_REJECT_CONFIDENCE,
) -> VerificationReport:
    evidence: dict[str, Any] = {}
    reasons:  list[str]      = []
    for r in results:
        evidence.update(r.evidence)
        reasons.extend(r.reasons)

    decision, rationale = decide(results, pass_threshold, reject_threshold)
    reasons.append(f"auto_decision={decision.value}: {rationale}")

    location_required = bool(evidence.get("location_required", False))
    return VerificationReport(
        confidence      = round(max(0.0, min(1.0, float(evidence.get("confidence", 0.0)))), 4),
        labels          = tuple(evidence.get("labels", ())),
        reasons         = tuple(reasons),
        exif_valid      = bool(evidence.get("exif_valid", False)),
        gps_valid       = bool(evidence.get("gps_valid", not location_required)),
        duplicate_check = bool(evidence.get("duplicate_check", False)),
        auto_decision   = decision,
        phash_score     = evidence.get("phash_score"),
        created_at      = created_at,
    )


class VerificationOrchestrator:

    def __init__(
        self,
        checkers:            Sequence[IntegrityChecker],
        submissions:         SubmissionRepository,
        quests:              QuestCatalog,
        ledger:              LedgerEngine,
        index:               DuplicateIndex,
        pass_threshold:      float = AUTO_PASS_CONFIDENCE,
        reject_threshold:    float = AUTO_REJECT_CONFIDENCE,
        check_timeout:       float = CLASSIFY_TIMEOUT_SEC,
        max_attempts:        int   = CAPABILITY_MAX_ATTEMPTS,
        backoff_sec:         float = CAPABILITY_BACKOFF_SEC,
        workers_per_checker: int   = CHECKER_WORKERS,
        clock:               Callable[[], datetime] = utcnow,
        sleep:               Callable[[float], None] = time.sleep,
    ):
        self.checkers         = list(checkers)
        self.submissions      = submissions
        self.quests           = quests
        self.ledger           = ledger
        self.index            = index
        self.pass_threshold   = pass_threshold
        self.reject_threshold = reject_threshold
        self.check_timeout    = check_timeout
        self.max_attempts     = max(1, max_attempts)
        self.backoff_sec      = backoff_sec
        self.clock            = clock
        self._sleep           = sleep
        # One pool per checker: a hung capability only queues its own calls.
        self._executors = {
            checker.name: ThreadPoolExecutor(
                max_workers=max(1, workers_per_checker), thread_name_prefix=f"checker-{checker.name}"
            )
            for checker in self.checkers
        }
        self._commit_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def shutdown(self) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)

    def _commit_lock(self, submission_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._commit_locks.setdefault(submission_id, threading.Lock())

    # ------------------------------------------------------------------
    def verify(self, submission_id: str) -> Submission:
        submission = self.submissions.get(submission_id)
        if submission.status is not SubmissionStatus.PENDING:
            logger.warning(f"[{submission_id}] re-verification refused: status={submission.status.value}")
            raise InvalidTransitionError(submission_id, submission.status.value)

        quest = self.quests.get_quest(submission.quest_id)
        logger.info(f"[{submission_id}] Starting verification pipeline ({len(self.checkers)} checkers)...")

        results = self._run_checkers(submission, quest)
        report  = build_report(results, self.clock(), self.pass_threshold, self.reject_threshold)
        phash   = next((r.evidence.get("phash") for r in results if r.evidence.get("phash")), None)

        if report.auto_decision is AutoDecision.PASS:
            return self._accept(submission, quest, SubmissionStatus.PENDING, SubmissionStatus.AUTO_PASS,
                                report=report, phash=phash)

        target = DECISION_TO_STATUS[report.auto_decision]
        with self._commit_lock(submission_id):
            updated = self.submissions.transition(
                submission_id, SubmissionStatus.PENDING, target,
                verification_report=report, perceptual_hash=phash,
            )
        icon = "❌ REJECTED" if target is SubmissionStatus.REJECTED else "🔎 REVIEW"
        logger.info(f"[{submission_id}] {icon} — {report.reasons[-1]}")
        return updated

    # ------------------------------------------------------------------
    def resolve_review(
        self,
        submission_id: str,
        decision:      ReviewDecision,
        reviewer_id:   str,
        notes:         str = "",
    ) -> Submission:
        submission = self.submissions.get(submission_id)
        if submission.status is not SubmissionStatus.REVIEW:
            logger.warning(f"[{submission_id}] review resolution refused: status={submission.status.value}")
            raise InvalidTransitionError(submission_id, submission.status.value, decision.value)

        review = {"reviewed_by": reviewer_id, "review_notes": notes, "reviewed_at": self.clock()}
        if decision is ReviewDecision.REJECTED:
            with self._commit_lock(submission_id):
                updated = self.submissions.transition(
                    submission_id, SubmissionStatus.REVIEW, SubmissionStatus.REJECTED, **review
                )
            logger.info(f"[{submission_id}] ❌ REJECTED by reviewer {reviewer_id}")
            return updated

        quest = self.quests.get_quest(submission.quest_id)
        return self._accept(submission, quest, SubmissionStatus.REVIEW, SubmissionStatus.APPROVED,
                            phash=submission.perceptual_hash, review=review)

    # ------------------------------------------------------------------
    def _accept(
        self,
        submission: Submission,
        quest:      Quest,
        expected:   SubmissionStatus,
        target:     SubmissionStatus,
        phash:      Optional[str],
        report:     Optional[VerificationReport] = None,
        review:     Optional[dict] = None,
    ) -> Submission:
        """
        Claim the hash, credit the ledger, then commit status and points in
        one compare-and-set. Runs under the submission's commit lock, so the
        status cannot move between the re-check and the final write.
        """
        changes: dict[str, Any] = dict(review or {})
        if report is not None:
            changes.update(verification_report=report, perceptual_hash=phash)

        with self._commit_lock(submission.id):
            current = self.submissions.get(submission.id)
            if current.status is not expected:
                logger.warning(f"[{submission.id}] acceptance refused: status={current.status.value}")
                raise InvalidTransitionError(submission.id, current.status.value, target.value)

            if phash:
                match = self.index.claim(phash, submission.id, quest.id, submission.user_id)
                if match is not None:
                    return self._reject_lost_claim(submission, expected, changes, report, match)
            else:
                logger.warning(f"[{submission.id}] accepted without a perceptual hash — not indexed")

            try:
                txn = self.ledger.credit_submission(current, quest, at=self.clock())
            except Exception as e:
                logger.error(f"[{submission.id}] ledger credit failed: {e}")
                if phash:
                    self.index.release(phash, submission.id, quest.id, submission.user_id)
                if report is None:
                    raise
                return self._review_failed_award(submission, changes, report, e)

            changes["points_awarded"] = txn.amount
            updated = self.submissions.transition(submission.id, expected, target, **changes)

        logger.info(f"[{submission.id}] ✅ {target.value.upper()} — +{txn.amount} pts")
        return updated

    def _reject_lost_claim(self, submission, expected, changes, report, match) -> Submission:
        reason = (
            f"duplicate_of:{match.submission_id} — near-identical media accepted first "
            f"(hamming distance {match.distance} ≤ {self.index.tolerance})"
        )
        if report is not None:
            changes["verification_report"] = replace(
                report,
                duplicate_check = True,
                phash_score     = match.similarity,
                auto_decision   = AutoDecision.REJECT,
                reasons         = report.reasons + (reason, "auto_decision=reject: duplicate media"),
            )
        else:
            notes = changes.get("review_notes") or ""
            changes["review_notes"] = f"{notes} [{reason}]".strip()
        updated = self.submissions.transition(submission.id, expected, SubmissionStatus.REJECTED, **changes)
        logger.info(f"[{submission.id}] ❌ REJECTED — lost duplicate claim to {match.submission_id}")
        return updated

    def _review_failed_award(self, submission, changes, report, error) -> Submission:
        # The proof passed but no points could be booked: a human finishes it.
        changes["verification_report"] = replace(
            report,
            auto_decision = AutoDecision.REVIEW,
            reasons       = report.reasons + (
                f"award_failed: {error}",
                "auto_decision=review: points could not be credited",
            ),
        )
        updated = self.submissions.transition(
            submission.id, SubmissionStatus.PENDING, SubmissionStatus.REVIEW, **changes
        )
        logger.info(f"[{submission.id}] 🔎 REVIEW — award failed, queued for a reviewer")
        return updated

    # ------------------------------------------------------------------
    def _run_checkers(self, submission: Submission, quest: Quest) -> list[CheckResult]:
        context  = CheckContext(now=self.clock())
        futures  = [
            (checker, self._executors[checker.name].submit(self._run_with_retry, checker, submission, quest, context))
            for checker in self.checkers
        ]
        deadline = time.monotonic() + self.check_timeout
        results: list[CheckResult] = []
        for checker, future in futures:
            try:
                results.append(future.result(timeout=max(0.0, deadline - time.monotonic())))
            except FuturesTimeout:
                future.cancel()
                logger.warning(f"[{submission.id}] {checker.name} timed out after {self.check_timeout}s")
                results.append(checker.unavailable(
                    f"{checker.name}_timeout: no answer within {self.check_timeout:.0f}s"
                ))
        return results

    def _run_with_retry(self, checker: IntegrityChecker, submission: Submission, quest: Quest, context: CheckContext) -> CheckResult:
        attempt = 0
        while True:
            try:
                return checker.evaluate(submission, quest, context)
            except CapabilityUnavailableError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(f"[{submission.id}] {checker.name} failed after {attempt} attempts: {e}")
                    return checker.unavailable(f"{checker.name}_unavailable: {e} (after {attempt} attempts)")
                wait = self.backoff_sec * (2 ** (attempt - 1))   # 0.1s, 0.2s, 0.4s …
                logger.warning(f"[{submission.id}] {checker.name} attempt {attempt} failed: {e} — retry in {wait:.2f}s")
                self._sleep(wait)
            except Exception as e:
                # Not a transient outage: no retry, the checker is inconclusive.
                logger.error(f"[{submission.id}] {checker.name} raised {type(e).__name__}: {e}", exc_info=True)
                return checker.unavailable(f"{checker.name}_error: {type(e).__name__}: {e}")
