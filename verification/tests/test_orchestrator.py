"""
TerraEd — Verification pipeline tests (engine facade + orchestrator)
pytest test suite

Coverage:
  - intake: unknown quest/user, expired quest, unsupported proof kind
  - auto_pass / review / reject routing end to end
  - duplicate media rejected, index untouched by rejections
  - re-verification refused, ledger credited exactly once
  - capability retries with exponential backoff, timeouts → review
  - unexpected checker errors and unreadable classifier answers → review
  - a hung capability only holds up its own checker
  - failed ledger credit: claim released, no awarded status left behind
  - manual review: approve credits, reject does not, lost duplicate claim
  - concurrent verification of identical media: exactly one acceptance
"""

import os
import sys
import threading
from datetime import timedelta
from unittest import mock

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.capabilities import Classification, HttpContentClassifier
from engine.duplicate_index import InMemoryDuplicateIndex
from engine.errors import (
    ConcurrentModificationError,
    ExpiredQuestError,
    InvalidTransitionError,
    NotFoundError,
    UnsupportedProofError,
)
from engine.ledger import DifficultyMultiplierPolicy, LedgerEngine, StreakMultiplierPolicy
from engine.models import (
    AutoDecision,
    ProofKind,
    ReviewDecision,
    Submission,
    SubmissionStatus,
    TransactionType,
)
from engine.quest_engine import QuestVerificationEngine, infer_proof_kind

from fakes import (
    NOW,
    PARK,
    Clock,
    FakeClassifier,
    FakeHasher,
    FakeReader,
    hex_with_bits,
    make_quest,
    offset_north,
)

PHOTO_A = "https://cdn.example/ayu-sapling.jpg"
PHOTO_B = "https://cdn.example/budi-sapling.jpg"
NEAR    = offset_north(PARK, 80)
FAR     = offset_north(PARK, 600)


def _ledger(cls=LedgerEngine):
    return cls(
        streak_policy     = StreakMultiplierPolicy([]),
        difficulty_policy = DifficultyMultiplierPolicy({}),
    )


def _engine(hasher=None, reader=None, classifier=None, clock=None, sleeps=None, ledger=None, **options):
    options.setdefault("check_timeout", 5.0)
    options.setdefault("max_attempts", 3)
    options.setdefault("backoff_sec", 0.1)
    sleeps = sleeps if sleeps is not None else []
    engine = QuestVerificationEngine(
        ledger          = ledger or _ledger(),
        index           = InMemoryDuplicateIndex(tolerance=10, policy="global"),
        hasher          = hasher or FakeHasher(),
        metadata_reader = reader or FakeReader(),
        classifier      = classifier or FakeClassifier(),
        clock           = clock or Clock(),
        sleep           = sleeps.append,
        **options,
    )
    engine.publish_quest(make_quest())
    engine.register_user("u-ayu", "Ayu")
    engine.register_user("u-budi", "Budi")
    return engine


class TestIntake:

    def setup_method(self):
        self.clock  = Clock()
        self.engine = _engine(clock=self.clock)

    def teardown_method(self):
        self.engine.close()

    def test_unknown_quest(self):
        with pytest.raises(NotFoundError):
            self.engine.submit_proof("u-ayu", "q-missing", PHOTO_A, "hi", NEAR)

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            self.engine.submit_proof("u-ghost", "q-plant-tree", PHOTO_A, "hi", NEAR)

    def test_expired_quest_stores_nothing(self):
        self.clock.now = NOW + timedelta(days=8)
        with pytest.raises(ExpiredQuestError):
            self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "late", NEAR)
        assert self.engine.submissions.for_user("u-ayu") == []

    def test_expiry_instant_is_closed(self):
        self.clock.now = NOW + timedelta(days=7)
        with pytest.raises(ExpiredQuestError):
            self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "just late", NEAR)

    def test_video_not_accepted_by_photo_quest(self):
        with pytest.raises(UnsupportedProofError):
            self.engine.submit_proof("u-ayu", "q-plant-tree", "https://cdn.example/clip.mp4", "vid", NEAR)

    def test_media_required_for_photo(self):
        with pytest.raises(UnsupportedProofError):
            self.engine.submit_proof("u-ayu", "q-plant-tree", None, "trust me", NEAR, ProofKind.PHOTO)

    def test_infer_proof_kind(self):
        assert infer_proof_kind(None) is ProofKind.TEXT
        assert infer_proof_kind("https://x/y.MOV?sig=1") is ProofKind.VIDEO
        assert infer_proof_kind("https://x/y.jpg") is ProofKind.PHOTO


class TestRouting:

    def setup_method(self):
        self.engine = _engine()

    def teardown_method(self):
        self.engine.close()

    def test_confident_on_topic_auto_passes(self):
        sub = self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "Planted a sapling", NEAR)
        assert sub.status is SubmissionStatus.AUTO_PASS
        assert sub.points_awarded == 25

        report = self.engine.get_verification_report(sub.id)
        assert report.auto_decision is AutoDecision.PASS
        assert report.confidence == pytest.approx(0.92)
        assert report.exif_valid and report.gps_valid
        assert report.duplicate_check is False

        wallet = self.engine.get_wallet("u-ayu")
        assert wallet.points == 25
        assert [t.type for t in wallet.transactions] == [TransactionType.EARNED]
        assert wallet.transactions[0].submission_id == sub.id
        assert len(self.engine.index) == 1

    def test_600m_from_quest_goes_to_review(self):
        sub = self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "Planted a sapling", FAR)
        assert sub.status is SubmissionStatus.REVIEW
        report = sub.verification_report
        assert report.gps_valid is False
        assert report.auto_decision is AutoDecision.REVIEW
        assert any(r.startswith("gps_too_far") for r in report.reasons)
        assert self.engine.get_wallet("u-ayu").points == 0
        assert len(self.engine.index) == 0
        assert sub.perceptual_hash is not None

    def test_missing_exif_goes_to_review(self):
        engine = _engine(reader=FakeReader(default=None))
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "screenshot", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            assert sub.verification_report.exif_valid is False
        finally:
            engine.close()

    def test_low_confidence_rejected(self):
        engine = _engine(classifier=FakeClassifier(default=Classification(("wall",), 0.12)))
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "??", NEAR)
            assert sub.status is SubmissionStatus.REJECTED
            assert sub.verification_report.auto_decision is AutoDecision.REJECT
            assert len(engine.index) == 0
        finally:
            engine.close()

    def test_ambiguous_confidence_reviewed(self):
        engine = _engine(classifier=FakeClassifier(default=Classification(("tree",), 0.6)))
        try:
            assert engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR).status is SubmissionStatus.REVIEW
        finally:
            engine.close()

    def test_text_proof_always_reviewed(self):
        engine = _engine()
        try:
            engine.publish_quest(make_quest(id="q-reflect", proof_types=(ProofKind.TEXT,), location_hint=None))
            sub = engine.submit_proof("u-ayu", "q-reflect", None, "I biked to school all week")
            assert sub.status is SubmissionStatus.REVIEW
            assert sub.image_url is None and sub.video_url is None
        finally:
            engine.close()


class TestDuplicates:

    def setup_method(self):
        same = hex_with_bits([9, 99])
        self.engine = _engine(hasher=FakeHasher({PHOTO_A: same, PHOTO_B: hex_with_bits([9, 99, 199])}))

    def teardown_method(self):
        self.engine.close()

    def test_reused_photo_rejected(self):
        first  = self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "mine", NEAR)
        second = self.engine.submit_proof("u-budi", "q-plant-tree", PHOTO_B, "also mine", NEAR)

        assert first.status is SubmissionStatus.AUTO_PASS
        assert second.status is SubmissionStatus.REJECTED
        report = second.verification_report
        assert report.duplicate_check is True
        assert report.auto_decision is AutoDecision.REJECT
        assert report.phash_score == pytest.approx(1 - 1 / 256, abs=1e-4)
        assert any(r.startswith(f"duplicate_of:{first.id}") for r in report.reasons)

        assert len(self.engine.index) == 1
        assert self.engine.get_wallet("u-budi").points == 0


class TestIdempotence:

    def setup_method(self):
        self.engine = _engine()

    def teardown_method(self):
        self.engine.close()

    def test_reverify_refused_and_credit_once(self):
        sub = self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "Planted", NEAR)
        with pytest.raises(InvalidTransitionError):
            self.engine.orchestrator.verify(sub.id)
        wallet = self.engine.get_wallet("u-ayu")
        assert wallet.points == 25
        assert len(wallet.transactions) == 1
        assert self.engine.get_submission(sub.id).verification_report == sub.verification_report

    def test_concurrent_verify_of_one_submission(self):
        pending = self.engine.submissions.add(Submission(
            id="s-race", quest_id="q-plant-tree", user_id="u-ayu", caption="race",
            submitted_at=NOW, image_url=PHOTO_A, gps=NEAR,
        ))
        errors, results = [], []

        def worker():
            try:
                results.append(self.engine.orchestrator.verify(pending.id))
            except InvalidTransitionError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 3
        assert self.engine.get_wallet("u-ayu").points == 25
        assert len(self.engine.index) == 1

    def test_identical_media_verified_concurrently(self):
        barrier = threading.Barrier(2)
        outcomes = {}

        def worker(user_id):
            barrier.wait()
            outcomes[user_id] = self.engine.submit_proof(user_id, "q-plant-tree", PHOTO_A, "same", NEAR)

        threads = [threading.Thread(target=worker, args=(u,)) for u in ("u-ayu", "u-budi")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        statuses = sorted(s.status.value for s in outcomes.values())
        assert statuses == ["auto_pass", "rejected"]
        assert len(self.engine.index) == 1
        total = self.engine.get_wallet("u-ayu").points + self.engine.get_wallet("u-budi").points
        assert total == 25


class BrokenClassifier:
    """Blows up the way a bad response parser would."""

    def __init__(self):
        self.calls = 0

    def classify(self, media_ref):
        self.calls += 1
        raise ValueError("could not convert string to float: 'high'")


class TestCapabilityFailures:

    def test_transient_failure_retried_with_backoff(self):
        sleeps = []
        engine = _engine(classifier=FakeClassifier(failures=2), sleeps=sleeps)
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            assert sub.status is SubmissionStatus.AUTO_PASS
            assert sleeps == [pytest.approx(0.1), pytest.approx(0.2)]
        finally:
            engine.close()

    def test_exhausted_retries_route_to_review(self):
        sleeps = []
        hasher = FakeHasher(failures=100)
        engine = _engine(hasher=hasher, sleeps=sleeps)
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            assert hasher.calls == 3
            assert len(sleeps) == 2
            assert any(r.startswith("duplicate_unavailable") for r in sub.verification_report.reasons)
            assert sub.perceptual_hash is None
        finally:
            engine.close()

    def test_classifier_timeout_routes_to_review(self):
        engine = _engine(classifier=FakeClassifier(delay=1.0), check_timeout=0.1)
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            report = sub.verification_report
            assert report.confidence == 0.0
            assert any(r.startswith("content_timeout") for r in report.reasons)
        finally:
            engine.close()


    def test_unexpected_checker_error_routes_to_review(self):
        sleeps = []
        classifier = BrokenClassifier()
        engine = _engine(classifier=classifier, sleeps=sleeps)
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            assert classifier.calls == 1
            assert sleeps == []
            assert any(r.startswith("content_error: ValueError") for r in sub.verification_report.reasons)
            assert engine.get_wallet("u-ayu").points == 0
        finally:
            engine.close()

    def test_unreadable_hash_routes_to_review(self):
        engine = _engine(hasher=FakeHasher({PHOTO_A: "zz" * 32}))
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            assert any(r.startswith("duplicate_error") for r in sub.verification_report.reasons)
            assert len(engine.index) == 0
        finally:
            engine.close()

    def test_malformed_classifier_answer_routes_to_review(self):
        response = mock.Mock()
        response.json.return_value = {"labels": ["tree"], "confidence": "high"}
        response.raise_for_status.return_value = None
        sleeps = []
        engine = _engine(classifier=HttpContentClassifier(endpoint="http://cv.local/classify"), sleeps=sleeps)
        try:
            with mock.patch("engine.capabilities.requests.post", return_value=response) as post:
                sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            assert post.call_count == 3
            assert len(sleeps) == 2
            report = sub.verification_report
            assert report.confidence == 0.0
            assert any(r.startswith("content_unavailable") for r in report.reasons)
        finally:
            engine.close()

    def test_hung_classifier_does_not_hold_up_other_checkers(self):
        engine = _engine(classifier=FakeClassifier(delay=0.5), check_timeout=0.1, workers_per_checker=1)
        try:
            first  = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "", NEAR)
            second = engine.submit_proof("u-budi", "q-plant-tree", PHOTO_B, "", NEAR)
            for sub in (first, second):
                report = sub.verification_report
                assert sub.status is SubmissionStatus.REVIEW
                assert report.exif_valid and report.gps_valid
                timeouts = [r.split(":")[0] for r in report.reasons if "_timeout" in r]
                assert timeouts == ["content_timeout"]
        finally:
            engine.close()


class TestManualReview:

    def setup_method(self):
        self.clock = Clock()
        self.engine = _engine(
            clock=self.clock,
            hasher=FakeHasher({PHOTO_A: hex_with_bits([1]), PHOTO_B: hex_with_bits([2])}),
        )
        self.sub = self.engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "far away", FAR)
        assert self.sub.status is SubmissionStatus.REVIEW

    def teardown_method(self):
        self.engine.close()

    def test_approve_credits_and_indexes(self):
        self.clock.now = NOW + timedelta(hours=2)
        approved = self.engine.resolve_review(self.sub.id, ReviewDecision.APPROVED, "teacher-1", "Looks right")
        assert approved.status is SubmissionStatus.APPROVED
        assert approved.reviewed_by == "teacher-1"
        assert approved.review_notes == "Looks right"
        assert approved.reviewed_at == NOW + timedelta(hours=2)
        assert approved.points_awarded == 25
        assert approved.verification_report == self.sub.verification_report
        assert self.engine.get_wallet("u-ayu").points == 25
        assert len(self.engine.index) == 1

    def test_reject_awards_nothing(self):
        rejected = self.engine.resolve_review(self.sub.id, ReviewDecision.REJECTED, "teacher-1", "Wrong park")
        assert rejected.status is SubmissionStatus.REJECTED
        assert rejected.points_awarded == 0
        assert self.engine.get_wallet("u-ayu").points == 0
        assert len(self.engine.index) == 0

    def test_resolve_twice_refused(self):
        self.engine.resolve_review(self.sub.id, ReviewDecision.REJECTED, "teacher-1")
        with pytest.raises(InvalidTransitionError):
            self.engine.resolve_review(self.sub.id, ReviewDecision.APPROVED, "teacher-2")

    def test_auto_passed_submission_cannot_be_reviewed(self):
        sub = self.engine.submit_proof("u-budi", "q-plant-tree", "https://cdn.example/other.jpg", "ok", NEAR)
        assert sub.status is SubmissionStatus.AUTO_PASS
        with pytest.raises(InvalidTransitionError):
            self.engine.resolve_review(sub.id, ReviewDecision.APPROVED, "teacher-1")

    def test_approving_second_copy_loses_duplicate_claim(self):
        other = self.engine.submit_proof("u-budi", "q-plant-tree", PHOTO_B, "far too", FAR)
        assert other.status is SubmissionStatus.REVIEW

        self.engine.resolve_review(self.sub.id, ReviewDecision.APPROVED, "teacher-1")
        late = self.engine.resolve_review(other.id, ReviewDecision.APPROVED, "teacher-1", "ok")

        assert late.status is SubmissionStatus.REJECTED
        assert f"duplicate_of:{self.sub.id}" in late.review_notes
        assert self.engine.get_wallet("u-budi").points == 0
        assert len(self.engine.index) == 1


class FlakyLedger(LedgerEngine):
    """Credits fail while `failing` is set, as if the account store kept losing races."""

    failing = True

    def credit_submission(self, submission, quest, at=None):
        if self.failing:
            raise ConcurrentModificationError(submission.user_id, 1, 2)
        return super().credit_submission(submission, quest, at)


class WatchingLedger(LedgerEngine):
    """Records how the submission looks to other readers while points are booked."""

    submissions = None

    def credit_submission(self, submission, quest, at=None):
        self.seen = self.submissions.get(submission.id)
        return super().credit_submission(submission, quest, at)


class TestAwardAtomicity:

    def test_failed_credit_on_auto_pass_goes_to_review(self):
        engine = _engine(ledger=_ledger(FlakyLedger))
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "Planted", NEAR)
            assert sub.status is SubmissionStatus.REVIEW
            assert sub.points_awarded == 0
            report = sub.verification_report
            assert report.auto_decision is AutoDecision.REVIEW
            assert any(r.startswith("award_failed") for r in report.reasons)
            assert len(engine.index) == 0
            assert engine.get_wallet("u-ayu").points == 0
            assert engine.get_wallet("u-ayu").transactions == ()
        finally:
            engine.close()

    def test_failed_credit_on_approval_keeps_review(self):
        ledger = _ledger(FlakyLedger)
        engine = _engine(ledger=ledger)
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "far away", FAR)
            assert sub.status is SubmissionStatus.REVIEW

            with pytest.raises(ConcurrentModificationError):
                engine.resolve_review(sub.id, ReviewDecision.APPROVED, "teacher-1")
            stored = engine.get_submission(sub.id)
            assert stored.status is SubmissionStatus.REVIEW
            assert stored.reviewed_by is None
            assert len(engine.index) == 0

            ledger.failing = False
            approved = engine.resolve_review(sub.id, ReviewDecision.APPROVED, "teacher-1")
            assert approved.status is SubmissionStatus.APPROVED
            assert approved.points_awarded == 25
            assert len(engine.index) == 1
        finally:
            engine.close()

    def test_award_and_status_become_visible_together(self):
        ledger = _ledger(WatchingLedger)
        engine = _engine(ledger=ledger)
        ledger.submissions = engine.submissions
        try:
            sub = engine.submit_proof("u-ayu", "q-plant-tree", PHOTO_A, "Planted", NEAR)
            assert ledger.seen.status is SubmissionStatus.PENDING
            assert ledger.seen.points_awarded == 0
            assert sub.status is SubmissionStatus.AUTO_PASS
            assert engine.get_submission(sub.id).points_awarded == 25
        finally:
            engine.close()


def test_leaderboard_reflects_credits():
    engine = _engine()
    try:
        engine.submit_proof("u-budi", "q-plant-tree", PHOTO_B, "", NEAR)
        board = engine.get_leaderboard()
        assert [(e.user_id, e.rank, e.points) for e in board] == [("u-budi", 1, 25), ("u-ayu", 2, 0)]
    finally:
        engine.close()
