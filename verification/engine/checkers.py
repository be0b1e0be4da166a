"""
TerraEd Quest Verification — Integrity Checkers
===============================================

Independent evaluators, one per integrity dimension:

  1. EXIF     capture metadata present, fresh, and consistent with the
              submitted position                         (fails closed)
  2. GPS      submitted position within the quest's radius
  3. DUPLICATE perceptual hash already indexed for an accepted submission
  4. CONTENT  classifier labels / confidence against the quest subject

All share evaluate(submission, quest, context) -> CheckResult. Checkers hold
no mutable state; the duplicate checker only reads the index. Capability
errors propagate to the orchestrator, which retries them and falls back to
checker.unavailable() when retries are exhausted; any other exception makes
the checker unavailable at once.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from engine.capabilities import ContentClassifier, MetadataReader, PerceptualHasher
from engine.duplicate_index import DuplicateIndex
from engine.models import Quest, Submission

logger = logging.getLogger("terra.checkers")

# ── Configuration ──────────────────────────────────────────────────────────────
EXIF_MAX_AGE_HOURS    = float(os.getenv("EXIF_MAX_AGE_HOURS", "48"))
EXIF_FUTURE_SKEW_MIN  = float(os.getenv("EXIF_FUTURE_SKEW_MIN", "10"))
EXIF_GPS_MISMATCH_KM  = float(os.getenv("EXIF_GPS_MISMATCH_KM", "50"))
GPS_DEFAULT_RADIUS_M  = float(os.getenv("GPS_DEFAULT_RADIUS_M", "500"))
AUTO_PASS_CONFIDENCE  = float(os.getenv("AUTO_PASS_CONFIDENCE", "0.85"))

# Civil time zones run from UTC-12 to UTC+14.
_WIDEST_WEST_OFFSET = timedelta(hours=12)
_WIDEST_EAST_OFFSET = timedelta(hours=14)


@dataclass
class CheckContext:
    now: datetime


@dataclass
class CheckResult:
    """
    Partial evidence from one checker.

    duplicate     → decision priority 1 (reject)
    suspicious    → decision priority 2 (review)
    inconclusive  → decision priority 2 (review); capability failed or timed out
    evidence      → report fields contributed by this checker
    """
    checker:      str
    evidence:     dict[str, Any] = field(default_factory=dict)
    reasons:      list[str]      = field(default_factory=list)
    duplicate:    bool           = False
    suspicious:   bool           = False
    inconclusive: bool           = False


class IntegrityChecker:
    name = "base"

    def evaluate(self, submission: Submission, quest: Quest, context: CheckContext) -> CheckResult:
        raise NotImplementedError

    def unavailable(self, reason: str) -> CheckResult:
        """Fail-closed result used when the checker could not complete."""
        return CheckResult(self.name, reasons=[reason], inconclusive=True)


# ══════════════════════════════════════════════════════════════════════════════
#  Layer 1: EXIF
# ══════════════════════════════════════════════════════════════════════════════

class ExifChecker(IntegrityChecker):
    name = "exif"

    def __init__(
        self,
        reader:          MetadataReader,
        max_age_hours:   float = EXIF_MAX_AGE_HOURS,
        future_skew_min: float = EXIF_FUTURE_SKEW_MIN,
        gps_mismatch_km: float = EXIF_GPS_MISMATCH_KM,
    ):
        self.reader          = reader
        self.max_age         = timedelta(hours=max_age_hours)
        self.future_skew     = timedelta(minutes=future_skew_min)
        self.gps_mismatch_km = gps_mismatch_km

    def evaluate(self, submission: Submission, quest: Quest, context: CheckContext) -> CheckResult:
        result = CheckResult(self.name)
        if not submission.media_ref:
            return self._invalid(result, "no_exif_metadata: text proof carries no capture metadata")

        metadata = self.reader.read(submission.media_ref)
        if metadata is None:
            return self._invalid(result, "no_exif_metadata: likely screenshot, download or re-encoded media")
        if metadata.captured_at is None:
            return self._invalid(result, "exif_missing_capture_time")

        submitted, max_age, future_skew = submission.submitted_at, self.max_age, self.future_skew
        if metadata.captured_at.tzinfo is None:
            # Wall clock of unknown zone: only flag what is out of range under every offset.
            if submitted.tzinfo is not None:
                submitted = submitted.astimezone(timezone.utc).replace(tzinfo=None)
            max_age     += _WIDEST_WEST_OFFSET
            future_skew += _WIDEST_EAST_OFFSET

        age = submitted - metadata.captured_at
        if age > max_age:
            hours = int(age.total_seconds() // 3600)
            result.reasons.append(
                f"photo_too_old_{hours}h: captured {metadata.captured_at.isoformat()} "
                f"(limit {max_age.total_seconds() / 3600:.0f}h)"
            )
        elif -age > future_skew:
            result.reasons.append(
                f"exif_timestamp_in_future: captured {metadata.captured_at.isoformat()} "
                f"after submission {submission.submitted_at.isoformat()}"
            )

        if metadata.gps is not None and submission.gps is not None:
            dist_km = metadata.gps.distance_m(submission.gps) / 1000.0
            if dist_km > self.gps_mismatch_km:
                result.reasons.append(
                    f"gps_mismatch_{dist_km:.0f}km: photo taken at "
                    f"({metadata.gps.latitude:.4f},{metadata.gps.longitude:.4f}), "
                    f"submitted from ({submission.gps.latitude:.4f},{submission.gps.longitude:.4f})"
                )

        if result.reasons:
            return self._invalid(result)

        result.evidence["exif_valid"] = True
        return result

    def _invalid(self, result: CheckResult, reason: str = "") -> CheckResult:
        if reason:
            result.reasons.append(reason)
        result.evidence["exif_valid"] = False
        result.suspicious = True
        logger.info(f"[EXIF] invalid: {'; '.join(result.reasons)}")
        return result

    def unavailable(self, reason: str) -> CheckResult:
        result = super().unavailable(reason)
        result.evidence["exif_valid"] = False
        return result


# ══════════════════════════════════════════════════════════════════════════════
#  Layer 2: GPS plausibility
# ══════════════════════════════════════════════════════════════════════════════

class GPSChecker(IntegrityChecker):
    name = "gps"

    def __init__(self, default_radius_m: float = GPS_DEFAULT_RADIUS_M):
        self.default_radius_m = default_radius_m

    def evaluate(self, submission: Submission, quest: Quest, context: CheckContext) -> CheckResult:
        result = CheckResult(self.name, evidence={"location_required": quest.requires_location})
        if not quest.requires_location:
            result.evidence["gps_valid"] = True
            return result

        radius = quest.location_radius_m or self.default_radius_m
        gps    = submission.gps
        if gps is None:
            return self._invalid(result, "gps_missing: quest requires a location but none was submitted")
        if not gps.in_range():
            return self._invalid(result, f"gps_out_of_range: ({gps.latitude}, {gps.longitude})")

        distance = gps.distance_m(quest.location_hint)
        result.evidence["distance_m"] = round(distance, 1)
        if distance > radius:
            label = f" ({quest.location_label})" if quest.location_label else ""
            return self._invalid(
                result,
                f"gps_too_far: {distance:.0f}m from quest location{label}, radius {radius:.0f}m",
            )

        logger.info(f"[GPS] {submission.id} within {distance:.0f}m of {quest.id} (radius {radius:.0f}m)")
        result.evidence["gps_valid"] = True
        return result

    @staticmethod
    def _invalid(result: CheckResult, reason: str) -> CheckResult:
        result.reasons.append(reason)
        result.evidence["gps_valid"] = False
        result.suspicious = True
        logger.info(f"[GPS] invalid: {reason}")
        return result


# ══════════════════════════════════════════════════════════════════════════════
#  Layer 3: Perceptual-hash duplicate
# ══════════════════════════════════════════════════════════════════════════════

class DuplicateChecker(IntegrityChecker):
    name = "duplicate"

    def __init__(self, hasher: PerceptualHasher, index: DuplicateIndex):
        self.hasher = hasher
        self.index  = index

    def evaluate(self, submission: Submission, quest: Quest, context: CheckContext) -> CheckResult:
        result = CheckResult(self.name, evidence={"duplicate_check": False, "phash": None})
        if not submission.media_ref:
            return result

        phash = self.hasher.hash(submission.media_ref)
        result.evidence["phash"] = phash

        match = self.index.find_match(phash, quest.id, submission.user_id, submission.id)
        if match is None:
            return result

        result.duplicate = True
        result.evidence.update({
            "duplicate_check": True,
            "duplicate_of":    match.submission_id,
            "phash_score":     match.similarity,
        })
        result.reasons.append(
            f"duplicate_of:{match.submission_id} — near-identical media "
            f"(hamming distance {match.distance} ≤ {self.index.tolerance})"
        )
        return result


# ══════════════════════════════════════════════════════════════════════════════
#  Layer 4: Content labels
# ══════════════════════════════════════════════════════════════════════════════

class ContentLabelChecker(IntegrityChecker):
    name = "content"

    def __init__(self, classifier: ContentClassifier, pass_threshold: float = AUTO_PASS_CONFIDENCE):
        self.classifier     = classifier
        self.pass_threshold = pass_threshold

    def evaluate(self, submission: Submission, quest: Quest, context: CheckContext) -> CheckResult:
        if not submission.media_ref:
            return self.unavailable("no_media: text-only proof needs a human reviewer")

        classification = self.classifier.classify(submission.media_ref)
        vocabulary     = quest.vocabulary()
        labels         = tuple(label.lower() for label in classification.labels)
        matched        = sorted(set(labels) & vocabulary)

        result = CheckResult(self.name, evidence={
            "confidence": classification.confidence,
            "labels":     labels,
            "on_topic":   bool(matched),
        })
        if classification.confidence < self.pass_threshold:
            result.reasons.append(
                f"low_content_confidence: {classification.confidence:.0%} "
                f"(auto-pass needs {self.pass_threshold:.0%})"
            )
        if not matched:
            expected = ", ".join(sorted(vocabulary)[:6])
            result.reasons.append(f"off_topic_labels: {list(labels)} — expected one of [{expected}]")

        logger.info(
            f"[CV] {submission.id} confidence={classification.confidence:.2%} matched={matched}"
        )
        return result

    def unavailable(self, reason: str) -> CheckResult:
        result = super().unavailable(reason)
        result.evidence.update({"confidence": 0.0, "labels": (), "on_topic": False})
        return result
