"""
TerraEd Quest Verification — data model
========================================

Canonical records that travel through the verification pipeline:

    Quest ──► Submission ──► VerificationReport ──► WalletTransaction
                                                    UserAccount (snapshot)
                                                    LeaderboardEntry (projection)

Reports, wallet transactions and leaderboard entries are frozen; submissions
and accounts are only ever replaced wholesale by their owning store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------
class ProofKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    TEXT  = "text"


class QuestCategory(str, Enum):
    WASTE        = "waste"
    ENERGY       = "energy"
    WATER        = "water"
    BIODIVERSITY = "biodiversity"
    TRANSPORT    = "transport"


class Difficulty(str, Enum):
    EASY   = "easy"
    MEDIUM = "medium"
    HARD   = "hard"


class SubmissionStatus(str, Enum):
    PENDING   = "pending"
    AUTO_PASS = "auto_pass"
    REVIEW    = "review"
    APPROVED  = "approved"
    REJECTED  = "rejected"


class AutoDecision(str, Enum):
    PASS   = "pass"
    REVIEW = "review"
    REJECT = "reject"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class TransactionType(str, Enum):
    EARNED   = "earned"
    REDEEMED = "redeemed"
    BONUS    = "bonus"


ALLOWED_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({
        SubmissionStatus.AUTO_PASS,
        SubmissionStatus.REVIEW,
        SubmissionStatus.REJECTED,
    }),
    SubmissionStatus.REVIEW: frozenset({
        SubmissionStatus.APPROVED,
        SubmissionStatus.REJECTED,
    }),
}

AWARDED_STATUSES = frozenset({SubmissionStatus.AUTO_PASS, SubmissionStatus.APPROVED})

DECISION_TO_STATUS = {
    AutoDecision.PASS:   SubmissionStatus.AUTO_PASS,
    AutoDecision.REVIEW: SubmissionStatus.REVIEW,
    AutoDecision.REJECT: SubmissionStatus.REJECTED,
}

# Labels a classifier is expected to report for each category when the quest
# does not declare its own subject vocabulary.
CATEGORY_VOCABULARY: dict[QuestCategory, frozenset[str]] = {
    QuestCategory.WASTE: frozenset({
        "trash", "litter", "garbage", "waste", "bottle", "plastic", "bag",
        "recycling", "recycling bin", "compost", "can", "cardboard",
    }),
    QuestCategory.ENERGY: frozenset({
        "light bulb", "lamp", "solar panel", "switch", "power strip",
        "thermostat", "appliance", "window", "led",
    }),
    QuestCategory.WATER: frozenset({
        "water", "tap", "faucet", "rain barrel", "bucket", "hose", "river",
        "pond", "watering can", "bottle",
    }),
    QuestCategory.BIODIVERSITY: frozenset({
        "tree", "plant", "sapling", "flower", "garden", "soil", "bird",
        "insect", "bee", "leaf", "potted plant", "shovel",
    }),
    QuestCategory.TRANSPORT: frozenset({
        "bicycle", "bus", "train", "scooter", "sidewalk", "crosswalk",
        "bus stop", "helmet", "person",
    }),
}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class GPSCoordinate:
    latitude:  float
    longitude: float

    def in_range(self) -> bool:
        return -90 <= self.latitude <= 90 and -180 <= self.longitude <= 180

    def distance_m(self, other: "GPSCoordinate") -> float:
        """Haversine formula — great-circle distance in metres."""
        R = 6_371_000.0
        lat1, lon1 = np.radians(self.latitude),  np.radians(self.longitude)
        lat2, lon2 = np.radians(other.latitude), np.radians(other.longitude)
        dlat = lat2 - lat1
        dlon = lon2 - lon1
        a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
        return float(R * 2 * np.arcsin(np.sqrt(a)))

    def to_dict(self) -> dict:
        return {"lat": self.latitude, "lng": self.longitude}


@dataclass(frozen=True)
class Quest:
    id:                str
    title:             str
    points:            int
    expiry:            datetime
    category:          QuestCategory
    difficulty:        Difficulty          = Difficulty.EASY
    proof_types:       tuple[ProofKind, ...] = (ProofKind.PHOTO,)
    summary:           str                 = ""
    instructions:      str                 = ""
    location_hint:     Optional[GPSCoordinate] = None
    location_label:    str                 = ""
    location_radius_m: Optional[float]     = None
    expected_labels:   tuple[str, ...]     = ()
    safety_notes:      str                 = ""
    estimated_time:    int                 = 0      # minutes
    created_by:        str                 = ""
    created_at:        datetime            = field(default_factory=utcnow)

    @property
    def requires_location(self) -> bool:
        return self.location_hint is not None

    def vocabulary(self) -> frozenset[str]:
        if self.expected_labels:
            return frozenset(label.lower() for label in self.expected_labels)
        return CATEGORY_VOCABULARY.get(self.category, frozenset())

    def is_expired(self, at: datetime) -> bool:
        return at >= self.expiry

    def accepts(self, kind: ProofKind) -> bool:
        return kind in self.proof_types


@dataclass(frozen=True)
class VerificationReport:
    """Immutable outcome of the automated integrity evaluation."""
    confidence:      float
    labels:          tuple[str, ...]
    reasons:         tuple[str, ...]
    exif_valid:      bool
    gps_valid:       bool
    duplicate_check: bool               # True = near-identical prior submission found
    auto_decision:   AutoDecision
    phash_score:     Optional[float]    = None
    created_at:      datetime           = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "confidence":      self.confidence,
            "labels":          list(self.labels),
            "reasons":         list(self.reasons),
            "pHashScore":      self.phash_score,
            "exifValid":       self.exif_valid,
            "gpsValid":        self.gps_valid,
            "duplicateCheck":  self.duplicate_check,
            "autoDecision":    self.auto_decision.value,
            "createdAt":       self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Submission:
    id:                  str
    quest_id:            str
    user_id:             str
    caption:             str
    submitted_at:        datetime
    image_url:           Optional[str]             = None
    video_url:           Optional[str]             = None
    gps:                 Optional[GPSCoordinate]   = None
    status:              SubmissionStatus          = SubmissionStatus.PENDING
    verification_report: Optional[VerificationReport] = None
    reviewed_by:         Optional[str]             = None
    review_notes:        Optional[str]             = None
    reviewed_at:         Optional[datetime]        = None
    points_awarded:      int                       = 0
    perceptual_hash:     Optional[str]             = None

    @property
    def media_ref(self) -> Optional[str]:
        return self.image_url or self.video_url

    @property
    def proof_kind(self) -> ProofKind:
        if self.image_url:
            return ProofKind.PHOTO
        if self.video_url:
            return ProofKind.VIDEO
        return ProofKind.TEXT

    @property
    def is_terminal(self) -> bool:
        return self.status not in ALLOWED_TRANSITIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id":                 self.id,
            "questId":            self.quest_id,
            "userId":             self.user_id,
            "imageUrl":           self.image_url,
            "videoUrl":           self.video_url,
            "caption":            self.caption,
            "gpsCoords":          self.gps.to_dict() if self.gps else None,
            "status":             self.status.value,
            "verificationReport": (
                self.verification_report.to_dict() if self.verification_report else None
            ),
            "reviewedBy":         self.reviewed_by,
            "reviewNotes":        self.review_notes,
            "pointsAwarded":      self.points_awarded,
            "submittedAt":        self.submitted_at.isoformat(),
            "reviewedAt":         self.reviewed_at.isoformat() if self.reviewed_at else None,
        }


@dataclass(frozen=True)
class WalletTransaction:
    id:            str
    user_id:       str
    type:          TransactionType
    amount:        int                  # signed
    description:   str
    created_at:    datetime
    quest_id:      Optional[str] = None
    submission_id: Optional[str] = None
    voucher_code:  Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["type"]       = self.type.value
        d["created_at"] = self.created_at.isoformat()
        return d


@dataclass(frozen=True)
class UserAccount:
    """Ledger-owned snapshot of a user's counters."""
    user_id:          str
    name:             str                 = ""
    avatar:           Optional[str]       = None
    points:           int                 = 0
    monthly_points:   int                 = 0
    streak:           int                 = 0
    last_activity:    Optional[datetime]  = None
    quests_completed: int                 = 0
    version:          int                 = 0


@dataclass(frozen=True)
class Wallet:
    user_id:        str
    transactions:   tuple[WalletTransaction, ...]
    points:         int
    monthly_points: int
    streak:         int

    def to_dict(self) -> dict:
        return {
            "user_id":        self.user_id,
            "points":         self.points,
            "monthly_points": self.monthly_points,
            "streak":         self.streak,
            "transactions":   [t.to_dict() for t in self.transactions],
        }


@dataclass(frozen=True)
class LeaderboardEntry:
    user_id:          str
    name:             str
    points:           int
    rank:             int
    streak:           int
    quests_completed: int
    avatar:           Optional[str]      = None
    last_activity:    Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "userId":          self.user_id,
            "name":            self.name,
            "avatar":          self.avatar,
            "points":          self.points,
            "rank":            self.rank,
            "streak":          self.streak,
            "questsCompleted": self.quests_completed,
        }
