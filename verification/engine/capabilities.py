"""
TerraEd Quest Verification — external capability adapters
==========================================================

The engine never recognises images itself. It talks to four pluggable
capabilities, each reachable through a one-method contract:

    MediaFetcher.fetch(media_ref)          -> bytes
    PerceptualHasher.hash(media_ref)       -> hex string
    MetadataReader.read(media_ref)         -> CaptureMetadata | None
    ContentClassifier.classify(media_ref)  -> Classification

Default implementations below use requests (HTTP) and Pillow (dHash, EXIF).
Any failure to reach or decode media is raised as CapabilityUnavailableError
so the orchestrator can retry it.
"""

from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import numpy as np
import requests
from PIL import ExifTags, Image, UnidentifiedImageError

from engine.errors import CapabilityUnavailableError
from engine.models import GPSCoordinate

logger = logging.getLogger("terra.capabilities")

# ── Configuration ──────────────────────────────────────────────────────────────
MEDIA_FETCH_TIMEOUT_SEC = float(os.getenv("MEDIA_FETCH_TIMEOUT_SEC", "10"))
CLASSIFIER_ENDPOINT     = os.getenv("CLASSIFIER_ENDPOINT", "http://127.0.0.1:8500/v1/classify")
DHASH_SIZE              = int(os.getenv("DHASH_SIZE", "16"))   # 16×16 = 256-bit hash
EXIF_ASSUMED_UTC_OFFSET = os.getenv("EXIF_ASSUMED_UTC_OFFSET", "")   # e.g. "+07:00"; empty = unknown


@dataclass(frozen=True)
class Classification:
    labels:     tuple[str, ...]
    confidence: float


@dataclass(frozen=True)
class CaptureMetadata:
    """
    captured_at is in UTC when the file records its UTC offset (or one is
    assumed by configuration); otherwise it is the camera's naive wall clock.
    """
    captured_at: Optional[datetime]
    gps:         Optional[GPSCoordinate] = None


class PerceptualHasher(Protocol):
    def hash(self, media_ref: str) -> str: ...


class MetadataReader(Protocol):
    def read(self, media_ref: str) -> Optional[CaptureMetadata]: ...


class ContentClassifier(Protocol):
    def classify(self, media_ref: str) -> Classification: ...


def hamming_distance(h1: str, h2: str) -> int:
    """Bit distance between two hex hashes; hashes of different length never match."""
    if len(h1) != len(h2):
        return max(len(h1), len(h2)) * 4
    return bin(int(h1, 16) ^ int(h2, 16)).count("1")


# ══════════════════════════════════════════════════════════════════════════════
#  Media download
# ══════════════════════════════════════════════════════════════════════════════

class MediaFetcher:

    def __init__(self, timeout: float = MEDIA_FETCH_TIMEOUT_SEC, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, media_ref: str) -> bytes:
        try:
            response = self.session.get(media_ref, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CapabilityUnavailableError("media", f"{media_ref}: {e}") from e
        logger.debug(f"[MEDIA] fetched {len(response.content):,} bytes from {media_ref}")
        return response.content


def _open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        return img
    except (UnidentifiedImageError, OSError) as e:
        raise CapabilityUnavailableError("image-decoder", str(e)) from e


# ══════════════════════════════════════════════════════════════════════════════
#  Perceptual hashing (dHash)
# ══════════════════════════════════════════════════════════════════════════════

def dhash_bytes(image_bytes: bytes, hash_size: int = DHASH_SIZE) -> str:
    """Difference hash: one bit per horizontally adjacent pixel pair (left > right)."""
    img = _open_image(image_bytes).convert("L")
    img = img.resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
    px  = np.asarray(img, dtype=np.int16)
    bits = (px[:, :-1] > px[:, 1:]).flatten()
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return format(value, f"0{hash_size * hash_size // 4}x")


class DHashHasher:

    def __init__(self, fetcher: Optional[MediaFetcher] = None, hash_size: int = DHASH_SIZE):
        self.fetcher   = fetcher or MediaFetcher()
        self.hash_size = hash_size

    def hash(self, media_ref: str) -> str:
        digest = dhash_bytes(self.fetcher.fetch(media_ref), self.hash_size)
        logger.info(f"[DHASH] {media_ref} → {digest[:16]}…")
        return digest


# ══════════════════════════════════════════════════════════════════════════════
#  EXIF metadata
# ══════════════════════════════════════════════════════════════════════════════

def _dms_to_dd(dms, ref: str) -> float:
    """EXIF (degrees, minutes, seconds) rationals → signed decimal degrees."""
    d, m, s = (float(v) for v in dms)
    dd = d + m / 60.0 + s / 3600.0
    return -dd if ref in ("S", "W") else dd


def _parse_utc_offset(value) -> Optional[timezone]:
    """EXIF OffsetTime* string ("+07:00", "-03:30") → tzinfo, or None."""
    text = str(value or "").strip("\x00 ")
    if len(text) != 6 or text[0] not in "+-" or text[3] != ":":
        return None
    try:
        hours, minutes = int(text[1:3]), int(text[4:6])
    except ValueError:
        return None
    if hours > 14 or minutes >= 60:
        return None
    delta = timedelta(hours=hours, minutes=minutes)
    return timezone(-delta if text[0] == "-" else delta)


def parse_exif(image_bytes: bytes, assumed_offset: str = EXIF_ASSUMED_UTC_OFFSET) -> Optional[CaptureMetadata]:
    """
    Reads capture time and GPS position from JPEG/TIFF EXIF.
    EXIF DateTime is local wall-clock time: it is converted to UTC with the
    OffsetTimeOriginal / OffsetTime tag, else with `assumed_offset`, and
    left naive when neither is available.
    Returns None when the image carries no EXIF at all (screenshots,
    canvas captures, messenger-recompressed photos).
    """
    exif = _open_image(image_bytes).getexif()
    if not exif:
        return None

    exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
    dt_str   = exif_ifd.get(ExifTags.Base.DateTimeOriginal) or exif.get(ExifTags.Base.DateTime)
    offset   = (
        exif_ifd.get(ExifTags.Base.OffsetTimeOriginal)
        or exif_ifd.get(ExifTags.Base.OffsetTime)
        or exif.get(ExifTags.Base.OffsetTime)
    )
    captured_at = None
    if dt_str:
        try:
            captured_at = datetime.strptime(str(dt_str).strip("\x00 "), "%Y:%m:%d %H:%M:%S")
        except ValueError:
            logger.info(f"[EXIF] Unparseable capture time {dt_str!r}")
    if captured_at is not None:
        tz = _parse_utc_offset(offset) or _parse_utc_offset(assumed_offset)
        if tz is not None:
            captured_at = captured_at.replace(tzinfo=tz).astimezone(timezone.utc)
        else:
            logger.info(f"[EXIF] {captured_at.isoformat()} carries no UTC offset, kept as wall-clock time")

    gps = None
    gps_raw = exif.get_ifd(ExifTags.IFD.GPSInfo)
    if gps_raw:
        tags = {ExifTags.GPSTAGS.get(k, k): v for k, v in gps_raw.items()}
        try:
            gps = GPSCoordinate(
                latitude  = _dms_to_dd(tags["GPSLatitude"],  tags.get("GPSLatitudeRef",  "N")),
                longitude = _dms_to_dd(tags["GPSLongitude"], tags.get("GPSLongitudeRef", "E")),
            )
        except (KeyError, TypeError, ValueError, ZeroDivisionError):
            logger.info("[EXIF] GPS block present but incomplete")

    return CaptureMetadata(captured_at=captured_at, gps=gps)


class ExifMetadataReader:

    def __init__(self, fetcher: Optional[MediaFetcher] = None, assumed_offset: str = EXIF_ASSUMED_UTC_OFFSET):
        self.fetcher        = fetcher or MediaFetcher()
        self.assumed_offset = assumed_offset

    def read(self, media_ref: str) -> Optional[CaptureMetadata]:
        data = self.fetcher.fetch(media_ref)
        try:
            return parse_exif(data, self.assumed_offset)
        except CapabilityUnavailableError:
            # Not a still image (e.g. video proof): no readable capture metadata.
            logger.info(f"[EXIF] {media_ref} is not a decodable image")
            return None


# ══════════════════════════════════════════════════════════════════════════════
#  Content classification (remote vision service)
# ══════════════════════════════════════════════════════════════════════════════

class HttpContentClassifier:
    """
    Client for a label-detection service.

    Request:  {"media_url": "...", "top_k": 10}
    Response: {"labels": ["tree", ...] | [{"name": "tree", "score": 0.93}, ...],
               "confidence": 0.93}          # confidence optional
    """

    def __init__(self, endpoint: str = CLASSIFIER_ENDPOINT, timeout: float = MEDIA_FETCH_TIMEOUT_SEC, top_k: int = 10):
        self.endpoint = endpoint
        self.timeout  = timeout
        self.top_k    = top_k

    def classify(self, media_ref: str) -> Classification:
        try:
            response = requests.post(
                self.endpoint,
                json={"media_url": media_ref, "top_k": self.top_k},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = self._parse(response.json())
        except (requests.RequestException, ValueError, TypeError, AttributeError) as e:
            # A body we cannot read is as useless as no answer at all.
            raise CapabilityUnavailableError("classifier", f"{type(e).__name__}: {e}") from e

        logger.info(f"[CV] confidence={result.confidence:.2%} labels={list(result.labels)}")
        return result

    @staticmethod
    def _parse(data) -> Classification:
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")

        labels: list[str] = []
        scores: list[float] = []
        for item in data.get("labels") or []:
            if isinstance(item, dict):
                labels.append(str(item.get("name", "")).lower())
                scores.append(float(item.get("score", 0.0)))
            else:
                labels.append(str(item).lower())

        confidence = data.get("confidence")
        if confidence is None:
            confidence = max(scores) if scores else 0.0
        confidence = float(confidence)
        if confidence != confidence:
            raise ValueError("confidence is NaN")
        confidence = max(0.0, min(1.0, confidence))

        return Classification(labels=tuple(l for l in labels if l), confidence=confidence)
