"""
TerraEd Quest Verification — Duplicate Index
============================================

Maps perceptual hashes of accepted proof media to the submissions that own
them, so a re-used or lightly edited photo is caught on its next appearance.

Near-duplicate lookup uses band bucketing: a hash is cut into
(PHASH_THRESHOLD + 1) bands, and two hashes within PHASH_THRESHOLD bits of
each other must agree exactly on at least one band. Lookups only compare
against hashes sharing a band bucket, then confirm with the real Hamming
distance.

claim() is an atomic check-and-insert over the incoming hash's band buckets:
two near-identical hashes always share a bucket, so concurrent claims for
them serialise and at most one succeeds.

Backends:
  - InMemoryDuplicateIndex  striped locks, copy-on-write buckets
  - RedisDuplicateIndex     one SET per bucket, WATCH/MULTI transactions
"""

from __future__ import annotations

import logging
import math
import os
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

import redis

from engine.capabilities import hamming_distance

logger = logging.getLogger("terra.index")

# ── Configuration ──────────────────────────────────────────────────────────────
PHASH_THRESHOLD   = int(os.getenv("PHASH_THRESHOLD", "10"))       # inclusive Hamming bits
DUPLICATE_SCOPE   = os.getenv("DUPLICATE_SCOPE", "global")        # global | quest | quest_user
DUPLICATE_BACKEND = os.getenv("DUPLICATE_BACKEND", "memory")      # memory | redis
REDIS_URL         = os.getenv("REDIS_URL", "redis://localhost:6379/0")

SCOPES = ("global", "quest", "quest_user")


@dataclass(frozen=True)
class DuplicateMatch:
    submission_id: str
    phash:         str
    distance:      int

    @property
    def similarity(self) -> float:
        bits = len(self.phash) * 4
        return round(1.0 - self.distance / bits, 4) if bits else 0.0


def scope_key(policy: str, quest_id: str, user_id: str) -> str:
    if policy == "quest":
        return f"quest:{quest_id}"
    if policy == "quest_user":
        return f"quest:{quest_id}:user:{user_id}"
    return "global"


def band_keys(phash: str, tolerance: int) -> list[str]:
    bits  = bin(int(phash, 16))[2:].zfill(len(phash) * 4)
    bands = tolerance + 1
    size  = max(1, math.ceil(len(bits) / bands))
    keys  = []
    for i in range(bands):
        chunk = bits[i * size:(i + 1) * size]
        if chunk:
            keys.append(f"b{i}:{int(chunk, 2):x}")
    return keys


class DuplicateIndex:
    """Shared lookup logic; backends supply bucket storage."""

    def __init__(self, tolerance: int = PHASH_THRESHOLD, policy: str = DUPLICATE_SCOPE):
        if policy not in SCOPES:
            raise ValueError(f"Unknown duplicate scope policy {policy!r}; expected one of {SCOPES}")
        self.tolerance = tolerance
        self.policy    = policy

    # -- backend hooks -------------------------------------------------------
    def _read_buckets(self, keys: list[str]) -> Iterable[tuple[str, str]]:
        raise NotImplementedError

    def claim(self, phash: str, submission_id: str, quest_id: str, user_id: str) -> Optional[DuplicateMatch]:
        """
        Insert the hash unless a near-duplicate from another submission is
        already indexed. Returns that match (nothing inserted) or None.
        """
        raise NotImplementedError

    def release(self, phash: str, submission_id: str, quest_id: str, user_id: str) -> None:
        raise NotImplementedError

    # -- shared --------------------------------------------------------------
    def _keys(self, phash: str, quest_id: str, user_id: str) -> list[str]:
        scope = scope_key(self.policy, quest_id, user_id)
        return [f"{scope}|{band}" for band in band_keys(phash, self.tolerance)]

    def _best_match(self, phash: str, submission_id: Optional[str], entries: Iterable[tuple[str, str]]) -> Optional[DuplicateMatch]:
        best: Optional[DuplicateMatch] = None
        for other_hash, other_id in entries:
            if other_id == submission_id:
                continue
            dist = hamming_distance(phash, other_hash)
            if dist <= self.tolerance and (best is None or dist < best.distance):
                best = DuplicateMatch(submission_id=other_id, phash=other_hash, distance=dist)
        return best

    def find_match(self, phash: str, quest_id: str, user_id: str, submission_id: Optional[str] = None) -> Optional[DuplicateMatch]:
        entries = self._read_buckets(self._keys(phash, quest_id, user_id))
        match = self._best_match(phash, submission_id, entries)
        if match:
            logger.info(
                f"[DUP] {phash[:12]}… matches {match.submission_id} "
                f"(distance {match.distance} ≤ {self.tolerance})"
            )
        return match


# ══════════════════════════════════════════════════════════════════════════════
#  In-process backend
# ══════════════════════════════════════════════════════════════════════════════

class InMemoryDuplicateIndex(DuplicateIndex):

    STRIPES = 64

    def __init__(self, tolerance: int = PHASH_THRESHOLD, policy: str = DUPLICATE_SCOPE):
        super().__init__(tolerance, policy)
        # Buckets hold tuples and are replaced, never mutated, so readers need no lock.
        self._buckets: dict[str, tuple[tuple[str, str], ...]] = {}
        self._stripes = [threading.Lock() for _ in range(self.STRIPES)]

    def _read_buckets(self, keys: list[str]) -> Iterable[tuple[str, str]]:
        seen = set()
        for key in keys:
            seen.update(self._buckets.get(key, ()))
        return seen

    def _locks_for(self, keys: list[str]) -> list[threading.Lock]:
        return [self._stripes[i] for i in sorted({hash(k) % self.STRIPES for k in keys})]

    def claim(self, phash: str, submission_id: str, quest_id: str, user_id: str) -> Optional[DuplicateMatch]:
        keys  = self._keys(phash, quest_id, user_id)
        locks = self._locks_for(keys)
        for lock in locks:
            lock.acquire()
        try:
            match = self._best_match(phash, submission_id, self._read_buckets(keys))
            if match:
                return match
            entry = (phash, submission_id)
            for key in keys:
                bucket = self._buckets.get(key, ())
                if entry not in bucket:
                    self._buckets[key] = bucket + (entry,)
            logger.info(f"[DUP] indexed {phash[:12]}… for {submission_id}")
            return None
        finally:
            for lock in reversed(locks):
                lock.release()

    def release(self, phash: str, submission_id: str, quest_id: str, user_id: str) -> None:
        keys  = self._keys(phash, quest_id, user_id)
        locks = self._locks_for(keys)
        for lock in locks:
            lock.acquire()
        try:
            entry = (phash, submission_id)
            for key in keys:
                bucket = tuple(e for e in self._buckets.get(key, ()) if e != entry)
                if bucket:
                    self._buckets[key] = bucket
                else:
                    self._buckets.pop(key, None)
            logger.info(f"[DUP] released {phash[:12]}… for {submission_id}")
        finally:
            for lock in reversed(locks):
                lock.release()

    def __len__(self) -> int:
        return len({entry for bucket in list(self._buckets.values()) for entry in bucket})


# ══════════════════════════════════════════════════════════════════════════════
#  Redis backend
# ══════════════════════════════════════════════════════════════════════════════

class RedisDuplicateIndex(DuplicateIndex):

    PREFIX = "terra:dup"

    def __init__(
        self,
        client:    Optional[redis.Redis] = None,
        tolerance: int = PHASH_THRESHOLD,
        policy:    str = DUPLICATE_SCOPE,
        prefix:    str = PREFIX,
    ):
        super().__init__(tolerance, policy)
        self.redis  = client or redis.Redis.from_url(REDIS_URL, decode_responses=True)
        self.prefix = prefix

    def _keys(self, phash: str, quest_id: str, user_id: str) -> list[str]:
        return [f"{self.prefix}:{k}" for k in super()._keys(phash, quest_id, user_id)]

    @staticmethod
    def _decode(members: Iterable[str]) -> list[tuple[str, str]]:
        entries = []
        for member in members:
            phash, _, sid = member.partition("|")
            entries.append((phash, sid))
        return entries

    def _read_buckets(self, keys: list[str]) -> Iterable[tuple[str, str]]:
        pipe = self.redis.pipeline(transaction=False)
        for key in keys:
            pipe.smembers(key)
        seen = set()
        for members in pipe.execute():
            seen.update(self._decode(members))
        return seen

    def claim(self, phash: str, submission_id: str, quest_id: str, user_id: str) -> Optional[DuplicateMatch]:
        keys   = self._keys(phash, quest_id, user_id)
        member = f"{phash}|{submission_id}"
        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(*keys)
                    entries = set()
                    for key in keys:
                        entries.update(self._decode(pipe.smembers(key)))
                    match = self._best_match(phash, submission_id, entries)
                    if match:
                        pipe.unwatch()
                        return match
                    pipe.multi()
                    for key in keys:
                        pipe.sadd(key, member)
                    pipe.execute()
                    logger.info(f"[DUP] indexed {phash[:12]}… for {submission_id} (redis)")
                    return None
                except redis.WatchError:
                    logger.info(f"[DUP] bucket contention on {phash[:12]}…, retrying claim")
                    continue

    def release(self, phash: str, submission_id: str, quest_id: str, user_id: str) -> None:
        member = f"{phash}|{submission_id}"
        pipe = self.redis.pipeline()
        for key in self._keys(phash, quest_id, user_id):
            pipe.srem(key, member)
        pipe.execute()
        logger.info(f"[DUP] released {phash[:12]}… for {submission_id} (redis)")


def build_duplicate_index(backend: str = DUPLICATE_BACKEND) -> DuplicateIndex:
    if backend == "redis":
        client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        try:
            client.ping()
        except redis.ConnectionError:
            logger.warning(f"[DUP] Redis at {REDIS_URL} not reachable yet — index calls will retry per request")
        return RedisDuplicateIndex(client)
    return InMemoryDuplicateIndex()
