"""
Fingerprint Store for the Research Orchestrator.

Content-addressed deduplication with a TTL window:
- check_and_record(): first sighting inserts, repeat sightings bump hit_count
- Expired entries are invisible to lookups even before the sweep runs
- sweep() purges expired entries so memory tracks the TTL window,
  not the lifetime submission count
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger

from .clock import Clock
from .models import CandidateFingerprint, ResearchMode
from .state import StateManager

log = get_logger("research", "fingerprints")

_WHITESPACE = re.compile(r"\s+")

SUBMISSIONS_COUNTER = "{}_fingerprint_submissions"
DUPLICATES_COUNTER = "{}_fingerprint_duplicates"


def _hash_components(components: list[str]) -> str:
    normalized = _WHITESPACE.sub(" ", "|".join(components).lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]


def compute_fingerprint(mode: ResearchMode, context: Optional[dict] = None) -> str:
    """Hash of a proposed unit of research work (mode + its context)."""
    payload = json.dumps(context or {}, sort_keys=True, default=str)
    return _hash_components([mode.value, payload])


def compute_candidate_fingerprint(candidate: dict, regime: Optional[str] = None) -> str:
    """
    Hash of a strategy candidate returned by a research run.

    Two candidates with the same archetype, hypothesis opening, entry/exit
    rules and regime are the same idea worded differently.
    """
    rules = candidate.get("rules") or {}
    components = [
        candidate.get("archetype_name") or "",
        (candidate.get("hypothesis") or "").lower()[:200],
        json.dumps(rules.get("entry", []), sort_keys=True)[:300],
        json.dumps(rules.get("exit", []), sort_keys=True)[:300],
        regime or candidate.get("regime_context") or "",
    ]
    return _hash_components(components)


@dataclass
class FingerprintCheck:
    """Result of a check_and_record call."""
    is_duplicate: bool
    hit_count: int
    fingerprint_hash: str


class FingerprintStore:
    """
    TTL-bounded dedup store keyed by content hash.
    """

    def __init__(self, state_manager: StateManager, clock: Clock, ttl_hours: float = 24.0,
                 namespace: str = "work"):
        self.state = state_manager
        self.clock = clock
        self.ttl = timedelta(hours=ttl_hours)
        # Separates work dedup counters from candidate dedup counters
        self._submissions_counter = SUBMISSIONS_COUNTER.format(namespace)
        self._duplicates_counter = DUPLICATES_COUNTER.format(namespace)

    def lookup(self, fingerprint_hash: str, now: Optional[datetime] = None) -> Optional[CandidateFingerprint]:
        """Return the live entry for a hash, treating expired ones as absent."""
        now = now or self.clock.now()
        entry = self.state.get_fingerprint(fingerprint_hash)
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def check_and_record(self, fingerprint_hash: str) -> FingerprintCheck:
        """
        Record a sighting of a hash.

        Returns is_duplicate=True when a live entry already existed.
        A repeat sighting extends last_seen_at but never expires_at.
        """
        now = self.clock.now()
        self.state.increment_counter(self._submissions_counter)

        entry = self.lookup(fingerprint_hash, now)
        if entry is not None:
            entry.hit_count += 1
            entry.last_seen_at = now
            self.state.put_fingerprint(entry)
            self.state.increment_counter(self._duplicates_counter)

            log.debug("research.fingerprints.duplicate",
                      fingerprint=fingerprint_hash, hit_count=entry.hit_count)
            return FingerprintCheck(True, entry.hit_count, fingerprint_hash)

        # New, or the previous window expired: start a fresh window
        entry = CandidateFingerprint(
            fingerprint_hash=fingerprint_hash,
            created_at=now,
            last_seen_at=now,
            expires_at=now + self.ttl,
            hit_count=1,
        )
        self.state.put_fingerprint(entry)
        return FingerprintCheck(False, 1, fingerprint_hash)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Purge expired entries. Returns number removed."""
        now = now or self.clock.now()
        expired = [
            fp.fingerprint_hash
            for fp in list(self.state.data.fingerprints.values())
            if fp.is_expired(now)
        ]
        removed = self.state.purge_fingerprints(expired)
        if removed:
            log.info("research.fingerprints.swept",
                     removed=removed, remaining=len(self.state.data.fingerprints))
        return removed

    @property
    def size(self) -> int:
        return len(self.state.data.fingerprints)

    def stats(self) -> dict:
        total = int(self.state.get_counter(self._submissions_counter))
        duplicates = int(self.state.get_counter(self._duplicates_counter))
        return {
            "total_submissions": total,
            "duplicates_blocked": duplicates,
            "dedup_efficiency": duplicates / total if total else 0.0,
            "size": self.size,
        }
