# ============================================================
# Face Watch — descriptor matching engine
# core/detection/repository.py
# ============================================================
# Persistence seams used by the detection service.
#
#   CandidateSource  — yields a fresh, read-only candidate
#                      snapshot per call
#   DetectionLog     — records every confirmed match
#
# In-memory implementations back the API by default and the
# tests; a database-backed store only has to satisfy the
# same two protocols.
# ============================================================

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union, runtime_checkable

from core.matcher.types import Candidate
from utils.logger import get_logger

logger = get_logger(__name__)


# ============================================================
# Protocols
# ============================================================

@runtime_checkable
class CandidateSource(Protocol):
    async def load_candidates(self) -> List[Candidate]:
        """Return the current candidate set as a new list."""
        ...


@runtime_checkable
class DetectionLog(Protocol):
    async def record(
        self,
        person_id: Any,
        confidence: float,
        location: Optional[str] = None,
    ) -> "DetectionEntry":
        """Persist one detection. ``confidence`` is a fraction in [0, 1]."""
        ...

    async def recent(self, limit: int = 10) -> List["DetectionEntry"]:
        """Newest entries first."""
        ...


# ============================================================
# Data Types
# ============================================================

@dataclass(frozen=True)
class DetectionEntry:
    """
    A logged detection.

    Attributes:
        id:          Sequential entry id.
        person_id:   Matched candidate id.
        confidence:  Match confidence as a fraction (percentage / 100).
        location:    Free-form camera / place label, if supplied.
        detected_at: Unix timestamp.
    """

    id: int
    person_id: Any
    confidence: float
    location: Optional[str] = None
    detected_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "person_id": self.person_id,
            "confidence": self.confidence,
            "location": self.location,
            "detected_at": self.detected_at,
        }


# ============================================================
# In-memory implementations
# ============================================================

class InMemoryCandidateStore:
    """
    Thread-safe in-memory candidate registry.

    Records can be Candidate objects or plain dicts in the shape
    accepted by :meth:`Candidate.from_record`. Candidates without a
    descriptor are stored but never returned for matching.

    Example::

        store = InMemoryCandidateStore()
        store.add({"id": 1, "name": "A. Person", "descriptor": [...]})
        candidates = await store.load_candidates()
    """

    def __init__(self, records: Optional[Iterable[Union[Candidate, Mapping[str, Any]]]] = None) -> None:
        self._candidates: Dict[Any, Candidate] = {}
        self._lock = threading.RLock()
        if records:
            self.add_many(records)

    def add(self, record: Union[Candidate, Mapping[str, Any]]) -> Candidate:
        candidate = record if isinstance(record, Candidate) else Candidate.from_record(dict(record))
        with self._lock:
            replaced = candidate.id in self._candidates
            self._candidates[candidate.id] = candidate
        logger.debug(
            f"{'Updated' if replaced else 'Added'} candidate {candidate.id!r} "
            f"(descriptor={'yes' if candidate.has_descriptor else 'no'})"
        )
        return candidate

    def add_many(self, records: Iterable[Union[Candidate, Mapping[str, Any]]]) -> int:
        count = 0
        for record in records:
            self.add(record)
            count += 1
        return count

    def remove(self, candidate_id: Any) -> bool:
        with self._lock:
            return self._candidates.pop(candidate_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._candidates.clear()

    def get(self, candidate_id: Any) -> Optional[Candidate]:
        with self._lock:
            return self._candidates.get(candidate_id)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._candidates)

    async def load_candidates(self) -> List[Candidate]:
        with self._lock:
            return [c for c in self._candidates.values() if c.has_descriptor]

    def __len__(self) -> int:
        return self.count

    def __repr__(self) -> str:
        return f"InMemoryCandidateStore(count={self.count})"


class InMemoryDetectionLog:
    """Append-only detection log kept in a list."""

    def __init__(self, max_entries: Optional[int] = None) -> None:
        self.max_entries = max_entries
        self._entries: List[DetectionEntry] = []
        self._next_id = 1
        self._lock = threading.Lock()

    async def record(
        self,
        person_id: Any,
        confidence: float,
        location: Optional[str] = None,
    ) -> DetectionEntry:
        with self._lock:
            entry = DetectionEntry(
                id=self._next_id,
                person_id=person_id,
                confidence=confidence,
                location=location,
            )
            self._next_id += 1
            self._entries.append(entry)
            if self.max_entries is not None and len(self._entries) > self.max_entries:
                del self._entries[: len(self._entries) - self.max_entries]
        logger.info(
            f"Detection logged | person={person_id!r} confidence={confidence:.4f} "
            f"location={location!r}"
        )
        return entry

    def entries(self, person_id: Any = None) -> List[DetectionEntry]:
        with self._lock:
            if person_id is None:
                return list(self._entries)
            return [e for e in self._entries if e.person_id == person_id]

    async def recent(self, limit: int = 10) -> List[DetectionEntry]:
        with self._lock:
            return list(reversed(self._entries[-limit:])) if limit > 0 else []

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._entries)
